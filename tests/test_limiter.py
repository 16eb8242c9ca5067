from engine.limiter import SpendingLimiter

from conftest import ALICE, make_will


def _limiter(day="2024-01-01"):
    state = {"day": day}
    return SpendingLimiter(today_fn=lambda: state["day"]), state


def _will(per_tx=1000, daily=1000, spent=0, reset="2024-01-01"):
    will = make_will([("A", ALICE, 100)], per_tx=per_tx, daily=daily)
    will.spending_limits.daily_spent = spent
    will.spending_limits.last_reset_date = reset
    return will


class TestCheck:
    def test_within_limits(self):
        limiter, _ = _limiter()
        assert limiter.check(_will(), 500).allowed

    def test_per_tx_limit(self):
        limiter, _ = _limiter()
        decision = limiter.check(_will(per_tx=100), 101)
        assert not decision.allowed
        assert "per-transaction" in decision.reason

    def test_exactly_at_limits_allowed(self):
        limiter, _ = _limiter()
        assert limiter.check(_will(per_tx=1000, daily=1000), 1000).allowed

    def test_daily_limit(self):
        limiter, _ = _limiter()
        decision = limiter.check(_will(spent=900), 101)
        assert not decision.allowed
        assert "daily" in decision.reason

    def test_check_does_not_spend(self):
        limiter, _ = _limiter()
        will = _will()
        limiter.check(will, 500)
        assert will.spending_limits.daily_spent == 0

    def test_non_positive_amount_rejected(self):
        limiter, _ = _limiter()
        assert not limiter.check(_will(), 0).allowed
        assert not limiter.check(_will(), -5).allowed


class TestReset:
    def test_new_day_zeroes_spent_before_comparison(self):
        limiter, _ = _limiter(day="2024-01-02")
        will = _will(spent=1000, reset="2024-01-01")
        assert limiter.check(will, 1000).allowed
        assert will.spending_limits.daily_spent == 0
        assert will.spending_limits.last_reset_date == "2024-01-02"

    def test_same_day_keeps_spent(self):
        limiter, _ = _limiter(day="2024-01-01")
        will = _will(spent=1000)
        assert not limiter.check(will, 1).allowed
        assert will.spending_limits.daily_spent == 1000

    def test_long_idle_resets_once(self):
        limiter, _ = _limiter(day="2024-03-15")
        will = _will(spent=700, reset="2024-01-01")
        assert limiter.reset_if_needed(will.spending_limits)
        assert not limiter.reset_if_needed(will.spending_limits)
        assert will.spending_limits.daily_spent == 0


class TestCommit:
    def test_commits_are_additive_and_cap_is_not_truncated(self):
        limiter, _ = _limiter()
        will = _will(daily=1000)
        limiter.commit(will, 400)
        limiter.commit(will, 500)
        assert will.spending_limits.daily_spent == 900
        decision = limiter.check(will, 200)
        assert not decision.allowed
        assert will.spending_limits.daily_spent == 900

    def test_commit_on_new_day_starts_fresh(self):
        limiter, state = _limiter()
        will = _will()
        limiter.commit(will, 800)
        state["day"] = "2024-01-02"
        limiter.commit(will, 300)
        assert will.spending_limits.daily_spent == 300

    def test_lock_is_per_will(self):
        limiter, _ = _limiter()
        assert limiter.lock("a") is limiter.lock("a")
        assert limiter.lock("a") is not limiter.lock("b")
