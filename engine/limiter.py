"""
Spending Limiter - per-transaction and daily caps for will execution.

Limits are per will, not per wallet or per beneficiary: every source
wallet of a multi-wallet will draws on one shared daily budget. Because
of that, processing order decides who is rejected once the budget runs
low, which is why fan-out is strictly sequential.

Reset is lazy and calendar-based: the counter is zeroed when the UTC date
of the check differs from last_reset_date. A will idle for N days is reset
once, not N times.

check() never spends; commit() is only called after a confirmed transfer.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .models import SpendingLimits, Will, utc_today

logger = logging.getLogger("silene.limiter")


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    reason: str = ""


APPROVED = LimitDecision(True, "approved")


class SpendingLimiter:
    """
    Enforces SpendingLimits embedded in a Will.

    Usage:
        limiter = SpendingLimiter()
        async with limiter.lock(will.will_id):
            decision = limiter.check(will, amount)
            if decision.allowed:
                ... transfer ...
                limiter.commit(will, amount)
    """

    def __init__(self, today_fn: Optional[Callable[[], str]] = None):
        self._today_fn = today_fn or utc_today
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_init_guard = threading.Lock()

    def lock(self, will_id: str) -> asyncio.Lock:
        """Critical section for the reset-check-commit sequence of one will."""
        lock = self._locks.get(will_id)
        if lock is None:
            with self._lock_init_guard:
                lock = self._locks.get(will_id)
                if lock is None:
                    lock = asyncio.Lock()
                    self._locks[will_id] = lock
        return lock

    def release(self, will_id: str) -> None:
        """Forget the lock of a will that can no longer spend."""
        with self._lock_init_guard:
            self._locks.pop(will_id, None)

    def reset_if_needed(self, limits: SpendingLimits) -> bool:
        today = self._today_fn()
        if limits.last_reset_date != today:
            limits.daily_spent = 0
            limits.last_reset_date = today
            return True
        return False

    def check(self, will: Will, amount: int) -> LimitDecision:
        limits = will.spending_limits

        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            return LimitDecision(False, f"invalid amount: {amount!r} (must be a positive integer)")

        if self.reset_if_needed(limits):
            logger.debug(f"Daily spend reset for {will.will_id} ({limits.last_reset_date})")

        if amount > limits.per_tx_limit:
            return LimitDecision(
                False, f"Exceeds per-transaction limit: {amount} > {limits.per_tx_limit}"
            )

        if limits.daily_spent + amount > limits.daily_limit:
            return LimitDecision(
                False,
                f"Exceeds daily limit: {limits.daily_spent} + {amount} > {limits.daily_limit}",
            )

        return APPROVED

    def commit(self, will: Will, amount: int) -> None:
        limits = will.spending_limits
        self.reset_if_needed(limits)
        limits.daily_spent += amount
        logger.info(
            f"Spend committed for {will.will_id}: +{amount} "
            f"(today {limits.daily_spent}/{limits.daily_limit})"
        )
