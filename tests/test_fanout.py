from engine.constitution import DISTRIBUTION_LAWS
from engine.fanout import (
    DirectTransferStrategy, FanoutExecutor, VaultWithdrawStrategy, compute_share,
    distributable_balance, plan_wallet,
)
from engine.limiter import SpendingLimiter
from engine.models import Beneficiary, LinkedWallet, TxStatus, TxType

from conftest import ALICE, BOB, CAROL, OWNER, SECOND, TOKEN, VAULT, FakeLedger, FakeVault, make_will, run

RESERVE = DISTRIBUTION_LAWS.NATIVE_GAS_RESERVE_WEI


class TestAmounts:
    def test_one_decimal_percentage(self):
        assert compute_share(1000, 36.3) == 363

    def test_rounds_to_nearest_tenth_before_integer_math(self):
        assert compute_share(1000, 33.33) == 333
        assert compute_share(1000, 36.35) == 364

    def test_floor_division(self):
        assert compute_share(999, 50) == 499

    def test_large_balances_stay_exact(self):
        balance = 123456789123456789123456789
        assert compute_share(balance, 25) == balance * 250 // 1000

    def test_distributable_balance(self):
        assert distributable_balance(RESERVE + 1000, RESERVE) == 1000
        assert distributable_balance(RESERVE, RESERVE) == 0
        assert distributable_balance(5, RESERVE) == 0

    def test_plan_drops_zero_amounts(self):
        plan = plan_wallet(5, [
            Beneficiary(ALICE, 99.9, "A"),
            Beneficiary(BOB, 0.1, "B"),
        ])
        assert [p.beneficiary.name for p in plan] == ["A"]
        assert plan[0].amount == 4


def _wallets(*accounts):
    return [LinkedWallet("will_test", a.address.lower(), "0x", approved_at=i) for i, a in enumerate(accounts)]


def _executor(store):
    return FanoutExecutor(SpendingLimiter(), store, store)


class TestFanout:
    def test_isolation_two_wallets_three_beneficiaries(self, store):
        ledger = FakeLedger(native={OWNER.address: RESERVE + 1000, SECOND.address: RESERVE + 1000})
        ledger.fail_transfers_to(BOB, times=1)
        will = make_will([("A", ALICE, 50), ("B", BOB, 30), ("C", CAROL, 20)])
        store.save_will(will)

        results = run(_executor(store).execute(
            will, _wallets(OWNER, SECOND), DirectTransferStrategy(ledger, use_stablecoin=False)
        ))

        assert len(results) == 6
        assert [r.status for r in results].count(TxStatus.CONFIRMED) == 5
        failed = [r for r in results if r.status == TxStatus.FAILED]
        assert len(failed) == 1
        assert failed[0].beneficiary == "B"
        assert failed[0].source_wallet == OWNER.address.lower()
        assert "reverted" in failed[0].error
        # order: wallet by wallet, beneficiary by beneficiary
        assert [r.beneficiary for r in results] == ["A", "B", "C", "A", "B", "C"]
        # failed attempt is not persisted and not counted
        assert len(store.list_by_will("will_test")) == 5
        assert store.get_will("will_test").spending_limits.daily_spent == 2000 - 300

    def test_limit_rejection_does_not_block_later_beneficiaries(self, store):
        ledger = FakeLedger(native={OWNER.address: RESERVE + 1000})
        will = make_will([("A", ALICE, 60), ("B", BOB, 30), ("C", CAROL, 10)], per_tx=500, daily=10**30)
        store.save_will(will)

        results = run(_executor(store).execute(
            will, _wallets(OWNER), DirectTransferStrategy(ledger, use_stablecoin=False)
        ))

        assert [r.status for r in results] == [TxStatus.FAILED, TxStatus.CONFIRMED, TxStatus.CONFIRMED]
        assert "per-transaction" in results[0].error
        assert results[0].amount == 600
        assert len(ledger.submitted) == 2

    def test_shared_daily_budget_across_wallets(self, store):
        ledger = FakeLedger(native={OWNER.address: RESERVE + 1000, SECOND.address: RESERVE + 1000})
        will = make_will([("A", ALICE, 100)], per_tx=10**30, daily=1500)
        store.save_will(will)

        results = run(_executor(store).execute(
            will, _wallets(OWNER, SECOND), DirectTransferStrategy(ledger, use_stablecoin=False)
        ))

        assert [r.status for r in results] == [TxStatus.CONFIRMED, TxStatus.FAILED]
        assert "daily" in results[1].error
        assert store.get_will("will_test").spending_limits.daily_spent == 1000

    def test_wallet_failure_reports_every_beneficiary_and_continues(self, store):
        ledger = FakeLedger(native={SECOND.address: RESERVE + 1000})
        ledger.broken.add(OWNER.address.lower())
        will = make_will([("A", ALICE, 50), ("B", BOB, 50)])
        store.save_will(will)

        results = run(_executor(store).execute(
            will, _wallets(OWNER, SECOND), DirectTransferStrategy(ledger, use_stablecoin=False)
        ))

        assert [r.status for r in results] == [
            TxStatus.FAILED, TxStatus.FAILED, TxStatus.CONFIRMED, TxStatus.CONFIRMED,
        ]
        assert results[0].error.startswith("wallet error")
        assert results[2].source_wallet == SECOND.address.lower()

    def test_empty_wallet_is_skipped(self, store):
        ledger = FakeLedger(native={OWNER.address: RESERVE})
        will = make_will([("A", ALICE, 100)])
        store.save_will(will)
        results = run(_executor(store).execute(
            will, _wallets(OWNER), DirectTransferStrategy(ledger, use_stablecoin=False)
        ))
        assert results == []
        assert ledger.submitted == []

    def test_native_transfer_sends_value_to_beneficiary(self, store):
        ledger = FakeLedger(native={OWNER.address: RESERVE + 1000})
        will = make_will([("A", ALICE, 60), ("B", BOB, 40)])
        store.save_will(will)
        run(_executor(store).execute(will, _wallets(OWNER), DirectTransferStrategy(ledger, False)))
        assert [(s.target, s.value) for s in ledger.submitted] == [(ALICE, 600), (BOB, 400)]
        records = store.list_by_will("will_test")
        assert {r.tx_type for r in records} == {TxType.DISTRIBUTION}
        assert {r.source_wallet for r in records} == {OWNER.address.lower()}


class TestStablecoin:
    def test_pull_with_transfer_from(self, store):
        ledger = FakeLedger(tokens={OWNER.address: 1000}, allowances={OWNER.address: 1000})
        will = make_will([("A", ALICE, 100)], use_stablecoin=True)
        store.save_will(will)

        results = run(_executor(store).execute(will, _wallets(OWNER), DirectTransferStrategy(ledger, True)))

        assert results[0].status == TxStatus.CONFIRMED
        assert results[0].amount == 1000          # no reserve on token pulls
        assert results[0].token_symbol == "USDT"
        sub = ledger.submitted[0]
        assert sub.target == TOKEN
        assert sub.value == 0
        assert sub.payload[:4] == bytes.fromhex("23b872dd")

    def test_wallet_without_allowance_is_skipped(self, store):
        ledger = FakeLedger(
            tokens={OWNER.address: 1000, SECOND.address: 1000},
            allowances={SECOND.address: 1000},
        )
        will = make_will([("A", ALICE, 100)], use_stablecoin=True)
        store.save_will(will)

        results = run(_executor(store).execute(
            will, _wallets(OWNER, SECOND), DirectTransferStrategy(ledger, True)
        ))

        assert len(results) == 1
        assert results[0].source_wallet == SECOND.address.lower()

    def test_no_linked_wallets_falls_back_to_owner(self, store):
        ledger = FakeLedger(tokens={OWNER.address: 500}, allowances={OWNER.address: 500})
        will = make_will([("A", ALICE, 100)])
        strategy = DirectTransferStrategy(ledger, True)
        assert strategy.sources(will, []) == [OWNER.address.lower()]


class TestVault:
    def test_vault_is_only_source(self, store):
        ledger = FakeLedger()
        vault = FakeVault(ledger, balances={VAULT: 1000})
        will = make_will([("A", ALICE, 60), ("B", BOB, 40)], use_kitepass=True, kitepass_address=VAULT)
        store.save_will(will)

        results = run(_executor(store).execute(
            will, _wallets(OWNER, SECOND), VaultWithdrawStrategy(vault, TOKEN)
        ))

        assert [r.amount for r in results] == [600, 400]
        assert {r.source_wallet for r in results} == {VAULT}
        assert [w[3] for w in vault.withdrawals] == [ALICE, BOB]

    def test_vault_mode_respects_limits(self, store):
        ledger = FakeLedger()
        vault = FakeVault(ledger, balances={VAULT: 1000})
        will = make_will([("A", ALICE, 60), ("B", BOB, 40)], per_tx=500,
                         use_kitepass=True, kitepass_address=VAULT)
        store.save_will(will)

        results = run(_executor(store).execute(will, [], VaultWithdrawStrategy(vault, TOKEN)))

        assert [r.status for r in results] == [TxStatus.FAILED, TxStatus.CONFIRMED]
        assert len(vault.withdrawals) == 1
