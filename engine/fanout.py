"""
Multi-Wallet Fan-out Executor

Distributes every source wallet of a will across its beneficiaries,
strictly in order: wallets in approval order, beneficiaries in plan order.
No parallelism, since the shared daily spend cap makes order matter.

Per (wallet, beneficiary) pair:
    amount  = floor(distributable x round_half_up(pct x 10) / 1000)
    limiter check -> transfer -> commit -> persist limits + record

Every attempted pair lands in the result list, confirmed or failed with
a reason. Nothing is retried.

Execution modes are strategies sharing one contract:
- DirectTransferStrategy: stablecoin pull (transferFrom on a pre-approved
  allowance) or native send from custody
- VaultWithdrawStrategy: withdrawal from a custodial KitePass vault
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .chain import erc20_transfer_from
from .constitution import DISTRIBUTION_LAWS
from .limiter import SpendingLimiter
from .models import (
    Beneficiary, ExecutionResult, LinkedWallet, TransactionRecord, TxStatus, TxType, Will,
)
from .store import StoreError

logger = logging.getLogger("silene.fanout")


# ============================================================
# PURE AMOUNT ARITHMETIC
# ============================================================

def scaled_percentage(percentage: float) -> int:
    """Percentage in tenths, rounded half-up: 36.3 -> 363, 33.33 -> 333."""
    tenths = Decimal(str(percentage)) * DISTRIBUTION_LAWS.PERCENT_SCALE
    return int(tenths.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_share(distributable: int, percentage: float) -> int:
    return distributable * scaled_percentage(percentage) // DISTRIBUTION_LAWS.PERCENT_DENOMINATOR


def distributable_balance(raw_balance: int, reserve: int = 0) -> int:
    return raw_balance - reserve if raw_balance > reserve else 0


@dataclass(frozen=True)
class PlannedTransfer:
    beneficiary: Beneficiary
    amount: int


def plan_wallet(distributable: int, beneficiaries: list[Beneficiary]) -> list[PlannedTransfer]:
    """Amounts for one wallet, zero amounts dropped."""
    plan = []
    for b in beneficiaries:
        amount = compute_share(distributable, b.percentage)
        if amount <= 0:
            logger.debug(f"Skip {b.name or b.address[:10]}: amount is 0")
            continue
        plan.append(PlannedTransfer(b, amount))
    return plan


# ============================================================
# STRATEGIES
# ============================================================

class DistributionStrategy:
    """Where funds come from and how one transfer is made."""

    token_symbol: str = ""

    async def prepare(self) -> None:
        pass

    def sources(self, will: Will, linked_wallets: list[LinkedWallet]) -> list[str]:
        raise NotImplementedError

    async def distributable(self, source: str) -> int:
        """Zero means skip this source."""
        raise NotImplementedError

    async def transfer(self, source: str, recipient: str, amount: int) -> str:
        """Submit and wait. Returns the tx hash, raises on failure."""
        raise NotImplementedError


class DirectTransferStrategy(DistributionStrategy):
    """
    Linked-wallet mode.

    Stablecoin: custody pulls with transferFrom; a wallet without
    allowance to custody is skipped.
    Native: custody sends native value; the linked wallet's balance minus
    the gas reserve sizes the shares.
    """

    def __init__(
        self,
        ledger,
        use_stablecoin: bool,
        token: Optional[str] = None,
        reserve: int = DISTRIBUTION_LAWS.NATIVE_GAS_RESERVE_WEI,
    ):
        self.ledger = ledger
        self.use_stablecoin = use_stablecoin
        self.token = token or ledger.settlement_token
        self.reserve = reserve
        self.token_symbol = ledger.native_symbol or "KITE"

    async def prepare(self) -> None:
        if not self.use_stablecoin:
            return
        try:
            self.token_symbol = await self.ledger.token_symbol(self.token)
        except Exception as e:
            logger.warning(f"Token symbol lookup failed, using TOKEN: {e}")
            self.token_symbol = "TOKEN"

    def sources(self, will: Will, linked_wallets: list[LinkedWallet]) -> list[str]:
        if not linked_wallets:
            logger.info(f"No linked wallets for {will.will_id}, using owner {will.owner[:10]}...")
            return [will.owner]
        return [w.address for w in linked_wallets]

    async def distributable(self, source: str) -> int:
        if not self.use_stablecoin:
            raw = await self.ledger.balance_of(source)
            return distributable_balance(raw, self.reserve)

        balance = await self.ledger.balance_of(source, self.token)
        if balance == 0:
            return 0
        allowance = await self.ledger.allowance(source, self.ledger.custody_address, self.token)
        if allowance == 0:
            logger.info(f"Skipping {source[:10]}...: no allowance to custody")
            return 0
        return balance

    async def transfer(self, source: str, recipient: str, amount: int) -> str:
        if self.use_stablecoin:
            tx = await self.ledger.submit(self.token, 0, erc20_transfer_from(source, recipient, amount))
        else:
            tx = await self.ledger.submit(recipient, amount, b"")
        receipt = await self.ledger.wait(tx)
        return receipt.tx_hash


class VaultWithdrawStrategy(DistributionStrategy):
    """KitePass mode: the vault is the only source."""

    def __init__(self, vault_provider, token: str, token_symbol: str = "USDT"):
        self.vault = vault_provider
        self.token = token
        self.token_symbol = token_symbol

    async def prepare(self) -> None:
        try:
            self.token_symbol = await self.vault.ledger.token_symbol(self.token)
        except Exception as e:
            logger.warning(f"Token symbol lookup failed, using {self.token_symbol}: {e}")

    def sources(self, will: Will, linked_wallets: list[LinkedWallet]) -> list[str]:
        return [will.kitepass_address] if will.kitepass_address else []

    async def distributable(self, source: str) -> int:
        return await self.vault.balance(source, self.token)

    async def transfer(self, source: str, recipient: str, amount: int) -> str:
        receipt = await self.vault.withdraw(source, self.token, amount, recipient)
        return receipt.tx_hash


# ============================================================
# EXECUTOR
# ============================================================

class FanoutExecutor:
    """
    Usage:
        executor = FanoutExecutor(limiter, store, store)
        results = await executor.execute(will, linked_wallets, strategy)
    """

    def __init__(self, limiter: SpendingLimiter, wills, transactions):
        self.limiter = limiter
        self.wills = wills
        self.transactions = transactions

    async def execute(
        self,
        will: Will,
        linked_wallets: list[LinkedWallet],
        strategy: DistributionStrategy,
    ) -> list[ExecutionResult]:
        await strategy.prepare()
        results: list[ExecutionResult] = []

        for source in strategy.sources(will, linked_wallets):
            try:
                distributable = await strategy.distributable(source)
            except Exception as e:
                logger.error(f"Wallet {source[:10]}... failed: {e}")
                for b in will.beneficiaries:
                    results.append(self._failed(b, source, 0, strategy, f"wallet error: {e}"))
                continue

            if distributable <= 0:
                logger.info(f"Skipping wallet {source[:10]}... (nothing distributable)")
                continue
            logger.info(f"Wallet {source[:10]}...: distributable {distributable}")

            for planned in plan_wallet(distributable, will.beneficiaries):
                results.append(await self._apply(will, source, planned, strategy))

        confirmed = sum(1 for r in results if r.status == TxStatus.CONFIRMED)
        logger.info(
            f"Fan-out done for {will.will_id}: {confirmed} confirmed, {len(results) - confirmed} failed"
        )
        return results

    async def _apply(
        self,
        will: Will,
        source: str,
        planned: PlannedTransfer,
        strategy: DistributionStrategy,
    ) -> ExecutionResult:
        b, amount = planned.beneficiary, planned.amount

        async with self.limiter.lock(will.will_id):
            decision = self.limiter.check(will, amount)
            if not decision.allowed:
                logger.warning(f"Limit rejected {b.name or b.address[:10]}: {decision.reason}")
                return self._failed(b, source, amount, strategy, decision.reason)

            try:
                tx_hash = await strategy.transfer(source, b.address, amount)
            except Exception as e:
                logger.error(f"Transfer to {b.name or b.address[:10]} failed: {e}")
                return self._failed(b, source, amount, strategy, str(e))

            self.limiter.commit(will, amount)
            self._persist(will, source, b, amount, tx_hash, strategy.token_symbol)

        logger.info(f"Sent {amount} {strategy.token_symbol} to {b.name or b.address[:10]}: {tx_hash[:18]}...")
        return ExecutionResult(
            beneficiary=b.name,
            beneficiary_address=b.address,
            source_wallet=source,
            amount=amount,
            status=TxStatus.CONFIRMED,
            token_symbol=strategy.token_symbol,
            tx_hash=tx_hash,
        )

    def _persist(self, will: Will, source: str, b: Beneficiary, amount: int, tx_hash: str, symbol: str):
        # The transfer is final either way; a store failure is logged, not raised.
        try:
            self.wills.update_spending_limits(will.will_id, will.spending_limits)
            self.transactions.save_transaction(TransactionRecord(
                tx_hash=tx_hash,
                will_id=will.will_id,
                source_wallet=source,
                beneficiary_address=b.address,
                beneficiary_name=b.name,
                amount=amount,
                token_symbol=symbol,
                tx_type=TxType.DISTRIBUTION,
            ))
        except (StoreError, KeyError) as e:
            logger.error(f"Could not persist confirmed transfer {tx_hash}: {e}")

    @staticmethod
    def _failed(b: Beneficiary, source: str, amount: int, strategy, error: str) -> ExecutionResult:
        return ExecutionResult(
            beneficiary=b.name,
            beneficiary_address=b.address,
            source_wallet=source,
            amount=amount,
            status=TxStatus.FAILED,
            token_symbol=strategy.token_symbol,
            error=error,
        )
