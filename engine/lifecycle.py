"""
Will Lifecycle Controller - authorize, link, execute.

State machine:
    pending --execute--> executed     (terminal, whatever the per-transfer outcome)

Validation-class failures (not found, owner mismatch, wrong status, bad
signature, bad plan, no gas, not configured) return Err before any side
effect. Everything after validation is best effort: attestation failure
is logged and skipped, transfer failures show up in the result list, and
the will still ends executed. No retry, no rollback.

Execution of one will is serialized by a per-will asyncio.Lock and the
status is re-read inside it, so a second concurrent call in this process
sees `executed` and is rejected. Separate processes sharing a store can
still race.
"""

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Union

from .constitution import DISTRIBUTION_LAWS
from .fanout import DirectTransferStrategy, DistributionStrategy, FanoutExecutor, VaultWithdrawStrategy
from .limiter import SpendingLimiter
from .models import (
    Beneficiary, Err, ErrorKind, ExecutionOutcome, LinkedWallet, Ok, Result, SpendingLimits,
    TransactionRecord, TxType, WalletStatus, Will, WillStatus, generate_will_id,
    is_valid_address, normalize_address,
)
from .signature import SignatureVerifier
from .store import JsonStore, StoreError

logger = logging.getLogger("silene.lifecycle")

BeneficiaryInput = Union[Beneficiary, dict]


def _to_beneficiaries(items: Iterable[BeneficiaryInput]) -> list[Beneficiary]:
    return [b if isinstance(b, Beneficiary) else Beneficiary.from_dict(b) for b in items]


def _percent_sum(beneficiaries: list[Beneficiary]) -> Decimal:
    return sum((Decimal(str(b.percentage)) for b in beneficiaries), Decimal(0))


def validate_plan(beneficiaries: list[Beneficiary], one_decimal: bool = False) -> Optional[str]:
    """None if the plan is usable, else the reason."""
    if not beneficiaries:
        return "beneficiary list is empty"
    for b in beneficiaries:
        if not is_valid_address(b.address):
            return f"invalid beneficiary address: {b.address!r}"
        if not b.percentage > 0:
            return f"percentage must be positive: {b.name or b.address} has {b.percentage}"
    total = _percent_sum(beneficiaries)
    if one_decimal:
        total = total.quantize(Decimal("0.1"))
    if total != 100:
        return f"percentages sum to {total}, expected 100"
    return None


def _limit_value(raw, default: int) -> int:
    if raw is None:
        return default
    value = int(Decimal(str(raw)))
    if value <= 0:
        raise ValueError(f"limit must be positive: {raw}")
    return value


class WillService:
    """
    Usage:
        service = WillService(store, SignatureVerifier(), SpendingLimiter(), ledger=ledger)
        result = await service.execute(will_id, owner)
        if result.ok:
            outcome = result.value
    """

    def __init__(
        self,
        store: JsonStore,
        verifier: SignatureVerifier,
        limiter: SpendingLimiter,
        ledger=None,
        vault_provider=None,
        attestation=None,
        settlement_token: Optional[str] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.limiter = limiter
        self.ledger = ledger
        self.vault_provider = vault_provider
        self.attestation = attestation
        self.settlement_token = settlement_token
        self.fanout = FanoutExecutor(limiter, store, store)
        self._execution_locks: dict[str, asyncio.Lock] = {}

    # ============================================================
    # AUTHORIZATION
    # ============================================================

    def authorize(
        self,
        owner: str,
        beneficiaries: list[BeneficiaryInput],
        total_amount: int,
        valid_until: int,
        signature: str,
        use_stablecoin: bool = False,
        custom_limits: Optional[dict] = None,
    ) -> Result[str]:
        if not is_valid_address(owner):
            return Err(ErrorKind.INVALID_REQUEST, f"invalid owner address: {owner!r}")

        if not self.verifier.verify(owner, beneficiaries, total_amount, valid_until, signature):
            return Err(ErrorKind.INVALID_SIGNATURE, "signature does not recover to owner")

        try:
            plan = _to_beneficiaries(beneficiaries)
        except (TypeError, ValueError, AttributeError) as e:
            return Err(ErrorKind.INVALID_PLAN, f"malformed beneficiary: {e}")
        problem = validate_plan(plan)
        if problem:
            return Err(ErrorKind.INVALID_PLAN, problem)

        existing = self.store.get_will_by_owner(owner)
        if existing is not None and existing.status == WillStatus.PENDING:
            existing.beneficiaries = plan
            existing.total_amount = int(total_amount)
            existing.valid_until = int(valid_until)
            existing.signature = signature
            existing.created_at = time.time()
            existing.use_stablecoin = use_stablecoin
            self.store.save_will(existing)
            logger.info(f"Will updated: {existing.will_id} ({len(plan)} beneficiaries)")
            return Ok(existing.will_id)

        custom_limits = custom_limits or {}
        try:
            limits = SpendingLimits(
                per_tx_limit=_limit_value(
                    custom_limits.get("perTxLimit"), DISTRIBUTION_LAWS.DEFAULT_PER_TX_LIMIT
                ),
                daily_limit=_limit_value(
                    custom_limits.get("dailyLimit"), DISTRIBUTION_LAWS.DEFAULT_DAILY_LIMIT
                ),
            )
        except (InvalidOperation, TypeError, ValueError) as e:
            return Err(ErrorKind.INVALID_REQUEST, f"bad spending limits: {e}")

        will = Will(
            will_id=generate_will_id(),
            owner=owner,
            beneficiaries=plan,
            total_amount=int(total_amount),
            valid_until=int(valid_until),
            signature=signature,
            use_stablecoin=use_stablecoin,
            spending_limits=limits,
        )
        self.store.save_will(will)
        # the signing owner is the first source wallet
        self.store.save_linked_wallet(
            LinkedWallet(will_id=will.will_id, address=owner, signature=signature)
        )
        logger.info(f"Will authorized: {will.will_id} owner={will.owner[:10]}... ({len(plan)} beneficiaries)")
        return Ok(will.will_id)

    def get_status(self, owner: str) -> Result[Will]:
        will = self.store.get_will_by_owner(owner)
        if will is None:
            return Err(ErrorKind.NOT_FOUND, f"no will for {owner}")
        return Ok(will)

    def attach_vault(self, will_id: str, owner: str, vault_address: str) -> Result[Will]:
        will = self.store.get_will(will_id)
        if will is None:
            return Err(ErrorKind.NOT_FOUND, f"will {will_id} not found")
        if will.owner != normalize_address(owner):
            return Err(ErrorKind.OWNER_MISMATCH, "caller is not the will owner")
        if will.status != WillStatus.PENDING:
            return Err(ErrorKind.WRONG_STATUS, f"will is {will.status.value}")
        if not is_valid_address(vault_address):
            return Err(ErrorKind.INVALID_REQUEST, f"invalid vault address: {vault_address!r}")

        will.use_kitepass = True
        will.kitepass_address = vault_address
        self.store.save_will(will)
        logger.info(f"Vault attached to {will_id}: {vault_address[:10]}...")
        return Ok(will)

    # ============================================================
    # LINKED WALLETS
    # ============================================================

    def _pending_will(self, will_id: str) -> Result[Will]:
        will = self.store.get_will(will_id)
        if will is None:
            return Err(ErrorKind.NOT_FOUND, f"will {will_id} not found")
        if will.status != WillStatus.PENDING:
            return Err(ErrorKind.WRONG_STATUS, f"will is {will.status.value}")
        return Ok(will)

    def link_wallet(self, will_id: str, address: str, signature: str) -> Result[LinkedWallet]:
        if not is_valid_address(address):
            return Err(ErrorKind.INVALID_REQUEST, f"invalid wallet address: {address!r}")
        found = self._pending_will(will_id)
        if not found.ok:
            return found
        if not self.verifier.verify_link(will_id, address, signature):
            return Err(ErrorKind.INVALID_SIGNATURE, "link signature does not recover to wallet")

        existing = self.store.get_linked_wallet(will_id, address)
        if existing is not None and existing.status == WalletStatus.APPROVED:
            return Ok(existing)

        wallet = LinkedWallet(will_id=will_id, address=address, signature=signature)
        self.store.save_linked_wallet(wallet)
        verb = "re-approved" if existing is not None else "linked"
        logger.info(f"Wallet {verb}: {wallet.address[:10]}... -> {will_id}")
        return Ok(wallet)

    def list_wallets(self, will_id: str, include_all: bool = False) -> Result[list[LinkedWallet]]:
        if self.store.get_will(will_id) is None:
            return Err(ErrorKind.NOT_FOUND, f"will {will_id} not found")
        return Ok(self.store.get_linked_wallets(will_id, approved_only=not include_all))

    def unlink_wallet(self, will_id: str, address: str) -> Result[bool]:
        found = self._pending_will(will_id)
        if not found.ok:
            return found
        approved = self.store.get_linked_wallets(will_id, approved_only=True)
        if normalize_address(address) not in {w.address for w in approved}:
            return Err(ErrorKind.NOT_FOUND, f"{address} is not an approved wallet of {will_id}")
        if len(approved) == 1:
            return Err(ErrorKind.INVALID_REQUEST, "cannot remove the last approved wallet")
        return Ok(self.store.remove_linked_wallet(will_id, address))

    # ============================================================
    # EXECUTION
    # ============================================================

    def _lock(self, will_id: str) -> asyncio.Lock:
        lock = self._execution_locks.get(will_id)
        if lock is None:
            lock = self._execution_locks.setdefault(will_id, asyncio.Lock())
        return lock

    def _strategy(self, will: Will) -> DistributionStrategy:
        token = self.settlement_token or self.ledger.settlement_token
        if will.use_kitepass and will.kitepass_address:
            return VaultWithdrawStrategy(self.vault_provider, token)
        return DirectTransferStrategy(self.ledger, will.use_stablecoin, token)

    async def execute(
        self,
        will_id: str,
        owner: str,
        override_beneficiaries: Optional[list[BeneficiaryInput]] = None,
    ) -> Result[ExecutionOutcome]:
        async with self._lock(will_id):
            result = await self._execute(will_id, owner, override_beneficiaries)
        settled = not result.value.error if result.ok else result.kind in (
            ErrorKind.NOT_FOUND, ErrorKind.WRONG_STATUS,
        )
        if settled:
            # nothing left to serialize for this will
            self._execution_locks.pop(will_id, None)
            self.limiter.release(will_id)
        return result

    async def _execute(
        self,
        will_id: str,
        owner: str,
        override_beneficiaries: Optional[list[BeneficiaryInput]],
    ) -> Result[ExecutionOutcome]:
        will = self.store.get_will(will_id)
        if will is None:
            return Err(ErrorKind.NOT_FOUND, f"will {will_id} not found")
        if will.owner != normalize_address(owner):
            return Err(ErrorKind.OWNER_MISMATCH, "caller is not the will owner")
        if will.status != WillStatus.PENDING:
            return Err(ErrorKind.WRONG_STATUS, f"will is already {will.status.value}")
        if self.ledger is None or not getattr(self.ledger, "initialized", False):
            return Err(ErrorKind.NOT_CONFIGURED, "custody key / ledger not configured")
        vault_mode = will.use_kitepass and bool(will.kitepass_address)
        if vault_mode and self.vault_provider is None:
            return Err(ErrorKind.NOT_CONFIGURED, "vault provider not configured")

        if override_beneficiaries is not None:
            try:
                override = _to_beneficiaries(override_beneficiaries)
            except (TypeError, ValueError, AttributeError) as e:
                return Err(ErrorKind.INVALID_PLAN, f"malformed override: {e}")
            problem = validate_plan(override, one_decimal=True)
            if problem:
                return Err(ErrorKind.INVALID_PLAN, f"override rejected: {problem}")
            # this execution only, never persisted
            will.beneficiaries = override
            logger.info(f"Using override plan for {will_id}: {len(override)} beneficiaries")

        try:
            gas = await self.ledger.balance_of(self.ledger.custody_address)
        except Exception as e:
            return Err(ErrorKind.INSUFFICIENT_GAS, f"custody balance unavailable: {e}")
        if gas < DISTRIBUTION_LAWS.MIN_CUSTODY_GAS_WEI:
            return Err(
                ErrorKind.INSUFFICIENT_GAS,
                f"custody gas {gas} < required {DISTRIBUTION_LAWS.MIN_CUSTODY_GAS_WEI}",
            )

        logger.info(
            f"Executing {will_id}: {'vault' if vault_mode else 'linked wallets'}, "
            f"{'stablecoin' if will.use_stablecoin else 'native'}, "
            f"{len(will.beneficiaries)} beneficiaries"
        )
        attestation_hash = await self._attest(will, vault_mode)

        linked = self.store.get_linked_wallets(will_id, approved_only=True)
        results = await self.fanout.execute(will, linked, self._strategy(will))

        outcome = ExecutionOutcome(will_id, results, attestation_hash, success=True)
        try:
            self.store.update_status(will_id, WillStatus.EXECUTED)
        except StoreError as e:
            # transfers are already out; report instead of raising
            logger.error(f"Could not mark {will_id} executed: {e}")
            outcome.error = f"status not persisted: {e}"
        logger.info(
            f"Will executed: {will_id} | {len(outcome.confirmed)} confirmed, "
            f"{len(outcome.failed)} failed"
        )
        return Ok(outcome)

    async def _attest(self, will: Will, vault_mode: bool) -> Optional[str]:
        if self.attestation is None:
            logger.warning("Death certificate registry not configured, skipping attestation")
            return None
        label = "Silene Protocol (KitePass)" if vault_mode else "Silene Protocol"
        message = f"{label}: Death confirmed for will {will.will_id}"
        try:
            tx_hash = await self.attestation.record(
                will.will_id, will.owner, len(will.beneficiaries), message
            )
        except Exception as e:
            logger.warning(f"Death declaration failed (non-blocking): {e}")
            return None

        try:
            self.store.save_transaction(TransactionRecord(
                tx_hash=tx_hash,
                will_id=will.will_id,
                source_wallet=will.owner,
                beneficiary_address=getattr(self.attestation, "address", ""),
                beneficiary_name="Death Certificate Registry",
                amount=0,
                token_symbol=getattr(self.ledger, "native_symbol", "") or "KITE",
                tx_type=TxType.DEATH_DECLARATION,
            ))
        except Exception as e:
            logger.error(f"Could not persist death declaration {tx_hash}: {e}")
        logger.info(f"Death declared on-chain for {will.will_id}: {tx_hash[:18]}...")
        return tx_hash
