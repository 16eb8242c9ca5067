"""
Domain Models - Wills, Linked Wallets, Transactions, Results

All amounts are integers in the asset's smallest unit (wei-like).
Serialized forms carry amounts as decimal strings so JSON readers in
other languages never lose precision.

Addresses are normalized to lower-case at the boundary (normalize_address);
nothing downstream compares addresses case-insensitively.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

from eth_utils import is_address

from .constitution import DISTRIBUTION_LAWS


def normalize_address(address: str) -> str:
    """Canonical (lower-case, stripped) form used for every stored address."""
    return (address or "").strip().lower()


def is_valid_address(address: str) -> bool:
    try:
        return bool(address) and is_address(address)
    except Exception:
        return False


def utc_today() -> str:
    """Current UTC calendar date as YYYY-MM-DD."""
    return datetime.now(timezone.utc).date().isoformat()


def generate_will_id() -> str:
    return f"will_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


# ============================================================
# ENUMS
# ============================================================

class WillStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    EXPIRED = "expired"      # set by external policy only


class WalletStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REMOVED = "removed"      # soft delete, kept for audit


class TxType(str, Enum):
    DEATH_DECLARATION = "DEATH_DECLARATION"
    DISTRIBUTION = "DISTRIBUTION"


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Validation-class failures. Only these short-circuit an operation."""
    NOT_FOUND = "not_found"
    OWNER_MISMATCH = "owner_mismatch"
    WRONG_STATUS = "wrong_status"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_PLAN = "invalid_plan"
    INSUFFICIENT_GAS = "insufficient_gas"
    NOT_CONFIGURED = "not_configured"
    INVALID_REQUEST = "invalid_request"


# ============================================================
# RESULT TYPE
# ============================================================

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str = ""
    ok: bool = field(default=False, init=False)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


Result = Union[Ok[T], Err]


# ============================================================
# VALUE OBJECTS
# ============================================================

@dataclass
class Beneficiary:
    address: str
    percentage: float              # one decimal place honoured, e.g. 36.3
    name: str = ""
    category: str = ""
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "percentage": self.percentage,
            "name": self.name,
            "category": self.category,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Beneficiary":
        return cls(
            address=d.get("address") or d.get("walletAddress") or "",
            percentage=float(d.get("percentage", 0)),
            name=d.get("name", ""),
            category=d.get("category", ""),
            reason=d.get("reason", ""),
        )


@dataclass
class SpendingLimits:
    """Embedded in a Will; mutated in place during execution."""
    per_tx_limit: int = DISTRIBUTION_LAWS.DEFAULT_PER_TX_LIMIT
    daily_limit: int = DISTRIBUTION_LAWS.DEFAULT_DAILY_LIMIT
    daily_spent: int = 0
    last_reset_date: str = field(default_factory=utc_today)

    def to_dict(self) -> dict:
        return {
            "perTxLimit": str(self.per_tx_limit),
            "dailyLimit": str(self.daily_limit),
            "dailySpent": str(self.daily_spent),
            "lastResetDate": self.last_reset_date,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SpendingLimits":
        return cls(
            per_tx_limit=int(d.get("perTxLimit", DISTRIBUTION_LAWS.DEFAULT_PER_TX_LIMIT)),
            daily_limit=int(d.get("dailyLimit", DISTRIBUTION_LAWS.DEFAULT_DAILY_LIMIT)),
            daily_spent=int(d.get("dailySpent", 0)),
            last_reset_date=d.get("lastResetDate") or utc_today(),
        )


# ============================================================
# AGGREGATES
# ============================================================

@dataclass
class Will:
    will_id: str
    owner: str
    beneficiaries: list[Beneficiary]
    total_amount: int
    valid_until: int
    signature: str
    created_at: float = field(default_factory=time.time)
    status: WillStatus = WillStatus.PENDING
    use_stablecoin: bool = False
    use_kitepass: bool = False
    kitepass_address: Optional[str] = None
    spending_limits: SpendingLimits = field(default_factory=SpendingLimits)

    def to_dict(self) -> dict:
        return {
            "willId": self.will_id,
            "owner": self.owner,
            "beneficiaries": [b.to_dict() for b in self.beneficiaries],
            "totalAmount": str(self.total_amount),
            "validUntil": self.valid_until,
            "signature": self.signature,
            "createdAt": self.created_at,
            "status": self.status.value,
            "useStablecoin": self.use_stablecoin,
            "useKitepass": self.use_kitepass,
            "kitepassAddress": self.kitepass_address,
            "spendingLimits": self.spending_limits.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Will":
        return cls(
            will_id=d["willId"],
            owner=d["owner"],
            beneficiaries=[Beneficiary.from_dict(b) for b in d.get("beneficiaries", [])],
            total_amount=int(d.get("totalAmount", 0)),
            valid_until=int(d.get("validUntil", 0)),
            signature=d.get("signature", ""),
            created_at=d.get("createdAt", 0.0),
            status=WillStatus(d.get("status", "pending")),
            use_stablecoin=bool(d.get("useStablecoin", False)),
            use_kitepass=bool(d.get("useKitepass", False)),
            kitepass_address=d.get("kitepassAddress"),
            spending_limits=SpendingLimits.from_dict(d.get("spendingLimits", {})),
        )


@dataclass
class LinkedWallet:
    will_id: str
    address: str
    signature: str
    approved_at: float = field(default_factory=time.time)
    status: WalletStatus = WalletStatus.APPROVED

    def to_dict(self) -> dict:
        return {
            "willId": self.will_id,
            "address": self.address,
            "signature": self.signature,
            "approvedAt": self.approved_at,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "LinkedWallet":
        return cls(
            will_id=d["willId"],
            address=d["address"],
            signature=d.get("signature", ""),
            approved_at=d.get("approvedAt", 0.0),
            status=WalletStatus(d.get("status", "approved")),
        )


@dataclass
class TransactionRecord:
    """Append-only audit row. Upserted by tx_hash, never otherwise mutated."""
    tx_hash: str
    will_id: str
    source_wallet: str
    beneficiary_address: str
    amount: int
    token_symbol: str
    tx_type: TxType
    status: TxStatus = TxStatus.CONFIRMED
    beneficiary_name: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "txHash": self.tx_hash,
            "willId": self.will_id,
            "sourceWallet": self.source_wallet,
            "beneficiaryAddress": self.beneficiary_address,
            "beneficiaryName": self.beneficiary_name,
            "amount": str(self.amount),
            "tokenSymbol": self.token_symbol,
            "txType": self.tx_type.value,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TransactionRecord":
        return cls(
            tx_hash=d["txHash"],
            will_id=d["willId"],
            source_wallet=d.get("sourceWallet", ""),
            beneficiary_address=d.get("beneficiaryAddress", ""),
            beneficiary_name=d.get("beneficiaryName", ""),
            amount=int(d.get("amount", 0)),
            token_symbol=d.get("tokenSymbol", ""),
            tx_type=TxType(d["txType"]),
            status=TxStatus(d.get("status", "confirmed")),
            created_at=d.get("createdAt", 0.0),
        )


# ============================================================
# EXECUTION OUTPUT
# ============================================================

@dataclass
class ExecutionResult:
    """Outcome of one (source wallet, beneficiary) pair."""
    beneficiary: str
    beneficiary_address: str
    source_wallet: str
    amount: int
    status: TxStatus
    token_symbol: str
    tx_hash: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        d = {
            "beneficiary": self.beneficiary,
            "beneficiaryAddress": self.beneficiary_address,
            "sourceWallet": self.source_wallet,
            "txHash": self.tx_hash,
            "amount": str(self.amount),
            "status": self.status.value,
            "tokenSymbol": self.token_symbol,
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class ExecutionOutcome:
    will_id: str
    results: list[ExecutionResult] = field(default_factory=list)
    attestation_tx_hash: Optional[str] = None
    success: bool = True
    error: str = ""

    @property
    def confirmed(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.status == TxStatus.CONFIRMED]

    @property
    def failed(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.status == TxStatus.FAILED]

    def to_dict(self) -> dict:
        d = {
            "success": self.success,
            "willId": self.will_id,
            "transactions": [r.to_dict() for r in self.results],
            "attestationTxHash": self.attestation_tx_hash,
            "confirmed": len(self.confirmed),
            "failed": len(self.failed),
        }
        if self.error:
            d["error"] = self.error
        return d
