"""
Authorization Store - wills, linked wallets, transaction log.

Three repository interfaces (WillRepository, LinkedWalletRepository,
TransactionRepository) injected into the engine. JsonStore implements all
three over one JSON file with atomic writes (temp file + os.replace), or
purely in memory when path is None.

Reads return copies: a caller's working copy of a Will never aliases the
stored record, so nothing in memory is authoritative across calls.
Addresses are normalized on the way in; lookups never need LOWER().
"""

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional, Protocol

from .models import (
    LinkedWallet, SpendingLimits, TransactionRecord, WalletStatus, Will, WillStatus,
    normalize_address,
)

logger = logging.getLogger("silene.store")


class StoreError(Exception):
    """Store file is unreadable or could not be written."""


# ============================================================
# REPOSITORY INTERFACES
# ============================================================

class WillRepository(Protocol):
    def get_will(self, will_id: str) -> Optional[Will]: ...
    def get_will_by_owner(self, owner: str) -> Optional[Will]: ...
    def save_will(self, will: Will) -> None: ...
    def update_status(self, will_id: str, status: WillStatus) -> None: ...
    def update_spending_limits(self, will_id: str, limits: SpendingLimits) -> None: ...


class LinkedWalletRepository(Protocol):
    def save_linked_wallet(self, wallet: LinkedWallet) -> None: ...
    def get_linked_wallet(self, will_id: str, address: str) -> Optional[LinkedWallet]: ...
    def get_linked_wallets(self, will_id: str, approved_only: bool = True) -> list[LinkedWallet]: ...
    def remove_linked_wallet(self, will_id: str, address: str) -> bool: ...


class TransactionRepository(Protocol):
    def save_transaction(self, record: TransactionRecord) -> None: ...
    def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]: ...
    def list_by_will(self, will_id: str) -> list[TransactionRecord]: ...
    def list_by_wallet(self, address: str) -> list[TransactionRecord]: ...
    def list_recent(self, limit: int = 100) -> list[TransactionRecord]: ...


# ============================================================
# JSON FILE STORE
# ============================================================

class JsonStore:
    """
    Single-file store implementing all three repositories.

    Layout on disk:
        {"wills": {willId: {...}}, "linked_wallets": [{...}],
         "transactions": {txHash: {...}}, "saved_at": ts}
    """

    def __init__(self, path: Optional[str] = "data/silene_store.json"):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._wills: dict[str, dict] = {}
        self._wallets: list[dict] = []
        self._transactions: dict[str, dict] = {}
        if self.path is not None:
            self._load()

    # ------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------

    def _load(self) -> None:
        if not self.path.exists():
            logger.info(f"No store file at {self.path} — starting fresh")
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"cannot read store {self.path}: {e}") from e

        self._wills = state.get("wills", {})
        self._wallets = state.get("linked_wallets", [])
        self._transactions = state.get("transactions", {})
        logger.info(
            f"Store loaded: {len(self._wills)} wills, {len(self._wallets)} linked wallets, "
            f"{len(self._transactions)} tx"
        )

    def _flush(self) -> None:
        if self.path is None:
            return
        state = {
            "wills": self._wills,
            "linked_wallets": self._wallets,
            "transactions": self._transactions,
            "saved_at": time.time(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix="silene_store_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, ensure_ascii=False, indent=2)
            # atomic on the same filesystem
            os.replace(tmp_path, str(self.path))
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreError(f"cannot write store {self.path}: {e}") from e

    # ------------------------------------------------------------
    # wills
    # ------------------------------------------------------------

    def get_will(self, will_id: str) -> Optional[Will]:
        with self._lock:
            row = self._wills.get(will_id)
            return Will.from_dict(row) if row else None

    def get_will_by_owner(self, owner: str) -> Optional[Will]:
        """Latest-created will of an owner (re-authorization wins)."""
        owner = normalize_address(owner)
        with self._lock:
            rows = [w for w in self._wills.values() if w["owner"] == owner]
            if not rows:
                return None
            latest = max(rows, key=lambda w: w.get("createdAt", 0))
            return Will.from_dict(latest)

    def save_will(self, will: Will) -> None:
        will.owner = normalize_address(will.owner)
        if will.kitepass_address:
            will.kitepass_address = normalize_address(will.kitepass_address)
        with self._lock:
            self._wills[will.will_id] = will.to_dict()
            self._flush()
        logger.info(f"Will saved: {will.will_id}")

    def update_status(self, will_id: str, status: WillStatus) -> None:
        with self._lock:
            row = self._wills.get(will_id)
            if row is None:
                raise KeyError(will_id)
            row["status"] = status.value
            self._flush()
        logger.info(f"Will {will_id} status -> {status.value}")

    def update_spending_limits(self, will_id: str, limits: SpendingLimits) -> None:
        with self._lock:
            row = self._wills.get(will_id)
            if row is None:
                raise KeyError(will_id)
            row["spendingLimits"] = limits.to_dict()
            self._flush()

    def list_wills(self) -> list[Will]:
        with self._lock:
            rows = sorted(self._wills.values(), key=lambda w: w.get("createdAt", 0), reverse=True)
            return [Will.from_dict(r) for r in rows]

    # ------------------------------------------------------------
    # linked wallets
    # ------------------------------------------------------------

    def _find_wallet(self, will_id: str, address: str) -> Optional[dict]:
        address = normalize_address(address)
        for row in self._wallets:
            if row["willId"] == will_id and row["address"] == address:
                return row
        return None

    def save_linked_wallet(self, wallet: LinkedWallet) -> None:
        """Upsert on (willId, address)."""
        wallet.address = normalize_address(wallet.address)
        with self._lock:
            existing = self._find_wallet(wallet.will_id, wallet.address)
            if existing is not None:
                existing.update(wallet.to_dict())
            else:
                self._wallets.append(wallet.to_dict())
            self._flush()
        logger.info(f"Linked wallet saved: {wallet.address[:10]}... for will {wallet.will_id}")

    def get_linked_wallet(self, will_id: str, address: str) -> Optional[LinkedWallet]:
        with self._lock:
            row = self._find_wallet(will_id, address)
            return LinkedWallet.from_dict(row) if row else None

    def get_linked_wallets(self, will_id: str, approved_only: bool = True) -> list[LinkedWallet]:
        """Approval order (oldest first); fan-out order depends on it."""
        with self._lock:
            rows = [r for r in self._wallets if r["willId"] == will_id]
            if approved_only:
                rows = [r for r in rows if r["status"] == WalletStatus.APPROVED.value]
            rows.sort(key=lambda r: r.get("approvedAt", 0))
            return [LinkedWallet.from_dict(r) for r in rows]

    def remove_linked_wallet(self, will_id: str, address: str) -> bool:
        """Soft delete. Returns False if the wallet was never linked."""
        with self._lock:
            row = self._find_wallet(will_id, address)
            if row is None:
                return False
            row["status"] = WalletStatus.REMOVED.value
            self._flush()
        logger.info(f"Linked wallet removed: {normalize_address(address)[:10]}... from will {will_id}")
        return True

    # ------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------

    def save_transaction(self, record: TransactionRecord) -> None:
        """Upsert by hash: re-inserting the same hash is idempotent."""
        record.source_wallet = normalize_address(record.source_wallet)
        record.beneficiary_address = normalize_address(record.beneficiary_address)
        with self._lock:
            if record.tx_hash in self._transactions:
                logger.debug(f"Transaction {record.tx_hash[:10]}... already recorded")
            self._transactions[record.tx_hash] = record.to_dict()
            self._flush()
        logger.info(f"Transaction saved: {record.tx_hash[:10]}... ({record.tx_type.value})")

    def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        with self._lock:
            row = self._transactions.get(tx_hash)
            return TransactionRecord.from_dict(row) if row else None

    def _sorted(self, rows) -> list[TransactionRecord]:
        rows = sorted(rows, key=lambda r: r.get("createdAt", 0), reverse=True)
        return [TransactionRecord.from_dict(r) for r in rows]

    def list_by_will(self, will_id: str) -> list[TransactionRecord]:
        with self._lock:
            return self._sorted(r for r in self._transactions.values() if r["willId"] == will_id)

    def list_by_wallet(self, address: str) -> list[TransactionRecord]:
        address = normalize_address(address)
        with self._lock:
            return self._sorted(
                r for r in self._transactions.values() if r["sourceWallet"] == address
            )

    def list_recent(self, limit: int = 100) -> list[TransactionRecord]:
        with self._lock:
            return self._sorted(self._transactions.values())[:limit]
