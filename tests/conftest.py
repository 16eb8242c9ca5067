"""Shared fakes and fixtures. No network, no chain."""

import asyncio
from types import SimpleNamespace

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data

from engine.chain import ChainError, TxReceipt
from engine.limiter import SpendingLimiter
from engine.models import Beneficiary, SpendingLimits, Will
from engine.signature import SignatureVerifier, build_typed_data, create_link_message
from engine.store import JsonStore
from engine.lifecycle import WillService

OWNER = Account.from_key("0x" + "11" * 32)
SECOND = Account.from_key("0x" + "22" * 32)
STRANGER = Account.from_key("0x" + "33" * 32)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20

CUSTODY = "0x" + "cc" * 20
TOKEN = "0x" + "70" * 20
VAULT = "0x" + "7a" * 20
REGISTRY = "0x" + "de" * 20

ETH = 10**18


def sign_will(account, beneficiaries, total_amount=1000, valid_until=1_900_000_000) -> str:
    typed = build_typed_data(account.address, beneficiaries, total_amount, valid_until)
    signed = Account.sign_message(encode_typed_data(full_message=typed), account.key)
    return "0x" + bytes(signed.signature).hex()


def sign_link(account, will_id: str) -> str:
    msg = encode_defunct(text=create_link_message(will_id, account.address))
    return "0x" + bytes(Account.sign_message(msg, account.key).signature).hex()


def make_will(beneficiaries, will_id="will_test", owner=None, per_tx=10**30, daily=10**30, **kw) -> Will:
    return Will(
        will_id=will_id,
        owner=(owner or OWNER.address).lower(),
        beneficiaries=[Beneficiary(address=a, percentage=p, name=n) for n, a, p in beneficiaries],
        total_amount=1000,
        valid_until=1_900_000_000,
        signature="0x",
        spending_limits=SpendingLimits(per_tx_limit=per_tx, daily_limit=daily),
        **kw,
    )


class FakeLedger:
    """In-memory ledger. Balances keyed by lower-case address."""

    def __init__(self, native=None, tokens=None, allowances=None, custody_gas=ETH):
        self.initialized = True
        self.custody_address = CUSTODY
        self.settlement_token = TOKEN
        self.native_symbol = "KITE"
        self.native = {k.lower(): v for k, v in (native or {}).items()}
        self.native[CUSTODY] = custody_gas
        self.tokens = {k.lower(): v for k, v in (tokens or {}).items()}
        self.allowances = {k.lower(): v for k, v in (allowances or {}).items()}
        self.fail_to: dict[str, int] = {}      # recipient -> number of failures left
        self.broken: set[str] = set()          # balance query raises
        self.submitted: list[SimpleNamespace] = []

    def fail_transfers_to(self, address: str, times: int = 1):
        self.fail_to[address.lower()] = times

    async def balance_of(self, address, token=None):
        a = address.lower()
        if a in self.broken:
            raise ChainError("rpc unavailable")
        if token is None:
            return self.native.get(a, 0)
        return self.tokens.get(a, 0)

    async def allowance(self, owner, spender, token=None):
        return self.allowances.get(owner.lower(), 0)

    async def token_symbol(self, token=None):
        return "USDT"

    async def submit(self, target, value, payload):
        tx_hash = "0x" + f"{len(self.submitted) + 1:064x}"
        self.submitted.append(SimpleNamespace(
            hash=tx_hash, target=target.lower(), value=value, payload=payload,
        ))
        return tx_hash

    def _involves(self, sub, address: str) -> bool:
        return sub.target == address or bytes.fromhex(address[2:]) in (sub.payload or b"")

    async def wait(self, tx_hash, timeout=120):
        sub = next(s for s in self.submitted if s.hash == tx_hash)
        for address, left in self.fail_to.items():
            if left > 0 and self._involves(sub, address):
                self.fail_to[address] = left - 1
                raise ChainError("execution reverted")
        return TxReceipt(tx_hash=tx_hash, success=True, gas_used=21000)


class FakeVault:
    def __init__(self, ledger, balances=None):
        self.ledger = ledger
        self.balances = {k.lower(): v for k, v in (balances or {}).items()}
        self.withdrawals = []
        self.fail_to: set[str] = set()

    async def balance(self, vault, token):
        return self.balances.get(vault.lower(), 0)

    async def withdraw(self, vault, token, amount, recipient):
        if recipient.lower() in self.fail_to:
            raise ChainError("withdraw failed")
        self.withdrawals.append((vault, token, amount, recipient))
        return TxReceipt(tx_hash="0xab" + f"{len(self.withdrawals):062x}", success=True)


class FakeAttestation:
    def __init__(self, fail: bool = False):
        self.address = REGISTRY
        self.fail = fail
        self.calls = []

    async def record(self, will_id, owner, beneficiary_count, message):
        self.calls.append((will_id, owner, beneficiary_count, message))
        if self.fail:
            raise ChainError("registry reverted")
        return "0x" + "d0" * 32


class FakeLLM:
    """Returns queued responses in order; an Exception instance is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.configured = True

    async def complete_json(self, system, user, **kwargs):
        self.calls.append((system, user))
        if not self.responses:
            raise ValueError("no response queued")
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store():
    return JsonStore(path=None)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def service(store, ledger):
    return WillService(
        store=store,
        verifier=SignatureVerifier(),
        limiter=SpendingLimiter(),
        ledger=ledger,
        vault_provider=FakeVault(ledger),
        attestation=FakeAttestation(),
    )
