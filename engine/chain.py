"""
Ledger Client - On-Chain Transaction Layer

Submits transfers and calls signed by the service custody key, waits for
receipts, and reads balances/allowances for the fan-out executor.

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Calldata built from plain function signatures, no compiled ABI JSON needed
- Gas estimation + 20% buffer, nonce auto from chain
- submit() and wait() are separate so callers can log the hash before blocking
- Failures are raised (ChainError); the fan-out executor decides what they mean

Designed for: Silene dead man's switch protocol
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from .constitution import CHAIN_DEFAULTS, DEFAULT_CHAIN

logger = logging.getLogger("silene.chain")


class ChainError(Exception):
    """Submission failed or the receipt reported a revert."""


# ============================================================
# CALLDATA
# ============================================================

def encode_call(signature: str, args: list) -> bytes:
    """
    ABI-encode a call from its canonical signature.

        encode_call("transfer(address,uint256)", [to, amount])
    """
    _, _, rest = signature.partition("(")
    arg_types = [t.strip() for t in rest.rstrip(")").split(",") if t.strip()]
    if len(arg_types) != len(args):
        raise ValueError(f"{signature}: expected {len(arg_types)} args, got {len(args)}")
    prepared = [
        to_checksum_address(a) if t == "address" else a
        for t, a in zip(arg_types, args)
    ]
    return function_signature_to_4byte_selector(signature) + abi_encode(arg_types, prepared)


def erc20_transfer(to: str, amount: int) -> bytes:
    return encode_call("transfer(address,uint256)", [to, amount])


def erc20_transfer_from(owner: str, to: str, amount: int) -> bytes:
    return encode_call("transferFrom(address,address,uint256)", [owner, to, amount])


def death_certificate_call(will_id: str, owner: str, beneficiary_count: int, message: str) -> bytes:
    return encode_call(
        "recordDeath(bytes32,address,uint256,string)",
        [keccak(text=will_id), owner, beneficiary_count, message],
    )


# Minimal read ABI, only the views the executor calls
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class TxReceipt:
    """Result of waiting on a submitted transaction."""
    tx_hash: str
    success: bool
    gas_used: int = 0
    error: str = ""


# ============================================================
# WEB3 LEDGER
# ============================================================

class Web3Ledger:
    """
    Ledger client backed by a JSON-RPC node and the custody key.

    Usage:
        ledger = Web3Ledger()
        if ledger.initialize(custody_key):
            tx = await ledger.submit(token, 0, erc20_transfer(to, amount))
            receipt = await ledger.wait(tx)
    """

    def __init__(self):
        self._initialized: bool = False
        self._custody_key: str = ""
        self._custody_address: str = ""
        self._w3 = None
        self._chain: str = ""
        self._chain_cfg: dict = {}
        self._token_address: str = ""
        self._tx_count: int = 0
        self._last_error: str = ""

    def initialize(
        self,
        custody_private_key: str,
        chain: str = DEFAULT_CHAIN,
        rpc_override: Optional[str] = None,
        token_address: Optional[str] = None,
    ) -> bool:
        from web3 import Web3
        from eth_account import Account

        if not custody_private_key:
            logger.warning("No CUSTODY_PRIVATE_KEY — ledger client disabled")
            return False

        chain_cfg = CHAIN_DEFAULTS.get(chain)
        if not chain_cfg:
            logger.warning(f"Unknown chain '{chain}' — ledger client disabled")
            return False

        try:
            self._custody_address = Account.from_key(custody_private_key).address
        except Exception as e:
            logger.error(f"Invalid CUSTODY_PRIVATE_KEY: {e}")
            return False
        self._custody_key = custody_private_key

        rpc_url = rpc_override or os.getenv(f"{chain.upper()}_RPC_URL", chain_cfg["rpc"])
        try:
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
            if not w3.is_connected():
                logger.warning(f"Cannot connect to {chain} RPC ({rpc_url})")
                return False
        except Exception as e:
            logger.warning(f"Failed to initialize {chain}: {e}")
            return False

        self._w3 = w3
        self._chain = chain
        self._chain_cfg = chain_cfg
        self._token_address = to_checksum_address(token_address or chain_cfg["token_address"])
        self._initialized = True
        logger.info(
            f"Ledger connected: {chain} | custody={self._custody_address[:10]}... "
            f"| token={self._token_address[:10]}..."
        )
        return True

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def custody_address(self) -> str:
        return self._custody_address

    @property
    def settlement_token(self) -> str:
        return self._token_address

    @property
    def native_symbol(self) -> str:
        return self._chain_cfg.get("native_symbol", "")

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    def _token(self, token: Optional[str]):
        return self._w3.eth.contract(
            address=to_checksum_address(token or self._token_address), abi=ERC20_ABI
        )

    # ============================================================
    # READS
    # ============================================================

    async def balance_of(self, address: str, token: Optional[str] = None) -> int:
        """Native balance when token is None, else ERC-20 balance."""
        addr = to_checksum_address(address)
        if token is None:
            return int(await self._run(lambda: self._w3.eth.get_balance(addr)))
        contract = self._token(token)
        return int(await self._run(contract.functions.balanceOf(addr).call))

    async def allowance(self, owner: str, spender: str, token: Optional[str] = None) -> int:
        contract = self._token(token)
        fn = contract.functions.allowance(to_checksum_address(owner), to_checksum_address(spender))
        return int(await self._run(fn.call))

    async def token_symbol(self, token: Optional[str] = None) -> str:
        return str(await self._run(self._token(token).functions.symbol().call))

    # ============================================================
    # WRITES
    # ============================================================

    async def submit(self, target: str, value: int, payload: bytes) -> str:
        """Sign and broadcast. Returns the tx hash (0x hex). Raises ChainError."""
        if not self._initialized:
            raise ChainError("ledger client not initialized")

        w3 = self._w3

        def _send():
            tx = {
                "from": self._custody_address,
                "to": to_checksum_address(target),
                "value": int(value),
                "data": payload or b"",
                "nonce": w3.eth.get_transaction_count(self._custody_address, "pending"),
                "gasPrice": w3.eth.gas_price,
                "chainId": self._chain_cfg["chain_id"],
            }
            # Gas estimation + 20% buffer
            try:
                tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed, using default 200k: {gas_err}")
                tx["gas"] = 200_000
            signed = w3.eth.account.sign_transaction(tx, self._custody_key)
            return w3.eth.send_raw_transaction(signed.raw_transaction)

        try:
            tx_hash = await self._run(_send)
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            raise ChainError(self._last_error) from e

        tx_hash_hex = tx_hash.to_0x_hex() if hasattr(tx_hash, "to_0x_hex") else tx_hash.hex()
        if not tx_hash_hex.startswith("0x"):
            tx_hash_hex = "0x" + tx_hash_hex
        logger.info(f"TX SENT [{self._chain}]: {tx_hash_hex[:18]}...")
        return tx_hash_hex

    async def wait(self, tx_hash: str, timeout: int = 120) -> TxReceipt:
        """Block until mined. Raises ChainError on timeout or revert."""
        w3 = self._w3
        try:
            receipt = await self._run(
                lambda: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            )
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            raise ChainError(self._last_error) from e

        if receipt["status"] != 1:
            self._last_error = f"TX reverted: {tx_hash}"
            logger.warning(f"TX FAILED [{self._chain}]: {self._last_error}")
            raise ChainError(self._last_error)

        self._tx_count += 1
        gas_used = receipt.get("gasUsed", 0)
        logger.info(f"TX SUCCESS [{self._chain}]: {tx_hash[:18]}... | gas={gas_used}")
        return TxReceipt(tx_hash=tx_hash, success=True, gas_used=gas_used)

    # ============================================================
    # STATUS
    # ============================================================

    def get_explorer_url(self, tx_hash: str) -> str:
        explorer = self._chain_cfg.get("explorer") or CHAIN_DEFAULTS[DEFAULT_CHAIN]["explorer"]
        return f"{explorer}/tx/{tx_hash}"

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "chain": self._chain,
            "custody_address": self._custody_address[:10] + "..." if self._custody_address else "",
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }


# ============================================================
# ATTESTATION SINK
# ============================================================

class DeathCertificateRegistry:
    """Records the trigger attestation on-chain. Returns the tx hash."""

    def __init__(self, ledger, registry_address: str):
        self.ledger = ledger
        self.address = registry_address

    async def record(self, will_id: str, owner: str, beneficiary_count: int, message: str) -> str:
        payload = death_certificate_call(will_id, owner, beneficiary_count, message)
        tx_hash = await self.ledger.submit(self.address, 0, payload)
        logger.info(f"Death declaration sent for {will_id}: {tx_hash[:18]}...")
        receipt = await self.ledger.wait(tx_hash)
        return receipt.tx_hash
