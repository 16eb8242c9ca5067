"""
KitePass Adapter - custodial-vault withdrawal

A KitePass vault is an account-abstraction wallet whose owner is the
service custody key. Distribution from a vault is two transactions:

    1. vault.withdrawFunds(token, amount)    -> funds land on custody
    2. token.transfer(recipient, amount)     -> custody forwards them

The second hash is the one recorded for the beneficiary. If step 2
fails after step 1 succeeded, the funds sit on custody and the error
says so; nothing is retried automatically.

Designed for: Silene dead man's switch protocol
"""

import logging

from engine.chain import ChainError, TxReceipt, encode_call, erc20_transfer

logger = logging.getLogger("silene.adapter.kitepass")


def withdraw_funds_call(token: str, amount: int) -> bytes:
    return encode_call("withdrawFunds(address,uint256)", [token, amount])


class KitepassVault:
    """Vault provider over the ledger client (submit/wait)."""

    def __init__(self, ledger):
        self.ledger = ledger

    async def balance(self, vault: str, token: str) -> int:
        return await self.ledger.balance_of(vault, token)

    async def withdraw(self, vault: str, token: str, amount: int, recipient: str) -> TxReceipt:
        """Move amount of token from the vault to recipient. Raises ChainError."""
        pull_hash = await self.ledger.submit(vault, 0, withdraw_funds_call(token, amount))
        await self.ledger.wait(pull_hash)
        logger.info(f"Vault {vault[:10]}... released {amount} (tx {pull_hash[:18]}...)")

        try:
            send_hash = await self.ledger.submit(token, 0, erc20_transfer(recipient, amount))
            return await self.ledger.wait(send_hash)
        except ChainError as e:
            raise ChainError(
                f"withdrawn to custody ({pull_hash}) but forward to {recipient} failed: {e}"
            ) from e
