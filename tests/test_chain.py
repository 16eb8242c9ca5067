import pytest
from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector, keccak

from engine.adapters.kitepass_adapter import KitepassVault
from engine.chain import (
    ChainError, DeathCertificateRegistry, Web3Ledger, death_certificate_call, encode_call,
    erc20_transfer, erc20_transfer_from,
)

from conftest import ALICE, BOB, OWNER, REGISTRY, TOKEN, VAULT, FakeLedger, run


class TestCalldata:
    def test_transfer_selector_and_args(self):
        data = erc20_transfer(ALICE, 600)
        assert data[:4] == bytes.fromhex("a9059cbb")
        to, amount = decode(["address", "uint256"], data[4:])
        assert to.lower() == ALICE
        assert amount == 600

    def test_transfer_from(self):
        data = erc20_transfer_from(BOB, ALICE, 10**30)
        assert data[:4] == bytes.fromhex("23b872dd")
        src, dst, amount = decode(["address", "address", "uint256"], data[4:])
        assert (src.lower(), dst.lower(), amount) == (BOB, ALICE, 10**30)

    def test_death_certificate(self):
        data = death_certificate_call("will_1", OWNER.address, 2, "Death confirmed")
        assert data[:4] == function_signature_to_4byte_selector("recordDeath(bytes32,address,uint256,string)")
        will_hash, owner, count, message = decode(["bytes32", "address", "uint256", "string"], data[4:])
        assert will_hash == keccak(text="will_1")
        assert owner.lower() == OWNER.address.lower()
        assert (count, message) == (2, "Death confirmed")

    def test_arg_count_mismatch(self):
        with pytest.raises(ValueError):
            encode_call("transfer(address,uint256)", [ALICE])

    def test_no_arg_call(self):
        assert encode_call("symbol()", []) == function_signature_to_4byte_selector("symbol()")


class TestLedgerWithoutKey:
    def test_initialize_without_key_is_disabled(self):
        ledger = Web3Ledger()
        assert ledger.initialize("") is False
        assert not ledger.initialized
        assert ledger.get_status()["initialized"] is False

    def test_submit_requires_initialize(self):
        with pytest.raises(ChainError):
            run(Web3Ledger().submit(ALICE, 1, b""))

    def test_explorer_url(self):
        assert Web3Ledger().get_explorer_url("0xabc") == "https://testnet.kitescan.ai/tx/0xabc"


class TestRegistryAndVault:
    def test_registry_submits_and_waits(self):
        ledger = FakeLedger()
        tx = run(DeathCertificateRegistry(ledger, REGISTRY).record("will_1", OWNER.address, 2, "msg"))
        assert tx == ledger.submitted[0].hash
        assert ledger.submitted[0].target == REGISTRY

    def test_registry_revert_raises(self):
        ledger = FakeLedger()
        ledger.fail_transfers_to(REGISTRY)
        with pytest.raises(ChainError):
            run(DeathCertificateRegistry(ledger, REGISTRY).record("will_1", OWNER.address, 2, "msg"))

    def test_vault_withdraw_then_forward(self):
        ledger = FakeLedger()
        receipt = run(KitepassVault(ledger).withdraw(VAULT, TOKEN, 600, ALICE))
        pull, send = ledger.submitted
        assert pull.target == VAULT
        assert pull.payload[:4] == function_signature_to_4byte_selector("withdrawFunds(address,uint256)")
        assert send.target == TOKEN
        assert send.payload == erc20_transfer(ALICE, 600)
        assert receipt.tx_hash == send.hash

    def test_vault_forward_failure_mentions_custody(self):
        ledger = FakeLedger()
        ledger.fail_transfers_to(ALICE)
        with pytest.raises(ChainError, match="withdrawn to custody"):
            run(KitepassVault(ledger).withdraw(VAULT, TOKEN, 600, ALICE))
