"""
Will Signature Verification - EIP-712 authorization + EIP-191 wallet links.

The owner signs a WillAuthorization typed-data message in their wallet.
The beneficiary list travels inside it as a JSON string, so the exact
bytes of that string decide whether the signature recovers. Clients
serialize with different key orders; canonicalize() pins the order to
address, name, percentage and renders numbers the way a JavaScript
client's JSON.stringify does (60, not 60.0).

Linked wallets prove opt-in with a plain personal_sign of
create_link_message(), same flow as dashboard login: recover, compare.

Verification never raises: any recovery failure is a False.
"""

import json
import logging
from typing import Iterable, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data

from .constitution import EIP712_DOMAIN_TYPE, WILL_DOMAIN, WILL_TYPES
from .models import Beneficiary, normalize_address

logger = logging.getLogger("silene.signature")


def _js_number(value: float) -> Union[int, float]:
    """Render a percentage the way JSON.stringify would."""
    value = float(value)
    if value.is_integer():
        return int(value)
    return value


def canonicalize(beneficiaries: Iterable[Union[Beneficiary, dict]]) -> str:
    """
    Deterministic encoding of a beneficiary list for signing.

    Key order is fixed (address, name, percentage); list order is kept
    because it is part of the signed plan.
    """
    canonical = []
    for b in beneficiaries:
        if isinstance(b, Beneficiary):
            address, name, percentage = b.address, b.name, b.percentage
        else:
            address = b.get("address", "")
            name = b.get("name", "")
            percentage = b.get("percentage", 0)
        canonical.append({
            "address": address,
            "name": name,
            "percentage": _js_number(percentage),
        })
    return json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)


def build_typed_data(
    owner: str,
    beneficiaries: Iterable[Union[Beneficiary, dict]],
    total_amount: int,
    valid_until: int,
    domain: Optional[dict] = None,
) -> dict:
    """Full EIP-712 payload, as a wallet would be asked to sign it."""
    return {
        "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, **WILL_TYPES},
        "primaryType": "WillAuthorization",
        "domain": dict(domain or WILL_DOMAIN),
        "message": {
            "owner": owner,
            "beneficiaries": canonicalize(beneficiaries),
            "totalAmount": int(total_amount),
            "validUntil": int(valid_until),
            "nonce": 0,
        },
    }


def create_link_message(will_id: str, address: str) -> str:
    """Message a wallet signs to opt into a will's distribution."""
    return f"Link wallet {normalize_address(address)} to Silene will {will_id}"


class SignatureVerifier:
    """
    Recovers signers and compares them to claimed owners.

    Usage:
        verifier = SignatureVerifier()
        if verifier.verify(owner, beneficiaries, total, valid_until, sig):
            store...
    """

    def __init__(self, domain: Optional[dict] = None):
        self.domain = dict(domain or WILL_DOMAIN)

    def recover_authorization(
        self,
        owner: str,
        beneficiaries: Iterable[Union[Beneficiary, dict]],
        total_amount: int,
        valid_until: int,
        signature: str,
    ) -> Optional[str]:
        try:
            typed = build_typed_data(owner, beneficiaries, total_amount, valid_until, self.domain)
            signable = encode_typed_data(full_message=typed)
            return Account.recover_message(signable, signature=signature)
        except Exception as e:
            logger.warning(f"Authorization signature recovery failed: {e}")
            return None

    def verify(
        self,
        owner: str,
        beneficiaries: Iterable[Union[Beneficiary, dict]],
        total_amount: int,
        valid_until: int,
        signature: str,
    ) -> bool:
        recovered = self.recover_authorization(
            owner, beneficiaries, total_amount, valid_until, signature
        )
        if recovered is None:
            return False
        if normalize_address(recovered) != normalize_address(owner):
            logger.warning(
                f"Authorization signer mismatch: recovered={recovered[:10]}... "
                f"claimed={owner[:10]}..."
            )
            return False
        return True

    def verify_link(self, will_id: str, address: str, signature: str) -> bool:
        try:
            msg = encode_defunct(text=create_link_message(will_id, address))
            recovered = Account.recover_message(msg, signature=signature)
        except Exception as e:
            logger.warning(f"Link signature verification failed: {e}")
            return False
        return normalize_address(recovered) == normalize_address(address)
