"""
SILENE CONSTITUTION - Distribution Laws (Immutable)

Protocol rules for will execution and weighted reallocation.
These are not deployment settings: they are hardcoded so that no caller,
config file or model output can loosen them.

Designed for: Silene dead man's switch protocol
"""

from dataclasses import dataclass
from typing import Final


# ============================================================
# DISTRIBUTION LAWS
# ============================================================

@dataclass(frozen=True)
class DistributionLaws:
    """Frozen dataclass = truly immutable at runtime."""

    # --- WEIGHTED REALLOCATION ---
    WILL_WEIGHT: Final[float] = 0.80                  # Authorized plan never below 80% influence
    SOCIAL_WEIGHT: Final[float] = 0.20
    REMOVAL_FACTOR: Final[float] = 0.5                # Social REMOVE halves, never zeroes
    SOCIAL_ADD_CAP_PCT: Final[float] = 30.0           # Social-only beneficiary hard cap
    INTENT_MATCH_THRESHOLD: Final[float] = 50.0       # Below this, reallocation runs
    REVIEW_SOCIAL_WEIGHT: Final[float] = 0.5          # socialWeight above this -> REVIEW

    # --- AMOUNT ARITHMETIC ---
    PERCENT_SCALE: Final[int] = 10                    # One decimal place of percentage
    PERCENT_DENOMINATOR: Final[int] = 1000            # 100% * PERCENT_SCALE

    # --- GAS ---
    NATIVE_GAS_RESERVE_WEI: Final[int] = 10**16       # 0.01 native held back per wallet
    MIN_CUSTODY_GAS_WEI: Final[int] = 5 * 10**16      # 0.05 native required before execution

    # --- DEFAULT SPEND LIMITS (18 decimals) ---
    DEFAULT_PER_TX_LIMIT: Final[int] = 100 * 10**18
    DEFAULT_DAILY_LIMIT: Final[int] = 1000 * 10**18

    # --- SOCIAL ---
    MAX_POSTS_FOR_ANALYSIS: Final[int] = 10


DISTRIBUTION_LAWS = DistributionLaws()


# ============================================================
# EIP-712 AUTHORIZATION SCHEMA
# ============================================================

WILL_DOMAIN = {
    "name": "Silene Will",
    "version": "1",
    "chainId": 2368,
}

WILL_TYPES = {
    "WillAuthorization": [
        {"name": "owner", "type": "address"},
        {"name": "beneficiaries", "type": "string"},
        {"name": "totalAmount", "type": "uint256"},
        {"name": "validUntil", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
}

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
]


# ============================================================
# CHAIN PROFILES
# ============================================================

CHAIN_DEFAULTS = {
    "kite_testnet": {
        "rpc": "https://rpc-testnet.gokite.ai",
        "chain_id": 2368,
        "token_address": "0x0fF5393387ad2f9f691FD6Fd28e07E3969e27e63",  # Settlement stablecoin
        "token_decimals": 18,
        "explorer": "https://testnet.kitescan.ai",
        "native_symbol": "KITE",
    },
}

DEFAULT_CHAIN = "kite_testnet"

# Wallet credited to beneficiaries that exist only in social signals
DEFAULT_SOCIAL_BENEFICIARY_WALLET = "0x53C1844Af058fE3B3195e49fEC8f97E0a4F87772"
