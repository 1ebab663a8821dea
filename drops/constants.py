"""
Drop Constants - Limits, Gas Budget & Contract Method Sets

Values shared by the funding, claim and reconciliation protocols.
Contract-side numbers (allowance, method names) must match the deployed
linkdrop contract; changing them here does not change the contract.

Designed for: NEAR linkdrop issuer/redeemer
"""

from dataclasses import dataclass
from enum import Enum
from typing import Final


YOCTO_PER_NEAR: Final[int] = 10 ** 24


class ClaimMethod(str, Enum):
    """Contract methods a drop key may be allowed to call."""
    CLAIM = "claim"
    CREATE_ACCOUNT = "create_account_and_claim"
    CREATE_MULTISIG = "create_multisig_and_claim"
    CREATE_CONTRACT = "create_contract_and_claim"


# Open drops: any variant except multisig creation
OPEN_CLAIM_METHODS: Final[tuple[ClaimMethod, ...]] = (
    ClaimMethod.CLAIM,
    ClaimMethod.CREATE_ACCOUNT,
    ClaimMethod.CREATE_CONTRACT,
)

# Limited drops: multisig creation only (cannot be reclaimed)
LIMITED_CLAIM_METHODS: Final[tuple[ClaimMethod, ...]] = (
    ClaimMethod.CREATE_MULTISIG,
)

# Access-key methods granted on a contract account created from a drop
MULTISIG_METHOD_NAMES: Final[tuple[str, ...]] = (
    "new",
    "add_request",
    "delete_request",
    "execute_request",
    "confirm",
    "get_request",
    "list_request_ids",
    "get_confirmations",
)

STORAGE_KEY_PREFIX: Final[str] = "__drops_"


@dataclass(frozen=True)
class DropLimits:
    """Frozen dataclass = immutable at runtime."""

    # --- FUNDING ---
    MIN_DROP_AMOUNT: Final[int] = YOCTO_PER_NEAR // 100               # 0.01 NEAR
    ACCESS_KEY_ALLOWANCE: Final[int] = 1_000_000_000_000_000_000_000  # contract fee per drop key

    # --- RECONCILIATION ---
    # Remote balance below this = claimed or never credited
    MIN_VIABLE_BALANCE: Final[int] = YOCTO_PER_NEAR // 1000           # 0.001 NEAR

    # --- CLAIMS ---
    MIN_ACCOUNT_ID_LENGTH: Final[int] = 2
    MULTISIG_CONFIRMATIONS: Final[int] = 2
    BOATLOAD_OF_GAS: Final[int] = 300_000_000_000_000                 # 300 TGas per call


LIMITS = DropLimits()
