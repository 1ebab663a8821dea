"""
Contract Gateway - narrow interface to the linkdrop contract

The ledger is the only authority on drop balances and claims. Protocols
talk to it exclusively through ContractGateway; implementations translate
their transport's failures into RemoteRejection / RemoteUnavailable.

Implementations:
- NearRpcGateway (near_rpc.py): NEAR JSON-RPC
- InMemoryGateway (here): in-process model of the contract for dev and tests
"""

import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .constants import (
    LIMITS,
    ClaimMethod,
    OPEN_CLAIM_METHODS,
)
from .errors import RemoteRejection, RemoteUnavailable, ValidationError
from .keys import KeyPair

logger = logging.getLogger("neardrop.gateway")


# NEAR account id rules (2..64 chars, lowercase, separators between parts)
_ACCOUNT_ID_RE = re.compile(r"^(([a-z\d]+[-_])*[a-z\d]+\.)*([a-z\d]+[-_])*[a-z\d]+$")


def is_valid_account_id(account_id: str) -> bool:
    return 2 <= len(account_id) <= 64 and bool(_ACCOUNT_ID_RE.match(account_id))


def contract_method_for(allowed_methods: Sequence[ClaimMethod]) -> str:
    """"send" for the open method set, "send_limited" for anything narrower."""
    if tuple(allowed_methods) == OPEN_CLAIM_METHODS:
        return "send"
    return "send_limited"


class ContractGateway(ABC):
    """
    Remote calls against the linkdrop contract.

    Claim variants take the capability secret as their first argument:
    the drop key itself signs the call on behalf of the contract account.
    Every method raises RemoteRejection or RemoteUnavailable on failure.
    """

    contract_name: str = ""

    @abstractmethod
    async def register(
        self,
        public_key: str,
        amount: int,
        allowed_methods: Sequence[ClaimMethod],
        gas: int = LIMITS.BOATLOAD_OF_GAS,
    ) -> None:
        """Attach `amount` to public_key and allow it to call allowed_methods."""
        ...

    async def register_limited(
        self,
        public_key: str,
        amount: int,
        allowed_method: ClaimMethod = ClaimMethod.CREATE_MULTISIG,
        gas: int = LIMITS.BOATLOAD_OF_GAS,
    ) -> None:
        await self.register(public_key, amount, (allowed_method,), gas=gas)

    @abstractmethod
    async def get_key_balance(self, public_key: str) -> int:
        """Claimable yoctoNEAR for public_key. Unknown key = 0."""
        ...

    @abstractmethod
    async def get_account_balance(self, account_id: str) -> int:
        ...

    @abstractmethod
    async def claim(
        self, secret_key: str, account_id: str, gas: int = LIMITS.BOATLOAD_OF_GAS
    ) -> None:
        ...

    @abstractmethod
    async def create_account_and_claim(
        self,
        secret_key: str,
        new_account_id: str,
        new_public_key: str,
        gas: int = LIMITS.BOATLOAD_OF_GAS,
    ) -> None:
        ...

    @abstractmethod
    async def create_multisig_and_claim(
        self,
        secret_key: str,
        new_account_id: str,
        new_public_key: str,
        num_confirmations: int = LIMITS.MULTISIG_CONFIRMATIONS,
        gas: int = LIMITS.BOATLOAD_OF_GAS,
    ) -> None:
        ...

    @abstractmethod
    async def create_contract_and_claim(
        self,
        secret_key: str,
        new_account_id: str,
        new_public_key: str,
        allowance: int,
        contract_bytes: bytes,
        method_names: Sequence[str],
        gas: int = LIMITS.BOATLOAD_OF_GAS,
    ) -> None:
        ...

    async def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY LEDGER
# ============================================================

@dataclass
class _KeyEntry:
    balance: int
    allowed_methods: tuple[str, ...]


@dataclass
class _Account:
    balance: int = 0
    access_keys: list[str] = field(default_factory=list)
    contract_code: bytes = b""
    multisig_confirmations: int = 0


class InMemoryGateway(ContractGateway):
    """
    Models the linkdrop contract's bookkeeping:
    - send/send_limited: deposit - ACCESS_KEY_ALLOWANCE credited to the key
    - claim*: key must exist and allow the method; the key is consumed
    - account-creating claims restore the key when the account id is taken

    Records every call in `calls` and supports injected failures.
    """

    def __init__(
        self,
        contract_name: str = "linkdrop.testnet",
        accounts: Optional[dict[str, int]] = None,
    ):
        self.contract_name = contract_name
        self.accounts: dict[str, _Account] = {
            account_id: _Account(balance=balance)
            for account_id, balance in (accounts or {}).items()
        }
        self.keys: dict[str, _KeyEntry] = {}
        self.calls: list[tuple] = []
        self.unavailable: bool = False
        self._failures: dict[str, list[Exception]] = {}

    # ---- test hooks ----

    def fail_next(self, method: str, error: Exception):
        """Make the next call to `method` raise `error` (after being recorded)."""
        self._failures.setdefault(method, []).append(error)

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _enter(self, method: str, *args):
        self.calls.append((method, *args))
        if self.unavailable:
            raise RemoteUnavailable("ledger unreachable", method=method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    # ---- contract model ----

    def _take_key(self, secret_key: str, method: ClaimMethod) -> tuple[str, _KeyEntry]:
        try:
            public_key = KeyPair.from_secret(secret_key).public_key
        except ValidationError as e:
            raise RemoteRejection(f"Invalid signer key: {e}", method=method.value)
        entry = self.keys.get(public_key)
        if entry is None:
            raise RemoteRejection("Unexpected public key", method=method.value)
        if method.value not in entry.allowed_methods:
            raise RemoteRejection(
                f"Method {method.value} not allowed for this key", method=method.value
            )
        return public_key, entry

    def _check_account_id(self, account_id: str, method: ClaimMethod):
        if not is_valid_account_id(account_id):
            raise RemoteRejection("Invalid account id", method=method.value)

    async def register(self, public_key, amount, allowed_methods, gas=LIMITS.BOATLOAD_OF_GAS):
        methods = tuple(ClaimMethod(m) for m in allowed_methods)
        self._enter("register", public_key, amount, methods)
        if amount <= LIMITS.ACCESS_KEY_ALLOWANCE:
            raise RemoteRejection(
                "Attached deposit must be greater than ACCESS_KEY_ALLOWANCE",
                method=contract_method_for(methods),
            )
        existing = self.keys.get(public_key)
        balance = (existing.balance if existing else 0) + amount - LIMITS.ACCESS_KEY_ALLOWANCE
        self.keys[public_key] = _KeyEntry(
            balance=balance, allowed_methods=tuple(m.value for m in methods)
        )
        logger.debug(f"[memory] {contract_method_for(methods)} {public_key[:8]}... = {balance}")

    async def get_key_balance(self, public_key):
        self._enter("get_key_balance", public_key)
        entry = self.keys.get(public_key)
        return entry.balance if entry else 0

    async def get_account_balance(self, account_id):
        self._enter("get_account_balance", account_id)
        account = self.accounts.get(account_id)
        if account is None:
            raise RemoteRejection(f"Account {account_id} does not exist", method="view_account")
        return account.balance

    async def claim(self, secret_key, account_id, gas=LIMITS.BOATLOAD_OF_GAS):
        self._enter("claim", account_id)
        self._check_account_id(account_id, ClaimMethod.CLAIM)
        public_key, entry = self._take_key(secret_key, ClaimMethod.CLAIM)
        account = self.accounts.get(account_id)
        if account is None:
            raise RemoteRejection(f"Account {account_id} does not exist", method="claim")
        del self.keys[public_key]
        account.balance += entry.balance

    def _create_and_claim(
        self,
        secret_key: str,
        method: ClaimMethod,
        new_account_id: str,
        new_public_key: str,
        contract_code: bytes = b"",
        confirmations: int = 0,
    ):
        self._check_account_id(new_account_id, method)
        public_key, entry = self._take_key(secret_key, method)
        if new_account_id in self.accounts:
            # Callback restores the balance; the key stays claimable
            raise RemoteRejection(
                f"Account {new_account_id} already exists", method=method.value
            )
        del self.keys[public_key]
        self.accounts[new_account_id] = _Account(
            balance=entry.balance,
            access_keys=[new_public_key],
            contract_code=contract_code,
            multisig_confirmations=confirmations,
        )

    async def create_account_and_claim(
        self, secret_key, new_account_id, new_public_key, gas=LIMITS.BOATLOAD_OF_GAS
    ):
        self._enter("create_account_and_claim", new_account_id, new_public_key)
        self._create_and_claim(
            secret_key, ClaimMethod.CREATE_ACCOUNT, new_account_id, new_public_key
        )

    async def create_multisig_and_claim(
        self,
        secret_key,
        new_account_id,
        new_public_key,
        num_confirmations=LIMITS.MULTISIG_CONFIRMATIONS,
        gas=LIMITS.BOATLOAD_OF_GAS,
    ):
        self._enter("create_multisig_and_claim", new_account_id, new_public_key, num_confirmations)
        self._create_and_claim(
            secret_key,
            ClaimMethod.CREATE_MULTISIG,
            new_account_id,
            new_public_key,
            contract_code=b"multisig",
            confirmations=num_confirmations,
        )

    async def create_contract_and_claim(
        self,
        secret_key,
        new_account_id,
        new_public_key,
        allowance,
        contract_bytes,
        method_names,
        gas=LIMITS.BOATLOAD_OF_GAS,
    ):
        self._enter(
            "create_contract_and_claim",
            new_account_id,
            new_public_key,
            allowance,
            tuple(method_names),
        )
        self._create_and_claim(
            secret_key,
            ClaimMethod.CREATE_CONTRACT,
            new_account_id,
            new_public_key,
            contract_code=bytes(contract_bytes),
        )
