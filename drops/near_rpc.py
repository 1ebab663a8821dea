"""
NEAR RPC Gateway - On-Chain Transaction Layer

Implements ContractGateway against a NEAR JSON-RPC node.

Design:
- View calls: query/call_function at "final" finality, JSON args in base64
- Change calls: fetch access-key nonce + block hash, build a borsh-encoded
  FunctionCall transaction, sign sha256(tx) with ed25519, broadcast_tx_commit
- Funding (send / send_limited) is signed by the issuing account's key
  from the CredentialStore, with the drop amount attached as deposit
- Claims are signed by the drop key itself on behalf of the contract account
- Transport errors and node timeouts -> RemoteUnavailable;
  execution failures or a `false` return -> RemoteRejection

Borsh layout (nearcore Transaction v0):
    signer_id: string | public_key: u8 + [32] | nonce: u64 | receiver_id: string
    block_hash: [32] | actions: u32 + Action*
    Action::FunctionCall = 2: method_name: string | args: u32 + bytes | gas: u64 | deposit: u128
SignedTransaction = Transaction | signature: u8 + [64]
"""

import json
import base64
import struct
import asyncio
import hashlib
import logging
from typing import Any, Optional, Sequence

import aiohttp
import base58

from .constants import LIMITS, ClaimMethod
from .credentials import CredentialStore
from .errors import (
    ConfigurationError,
    RemoteError,
    RemoteRejection,
    RemoteUnavailable,
    ValidationError,
)
from .gateway import ContractGateway, contract_method_for
from .keys import KeyPair, with_prefix

logger = logging.getLogger("neardrop.near_rpc")

ED25519_KEY_TYPE = 0
FUNCTION_CALL_ACTION = 2

# RPC error causes that say nothing about the transaction itself
_TRANSIENT_CAUSES = {
    "TIMEOUT_ERROR",
    "NO_SYNCED_BLOCKS",
    "NOT_SYNCED_YET",
    "INTERNAL_ERROR",
}

# Contract panics meaning "this key holds nothing"
_MISSING_KEY_MARKERS = ("Key is missing", "Unexpected public key")


# ============================================================
# BORSH
# ============================================================

def _u32(n: int) -> bytes:
    return struct.pack("<I", n)


def _u64(n: int) -> bytes:
    return struct.pack("<Q", n)


def _u128(n: int) -> bytes:
    return int(n).to_bytes(16, "little")


def _string(s: str) -> bytes:
    raw = s.encode("utf-8")
    return _u32(len(raw)) + raw


def function_call_action(method_name: str, args: bytes, gas: int, deposit: int) -> bytes:
    return (
        bytes([FUNCTION_CALL_ACTION])
        + _string(method_name)
        + _u32(len(args)) + args
        + _u64(gas)
        + _u128(deposit)
    )


def serialize_transaction(
    signer_id: str,
    public_key: bytes,
    nonce: int,
    receiver_id: str,
    block_hash: bytes,
    actions: Sequence[bytes],
) -> bytes:
    if len(public_key) != 32 or len(block_hash) != 32:
        raise ValueError("public key and block hash must be 32 bytes")
    return (
        _string(signer_id)
        + bytes([ED25519_KEY_TYPE]) + public_key
        + _u64(nonce)
        + _string(receiver_id)
        + block_hash
        + _u32(len(actions))
        + b"".join(actions)
    )


def sign_transaction(tx_bytes: bytes, key_pair: KeyPair) -> tuple[bytes, str]:
    """Returns (signed transaction bytes, base58 tx hash)."""
    digest = hashlib.sha256(tx_bytes).digest()
    signature = key_pair.sign(digest)
    signed = tx_bytes + bytes([ED25519_KEY_TYPE]) + signature
    return signed, base58.b58encode(digest).decode("ascii")


# ============================================================
# RESPONSE CLASSIFICATION
# ============================================================

def classify_rpc_error(error: Any, method: str) -> RemoteError:
    """Map a JSON-RPC error payload to the error taxonomy."""
    if not isinstance(error, dict):
        return RemoteRejection(str(error), method=method)
    name = error.get("name", "")
    cause = error.get("cause") or {}
    cause_name = cause.get("name", "") if isinstance(cause, dict) else str(cause)
    message = error.get("data") or error.get("message") or cause_name or name
    if not isinstance(message, str):
        message = json.dumps(message)
    if name == "INTERNAL_ERROR" or cause_name in _TRANSIENT_CAUSES:
        return RemoteUnavailable(f"{cause_name or name}: {message}", method=method)
    return RemoteRejection(f"{cause_name or name}: {message}", method=method)


def parse_outcome(result: dict, method: str) -> Any:
    """
    Decode the final execution status of broadcast_tx_commit.
    Failure, or a contract returning `false`, is a rejection.
    """
    status = result.get("status") or {}
    if "Failure" in status:
        raise RemoteRejection(f"{method} failed: {json.dumps(status['Failure'])}", method=method)
    if "SuccessValue" not in status:
        raise RemoteUnavailable(f"{method} has no final status: {status}", method=method)

    raw = status["SuccessValue"]
    if not raw:
        return None
    value = json.loads(base64.b64decode(raw))
    if value is False:
        raise RemoteRejection(f"{method} returned false", method=method)
    return value


# ============================================================
# GATEWAY
# ============================================================

class NearRpcGateway(ContractGateway):
    """
    Usage:
        gateway = NearRpcGateway(node_url, "linkdrop.testnet", "alice.testnet", credentials)
        balance = await gateway.get_key_balance(drop.public_key)
    """

    def __init__(
        self,
        node_url: str,
        contract_name: str,
        owner_account: str,
        credentials: CredentialStore,
        timeout_seconds: float = 30.0,
    ):
        if not contract_name:
            raise ConfigurationError("NEAR_CONTRACT_NAME is not set")
        self.node_url = node_url
        self.contract_name = contract_name
        self.owner_account = owner_account
        self.credentials = credentials
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        # One in-flight transaction per signing key, nonces are sequential
        self._signer_locks: dict[str, asyncio.Lock] = {}
        self._tx_count: int = 0
        self._last_error: str = ""

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _rpc(self, rpc_method: str, params: Any, method: str) -> Any:
        payload = {"jsonrpc": "2.0", "id": "neardrop", "method": rpc_method, "params": params}
        try:
            session = await self._get_session()
            async with session.post(self.node_url, json=payload) as resp:
                status = resp.status
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"RPC {rpc_method} ({method}) unreachable: {self._last_error}")
            raise RemoteUnavailable(self._last_error, method=method)

        if not isinstance(data, dict):
            raise RemoteUnavailable(f"RPC HTTP {status}: unexpected body", method=method)
        if "error" in data:
            err = classify_rpc_error(data["error"], method)
            self._last_error = str(err)
            raise err
        if status >= 500:
            raise RemoteUnavailable(f"RPC HTTP {status}", method=method)
        return data.get("result")

    # ---- views ----

    async def _view(self, method_name: str, args: dict) -> Any:
        result = await self._rpc("query", {
            "request_type": "call_function",
            "finality": "final",
            "account_id": self.contract_name,
            "method_name": method_name,
            "args_base64": base64.b64encode(json.dumps(args).encode()).decode(),
        }, method_name)
        if not isinstance(result, dict):
            raise RemoteUnavailable(f"{method_name}: empty view result", method=method_name)
        # Older nodes report contract panics inside the result
        if result.get("error"):
            raise RemoteRejection(result["error"], method=method_name)
        try:
            return json.loads(bytes(result["result"]).decode() or "null")
        except (KeyError, TypeError, ValueError) as e:
            self._last_error = f"{method_name}: undecodable view result ({type(e).__name__}: {e})"
            raise RemoteUnavailable(self._last_error, method=method_name)

    async def get_key_balance(self, public_key: str) -> int:
        try:
            value = await self._view("get_key_balance", {"key": with_prefix(public_key)})
        except RemoteRejection as e:
            if any(marker in str(e) for marker in _MISSING_KEY_MARKERS):
                return 0
            raise
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            raise RemoteUnavailable(f"get_key_balance: not a balance: {value!r}", method="get_key_balance")

    async def get_account_balance(self, account_id: str) -> int:
        result = await self._rpc("query", {
            "request_type": "view_account",
            "finality": "final",
            "account_id": account_id,
        }, "view_account")
        try:
            return int(result["amount"])
        except (KeyError, TypeError, ValueError):
            raise RemoteUnavailable(f"view_account {account_id}: no amount", method="view_account")

    # ---- transactions ----

    async def _function_call(
        self,
        signer_id: str,
        key_pair: KeyPair,
        method_name: str,
        args: dict,
        gas: int,
        deposit: int = 0,
    ) -> Any:
        lock = self._signer_locks.setdefault(key_pair.public_key, asyncio.Lock())
        async with lock:
            access_key = await self._rpc("query", {
                "request_type": "view_access_key",
                "finality": "final",
                "account_id": signer_id,
                "public_key": with_prefix(key_pair.public_key),
            }, method_name)

            try:
                nonce = int(access_key["nonce"]) + 1
                block_hash = base58.b58decode(access_key["block_hash"])
                if len(block_hash) != 32:
                    raise ValueError(f"block hash is {len(block_hash)} bytes")
            except (KeyError, TypeError, ValueError) as e:
                self._last_error = f"{method_name}: bad access key reply ({type(e).__name__}: {e})"
                raise RemoteUnavailable(self._last_error, method=method_name)

            action = function_call_action(
                method_name, json.dumps(args).encode(), gas, deposit
            )
            tx_bytes = serialize_transaction(
                signer_id=signer_id,
                public_key=key_pair.public_key_bytes,
                nonce=nonce,
                receiver_id=self.contract_name,
                block_hash=block_hash,
                actions=[action],
            )
            signed, tx_hash = sign_transaction(tx_bytes, key_pair)

            result = await self._rpc(
                "broadcast_tx_commit",
                [base64.b64encode(signed).decode()],
                method_name,
            )

        try:
            value = parse_outcome(result, method_name)
        except RemoteError as e:
            self._last_error = str(e)
            logger.warning(f"TX FAILED [{method_name}]: {tx_hash[:16]}... {e}")
            raise
        self._tx_count += 1
        logger.info(f"TX SUCCESS [{method_name}]: {tx_hash[:16]}... signer={signer_id}")
        return value

    async def register(self, public_key, amount, allowed_methods, gas=LIMITS.BOATLOAD_OF_GAS):
        owner_key = self.credentials.get_key(self.owner_account)
        if owner_key is None:
            raise ConfigurationError(f"No signing key for {self.owner_account}")

        contract_method = contract_method_for(allowed_methods)
        args = {"public_key": public_key}
        if contract_method == "send_limited":
            args["method_names"] = ",".join(ClaimMethod(m).value for m in allowed_methods)
        await self._function_call(
            self.owner_account, owner_key, contract_method, args, gas, deposit=amount
        )

    def _drop_key(self, secret_key: str) -> KeyPair:
        try:
            return KeyPair.from_secret(secret_key)
        except ValidationError as e:
            raise RemoteRejection(f"Invalid drop key: {e}")

    async def claim(self, secret_key, account_id, gas=LIMITS.BOATLOAD_OF_GAS):
        await self._function_call(
            self.contract_name,
            self._drop_key(secret_key),
            ClaimMethod.CLAIM.value,
            {"account_id": account_id},
            gas,
        )

    async def create_account_and_claim(
        self, secret_key, new_account_id, new_public_key, gas=LIMITS.BOATLOAD_OF_GAS
    ):
        await self._function_call(
            self.contract_name,
            self._drop_key(secret_key),
            ClaimMethod.CREATE_ACCOUNT.value,
            {"new_account_id": new_account_id, "new_public_key": new_public_key},
            gas,
        )

    async def create_multisig_and_claim(
        self,
        secret_key,
        new_account_id,
        new_public_key,
        num_confirmations=LIMITS.MULTISIG_CONFIRMATIONS,
        gas=LIMITS.BOATLOAD_OF_GAS,
    ):
        await self._function_call(
            self.contract_name,
            self._drop_key(secret_key),
            ClaimMethod.CREATE_MULTISIG.value,
            {
                "new_account_id": new_account_id,
                "new_public_key": new_public_key,
                "num_confirmations": num_confirmations,
            },
            gas,
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
        # Vec<u8> arguments travel as JSON arrays of byte values
        await self._function_call(
            self.contract_name,
            self._drop_key(secret_key),
            ClaimMethod.CREATE_CONTRACT.value,
            {
                "new_account_id": new_account_id,
                "new_public_key": new_public_key,
                "allowance": str(allowance),
                "contract_bytes": list(bytes(contract_bytes)),
                "method_names": list(",".join(method_names).encode()),
            },
            gas,
        )

    def get_status(self) -> dict:
        return {
            "node_url": self.node_url,
            "contract_name": self.contract_name,
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
