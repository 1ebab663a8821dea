"""
Claim Protocol - redeem a drop key

The key always comes from outside (a shared link, or the issuer's own
store for a reclaim). Four redemption variants:

  variant           precondition   contract method
  claim             open           claim(account_id)
  create_account    open           create_account_and_claim(new_account_id, new_public_key)
  create_multisig   any            create_multisig_and_claim(..., num_confirmations=2)
  create_contract   open           create_contract_and_claim(..., allowance, bytes, method_names)

Every variant: precondition -> confirm -> account id check -> one remote call.
Invalid input raises ValidationError before anything is sent. A declined
confirmation is CANCELLED. Remote failures are reported through the
decision port and returned as REJECTED / UNAVAILABLE with no local side
effects; failure handling is the same for every variant.

The ledger enforces single use. A second claim of the same key comes back
as a rejection ("may have already been claimed").

Reclaim = the claim variant run by the issuer against their own account,
then removal from the store and a forced reconciliation pass.

After any successful redemption the signed-in account balance is re-read
and returned on the result.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .constants import LIMITS, MULTISIG_METHOD_NAMES
from .context import DropContext
from .errors import ConfigurationError, DropError, RemoteError, RemoteRejection, ValidationError
from .keys import KeyGenerator, KeyPair
from .links import SharedDropReference
from .reconcile import ReconciliationEngine
from .store import RemoveResult
from .units import format_near

logger = logging.getLogger("neardrop.claim")


class ClaimVariant(str, Enum):
    CLAIM = "claim"
    CREATE_ACCOUNT = "create_account"
    CREATE_MULTISIG = "create_multisig"
    CREATE_CONTRACT = "create_contract"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ACCOUNT_CREATED = "account_created"
    CANCELLED = "cancelled"
    REJECTED = "rejected"          # ledger refused (already claimed, account taken)
    UNAVAILABLE = "unavailable"    # ledger unreachable
    NOT_FOUND = "not_found"        # reclaim of a key we do not hold


@dataclass
class ClaimResult:
    variant: ClaimVariant
    outcome: ClaimOutcome
    account_id: str = ""
    message: str = ""
    new_public_key: str = ""
    balance: Optional[int] = None     # signed-in account, refreshed after success

    @property
    def success(self) -> bool:
        return self.outcome in (ClaimOutcome.CLAIMED, ClaimOutcome.ACCOUNT_CREATED)

    def to_dict(self) -> dict:
        return {
            "variant": self.variant.value,
            "outcome": self.outcome.value,
            "success": self.success,
            "account_id": self.account_id,
            "message": self.message,
            "new_public_key": self.new_public_key,
            "balance": str(self.balance) if self.balance is not None else None,
        }


class ClaimProtocol:

    def __init__(
        self,
        ctx: DropContext,
        key_generator: Optional[KeyGenerator] = None,
        reconciler: Optional[ReconciliationEngine] = None,
        contract_code: Optional[bytes] = None,
    ):
        self.ctx = ctx
        self.keys = key_generator or KeyGenerator()
        self.reconciler = reconciler or ReconciliationEngine.from_context(ctx)
        self._contract_code = contract_code

    # ============================================================
    # HELPERS
    # ============================================================

    def _contract_bytes(self) -> bytes:
        if self._contract_code is None:
            path = self.ctx.config.multisig_wasm_path
            try:
                self._contract_code = path.read_bytes()
            except OSError as e:
                raise ConfigurationError(f"Cannot read contract code {path}: {e}")
        return self._contract_code

    @staticmethod
    def _require_open(ref: SharedDropReference):
        if ref.limited:
            raise ValidationError(
                "This drop can only be used to create a multisig account"
            )

    def _resolve_account_id(self, given: Optional[str], prompt: str) -> str:
        account_id = given if given else self.ctx.decisions.ask_account_id(prompt)
        account_id = (account_id or "").strip()
        if len(account_id) < LIMITS.MIN_ACCOUNT_ID_LENGTH:
            raise ValidationError("The account id is invalid.")
        return account_id

    def _failed(
        self,
        variant: ClaimVariant,
        account_id: str,
        error: RemoteError,
        rejected_message: str,
        unavailable_message: str,
    ) -> ClaimResult:
        rejected = isinstance(error, RemoteRejection)
        message = rejected_message if rejected else unavailable_message
        logger.warning(f"{variant.value} for {account_id} failed: {error}")
        self.ctx.decisions.notify(message)
        return ClaimResult(
            variant=variant,
            outcome=ClaimOutcome.REJECTED if rejected else ClaimOutcome.UNAVAILABLE,
            account_id=account_id,
            message=message,
        )

    async def _forget_if_owned(self, secret_key: str) -> bool:
        """Drop the store record if the claimed key is one we issued."""
        owner = self.ctx.account_id
        public_key = KeyPair.from_secret(secret_key).public_key
        async with self.ctx.store.lock(owner):
            removed = await self.ctx.store.remove(owner, public_key)
        return removed is RemoveResult.REMOVED

    async def _refresh_balance(self) -> Optional[int]:
        account_id = self.ctx.account_id
        try:
            balance = await self.ctx.gateway.get_account_balance(account_id)
        except DropError as e:
            logger.warning(f"Balance refresh for {account_id} failed: {e}")
            return None
        logger.info(f"Balance of {account_id}: {format_near(balance)} Ⓝ")
        return balance

    # ============================================================
    # CLAIM TO EXISTING ACCOUNT
    # ============================================================

    async def _claim_to(self, ref: SharedDropReference, account_id: str, confirm_message: str) -> ClaimResult:
        if not self.ctx.decisions.confirm(confirm_message):
            return ClaimResult(ClaimVariant.CLAIM, ClaimOutcome.CANCELLED, account_id=account_id)

        try:
            await self.ctx.gateway.claim(ref.key, account_id, gas=LIMITS.BOATLOAD_OF_GAS)
        except RemoteError as e:
            return self._failed(
                ClaimVariant.CLAIM,
                account_id,
                e,
                "Unable to claim drop. The drop may have already been claimed.",
                "Unable to claim drop. The network is unreachable, try again later.",
            )

        logger.info(f"Drop claimed into {account_id} ({format_near(ref.amount)} Ⓝ)")
        self.ctx.decisions.notify("Drop claimed")
        if await self._forget_if_owned(ref.key):
            await self.reconciler.reconcile(self.ctx.account_id)
        return ClaimResult(
            ClaimVariant.CLAIM,
            ClaimOutcome.CLAIMED,
            account_id=account_id,
            message="Drop claimed",
            balance=await self._refresh_balance(),
        )

    async def claim_to_account(
        self, ref: SharedDropReference, account_id: Optional[str] = None
    ) -> ClaimResult:
        """Transfer the drop to an existing account (default: the signed-in account)."""
        self._require_open(ref)
        target = self._resolve_account_id(account_id or self.ctx.account_id, "Account Id")
        return await self._claim_to(
            ref,
            target,
            f"Claim drop of {format_near(ref.amount)} Ⓝ and transfer funds to\n"
            f"{target}\nDo you want to continue?",
        )

    # ============================================================
    # ACCOUNT-CREATING VARIANTS
    # ============================================================

    async def _create_and_claim(
        self,
        ref: SharedDropReference,
        variant: ClaimVariant,
        new_account_id: Optional[str],
        what: str,
        remote_call: Callable[[str, str], Awaitable[None]],
    ) -> ClaimResult:
        if not self.ctx.decisions.confirm(
            f"Create {what} and claim drop of {format_near(ref.amount)} Ⓝ\n"
            f"Do you want to continue?"
        ):
            return ClaimResult(variant, ClaimOutcome.CANCELLED, account_id=new_account_id or "")
        account_id = self._resolve_account_id(new_account_id, "New Account Id")

        new_key = self.keys.generate()
        try:
            await remote_call(account_id, new_key.public_key)
        except RemoteError as e:
            return self._failed(
                variant,
                account_id,
                e,
                f"Unable to create account {account_id}. The account id might be taken.",
                f"Unable to create account {account_id}",
            )

        if self.ctx.credentials is not None:
            try:
                await self.ctx.credentials.store_key(account_id, new_key)
            except Exception:
                logger.error(f"Account {account_id} created but its key could not be stored")
                raise

        message = f"Account {account_id} created."
        logger.info(f"{variant.value}: {message} ({format_near(ref.amount)} Ⓝ)")
        self.ctx.decisions.notify(message)
        if await self._forget_if_owned(ref.key):
            await self.reconciler.reconcile(self.ctx.account_id)
        return ClaimResult(
            variant,
            ClaimOutcome.ACCOUNT_CREATED,
            account_id=account_id,
            message=message,
            new_public_key=new_key.public_key,
            balance=await self._refresh_balance(),
        )

    async def create_account(
        self, ref: SharedDropReference, new_account_id: Optional[str] = None
    ) -> ClaimResult:
        """Create a new account holding the drop; its full-access key goes to the credential store."""
        self._require_open(ref)

        async def call(account_id: str, public_key: str):
            await self.ctx.gateway.create_account_and_claim(
                ref.key, account_id, public_key, gas=LIMITS.BOATLOAD_OF_GAS
            )

        return await self._create_and_claim(
            ref, ClaimVariant.CREATE_ACCOUNT, new_account_id, "a new account", call
        )

    async def create_multisig(
        self, ref: SharedDropReference, new_account_id: Optional[str] = None
    ) -> ClaimResult:
        """Create a multisig account. The only variant a limited drop allows."""

        async def call(account_id: str, public_key: str):
            await self.ctx.gateway.create_multisig_and_claim(
                ref.key,
                account_id,
                public_key,
                num_confirmations=LIMITS.MULTISIG_CONFIRMATIONS,
                gas=LIMITS.BOATLOAD_OF_GAS,
            )

        return await self._create_and_claim(
            ref, ClaimVariant.CREATE_MULTISIG, new_account_id, "a new multisig account", call
        )

    async def create_contract(
        self, ref: SharedDropReference, new_account_id: Optional[str] = None
    ) -> ClaimResult:
        """Create an account with the multisig contract deployed from local wasm."""
        self._require_open(ref)
        contract_bytes = self._contract_bytes()

        async def call(account_id: str, public_key: str):
            await self.ctx.gateway.create_contract_and_claim(
                ref.key,
                account_id,
                public_key,
                allowance=LIMITS.ACCESS_KEY_ALLOWANCE,
                contract_bytes=contract_bytes,
                method_names=MULTISIG_METHOD_NAMES,
                gas=LIMITS.BOATLOAD_OF_GAS,
            )

        return await self._create_and_claim(
            ref, ClaimVariant.CREATE_CONTRACT, new_account_id, "a new contract account", call
        )

    async def claim(
        self,
        variant: ClaimVariant,
        ref: SharedDropReference,
        account_id: Optional[str] = None,
    ) -> ClaimResult:
        """Dispatch by variant name."""
        handlers = {
            ClaimVariant.CLAIM: self.claim_to_account,
            ClaimVariant.CREATE_ACCOUNT: self.create_account,
            ClaimVariant.CREATE_MULTISIG: self.create_multisig,
            ClaimVariant.CREATE_CONTRACT: self.create_contract,
        }
        return await handlers[ClaimVariant(variant)](ref, account_id)

    # ============================================================
    # RECLAIM
    # ============================================================

    async def reclaim(self, public_key: str) -> ClaimResult:
        """
        Cancel one of our own unclaimed drops: claim it back into the
        signed-in account, forget it, reconcile.
        Unknown key -> NOT_FOUND, no prompt, no remote call.
        """
        owner = self.ctx.account_id
        async with self.ctx.store.lock(owner):
            drop = await self.ctx.store.get(owner, public_key)
        if drop is None:
            logger.info(f"Reclaim skipped: {public_key[:8]}... not stored for {owner}")
            return ClaimResult(
                ClaimVariant.CLAIM,
                ClaimOutcome.NOT_FOUND,
                account_id=owner,
                message="Drop not found",
            )

        ref = SharedDropReference(
            key=drop.secret_key,
            amount=drop.amount,
            from_account=owner,
            limited=drop.limited,
        )
        if ref.limited:
            raise ValidationError("Limited drops can only create a multisig account and cannot be reclaimed")

        result = await self._claim_to(
            ref,
            owner,
            f"Remove drop of {format_near(drop.amount)} Ⓝ and transfer funds to\n"
            f"{owner}\nDo you want to continue?",
        )
        if result.outcome is ClaimOutcome.CANCELLED:
            return result
        if not result.success:
            # Already claimed elsewhere shows up as a zero balance and is pruned
            await self.reconciler.reconcile(owner)
        return result
