"""
Funding Protocol - issue a new drop

Local commit first, remote commit second, compensate on remote failure:

1. validate amount >= MIN_DROP_AMOUNT (else ValidationError, nothing happens)
2. generate a capability key pair
3. persist the drop locally
4. register the key + deposit on the contract
5. any failure in 4 -> remove the local record, re-raise

If the process dies between 3 and 4, the stored key has no remote balance
and the next reconciliation pass prunes it. No funds moved, nothing lost.

Steps 3-5 run under the owner's store lock so a reconciliation pass cannot
see (and prune) the drop while its registration is still in flight.
"""

import logging
from typing import Optional

from .constants import LIMITS, LIMITED_CLAIM_METHODS, OPEN_CLAIM_METHODS
from .context import DropContext
from .errors import ValidationError
from .keys import KeyGenerator
from .reconcile import ReconciliationEngine
from .store import Drop
from .units import format_near, parse_near

logger = logging.getLogger("neardrop.funding")

OPEN_AMOUNT_PROMPT = "Amount to fund with in Near Ⓝ"
LIMITED_AMOUNT_PROMPT = (
    "Amount to fund with in Near Ⓝ\n"
    "Recommended 40 Ⓝ\n"
    "WARNING you will ONLY be able to create a multisig contract with this drop. "
    "You will NOT be able to reclaim these funds!"
)


class FundingProtocol:

    def __init__(
        self,
        ctx: DropContext,
        key_generator: Optional[KeyGenerator] = None,
        reconciler: Optional[ReconciliationEngine] = None,
    ):
        self.ctx = ctx
        self.keys = key_generator or KeyGenerator()
        self.reconciler = reconciler or ReconciliationEngine.from_context(ctx)

    async def fund_drop(self, amount: Optional[int] = None, limited: bool = False) -> Drop:
        """
        Issue a drop worth `amount` yoctoNEAR from the signed-in account.
        amount=None asks the decision port (blank answer = 0).

        Raises ValidationError (amount too small), RemoteError or ConfigurationError
        (registration failed, local record rolled back) or StorageError.
        """
        owner = self.ctx.account_id
        if amount is None:
            prompt = LIMITED_AMOUNT_PROMPT if limited else OPEN_AMOUNT_PROMPT
            amount = parse_near(self.ctx.decisions.ask_amount(prompt))

        if amount < LIMITS.MIN_DROP_AMOUNT:
            raise ValidationError(
                f"Amount too small for drop (minimum {format_near(LIMITS.MIN_DROP_AMOUNT)} Ⓝ)"
            )

        key_pair = self.keys.generate()
        drop = Drop(
            public_key=key_pair.public_key,
            secret_key=key_pair.secret_key,
            amount=amount,
            limited=limited,
            owner_account=owner,
        )
        allowed_methods = LIMITED_CLAIM_METHODS if limited else OPEN_CLAIM_METHODS

        async with self.ctx.store.lock(owner):
            await self.ctx.store.add(owner, drop)
            try:
                await self.ctx.gateway.register(
                    drop.public_key, amount, allowed_methods, gas=LIMITS.BOATLOAD_OF_GAS
                )
            except Exception as e:
                logger.warning(
                    f"Funding {drop.public_key[:8]}... failed: {e} - removing local record"
                )
                await self.ctx.store.remove(owner, drop.public_key)
                raise

        logger.info(
            f"Drop funded: {drop.public_key[:8]}... {format_near(amount)} Ⓝ "
            f"({'limited' if limited else 'open'}) by {owner}"
        )

        report = await self.reconciler.reconcile(owner)
        for active in report.active:
            if active.public_key == drop.public_key:
                drop.wallet_link = active.wallet_link
        return drop
