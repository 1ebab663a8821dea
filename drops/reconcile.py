"""
Reconciliation Engine - sync the local drop index against the ledger

For each stored drop, ask the ledger for the key's balance:
- query fails       -> keep the drop, log, retry next pass (never fatal)
- balance too small -> funds were claimed or never arrived: remove the drop
- otherwise         -> attach the derived wallet link (in memory only)

A pass is idempotent: with no remote change in between, a second pass
leaves the store exactly as the first left it. A drop persisted before a
funding call that never landed shows a zero balance and is pruned here.

Runs after the initial load, after every store mutation, and periodically.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from .constants import LIMITS
from .errors import RemoteError
from .gateway import ContractGateway
from .links import wallet_link
from .store import Drop, DropStore

logger = logging.getLogger("neardrop.reconcile")


@dataclass
class ReconcileReport:
    owner: str
    active: list[Drop] = field(default_factory=list)       # still stored, wallet_link set
    pruned: list[str] = field(default_factory=list)        # public keys removed this pass
    unreachable: list[str] = field(default_factory=list)   # balance query failed, kept
    balances: dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.pruned)


class ReconciliationEngine:

    def __init__(
        self,
        store: DropStore,
        gateway: ContractGateway,
        wallet_url: str,
        contract_name: str,
        min_viable_balance: int = LIMITS.MIN_VIABLE_BALANCE,
    ):
        self.store = store
        self.gateway = gateway
        self.wallet_url = wallet_url
        self.contract_name = contract_name
        self.min_viable_balance = min_viable_balance
        self.pass_count: int = 0

    @classmethod
    def from_context(cls, ctx) -> "ReconciliationEngine":
        return cls(
            store=ctx.store,
            gateway=ctx.gateway,
            wallet_url=ctx.config.wallet_url,
            contract_name=ctx.contract_name,
            min_viable_balance=ctx.config.min_viable_balance,
        )

    async def reconcile(self, owner: str) -> ReconcileReport:
        """One full pass under the owner's lock."""
        async with self.store.lock(owner):
            return await self.reconcile_locked(owner)

    async def reconcile_locked(self, owner: str) -> ReconcileReport:
        """One full pass. Caller MUST already hold store.lock(owner)."""
        report = ReconcileReport(owner=owner)
        self.pass_count += 1

        for drop in await self.store.load(owner):
            try:
                balance = await self.gateway.get_key_balance(drop.public_key)
            except RemoteError as e:
                logger.warning(
                    f"Balance check failed for {drop.public_key[:8]}... ({owner}): {e} "
                    f"- keeping, will retry next pass"
                )
                report.unreachable.append(drop.public_key)
                drop.wallet_link = self._link(drop)
                report.active.append(drop)
                continue

            report.balances[drop.public_key] = balance
            if balance < self.min_viable_balance:
                await self.store.remove(owner, drop.public_key)
                report.pruned.append(drop.public_key)
                logger.info(
                    f"Pruned drop {drop.public_key[:8]}... ({owner}): remote balance {balance}"
                )
                continue

            drop.wallet_link = self._link(drop)
            report.active.append(drop)

        logger.debug(
            f"Reconciled {owner}: {len(report.active)} active, "
            f"{len(report.pruned)} pruned, {len(report.unreachable)} unreachable"
        )
        return report

    def _link(self, drop: Drop) -> str:
        return wallet_link(self.wallet_url, self.contract_name, drop.secret_key)

    async def run_periodic(self, owner: str, interval_seconds: float):
        """Background loop. A failed pass is logged and retried after the interval."""
        logger.info(f"Periodic reconciliation for {owner} every {interval_seconds}s")
        while True:
            try:
                await self.reconcile(owner)
            except Exception as e:
                logger.error(f"Reconciliation pass failed for {owner}: {e}")
            await asyncio.sleep(interval_seconds)
