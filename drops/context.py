"""
DropContext - everything a protocol needs, passed explicitly.

Bundles the signed-in account, the drop store, the ledger gateway, the
credential store and the user-decision port. No protocol reads
process-wide state.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from .config import DropsConfig
from .credentials import CredentialStore
from .gateway import ContractGateway
from .ports import UserDecisionPort
from .store import DropStore


@dataclass
class DropContext:
    account_id: str
    store: DropStore
    gateway: ContractGateway
    decisions: UserDecisionPort
    credentials: Optional[CredentialStore] = None
    config: DropsConfig = field(default_factory=DropsConfig)

    @property
    def contract_name(self) -> str:
        return self.gateway.contract_name or self.config.contract_name

    def with_decisions(self, decisions: UserDecisionPort) -> "DropContext":
        """Same store/gateway (and so the same per-owner locks), different port."""
        return replace(self, decisions=decisions)
