"""
Pytest configuration and shared fixtures for the neardrop test suite.

Everything runs against the in-memory ledger and the memory store backend;
no test touches the network. File-backed stores live under tmp_path.
"""

import pytest

from drops.config import DropsConfig
from drops.constants import YOCTO_PER_NEAR
from drops.context import DropContext
from drops.credentials import CredentialStore
from drops.gateway import InMemoryGateway
from drops.keys import KeyGenerator, KeyPair
from drops.ports import PresetDecisions
from drops.reconcile import ReconciliationEngine
from drops.store import DropStore, MemoryBackend
from drops.units import parse_near

OWNER = "alice.testnet"
CLAIMER = "bob.testnet"


def near(amount) -> int:
    """Human NEAR -> yoctoNEAR for test readability."""
    return parse_near(str(amount))


class CountingKeyGenerator(KeyGenerator):
    """Real keys, but counts how many were generated."""

    def __init__(self):
        self.generated: list[KeyPair] = []

    def generate(self) -> KeyPair:
        pair = super().generate()
        self.generated.append(pair)
        return pair


# ============================================================
# ENVIRONMENT
# ============================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """No test may pick up a developer's real keys or secrets."""
    for name in ("NEAR_OWNER_SECRET_KEY", "CREDENTIALS_SECRET", "CORS_ORIGINS"):
        monkeypatch.delenv(name, raising=False)


# ============================================================
# COLLABORATORS
# ============================================================

@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway(
        contract_name="linkdrop.testnet",
        accounts={OWNER: near(100), CLAIMER: near(1)},
    )


@pytest.fixture
def store() -> DropStore:
    return DropStore(MemoryBackend())


@pytest.fixture
def decisions() -> PresetDecisions:
    return PresetDecisions()


@pytest.fixture
def config(tmp_path) -> DropsConfig:
    return DropsConfig(
        account_id=OWNER,
        data_dir=tmp_path,
        gateway="memory",
        multisig_wasm_path=tmp_path / "multisig.wasm",
        credentials_secret="test-secret",
    )


@pytest.fixture
def credentials(config) -> CredentialStore:
    return CredentialStore(
        config.credentials_path,
        network_id=config.network_id,
        secret=config.credentials_secret,
    )


@pytest.fixture
def key_generator() -> CountingKeyGenerator:
    return CountingKeyGenerator()


# ============================================================
# CONTEXTS
# ============================================================

@pytest.fixture
def make_context(store, gateway, credentials, config):
    """Context factory: same store, ledger and credentials, any account and port."""

    def _make(account_id: str = OWNER, decisions=None) -> DropContext:
        return DropContext(
            account_id=account_id,
            store=store,
            gateway=gateway,
            decisions=decisions or PresetDecisions(),
            credentials=credentials,
            config=config,
        )

    return _make


@pytest.fixture
def ctx(make_context, decisions) -> DropContext:
    return make_context(OWNER, decisions)


@pytest.fixture
def reconciler(ctx) -> ReconciliationEngine:
    return ReconciliationEngine.from_context(ctx)
