"""
neardrop - main entry point

Initializes the stores, the ledger gateway and the protocols, wires them
into the API, starts the server. One file to understand how everything
connects.

Usage:
    python main.py                      # Start neardrop
    DROPS_GATEWAY=memory python main.py # Local ledger model, no network
"""

import os
import re
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact base58 ed25519 secret keys (64 bytes -> 86-88 chars) from all log output."""
    _PATTERN = re.compile(
        r"(?<![1-9A-HJ-NP-Za-km-z])([1-9A-HJ-NP-Za-km-z]{80,90})(?![1-9A-HJ-NP-Za-km-z])"
    )

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub("[REDACTED]", record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub("[REDACTED]", formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("neardrop.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from drops.config import DropsConfig
from drops.constants import YOCTO_PER_NEAR
from drops.context import DropContext
from drops.credentials import CredentialStore
from drops.errors import ConfigurationError, DropError
from drops.gateway import ContractGateway, InMemoryGateway
from drops.near_rpc import NearRpcGateway
from drops.ports import PresetDecisions
from drops.reconcile import ReconciliationEngine
from drops.store import DropStore, JsonFileBackend
from drops.units import format_near
from api.server import create_app


# ============================================================
# WIRING
# ============================================================

def build_gateway(config: DropsConfig, credentials: CredentialStore) -> ContractGateway:
    """DROPS_GATEWAY=rpc talks to a NEAR node; memory keeps the whole ledger in-process."""
    if config.gateway == "memory":
        logger.warning("Using the in-memory ledger: nothing reaches the network")
        return InMemoryGateway(
            contract_name=config.contract_name,
            accounts={config.account_id: 100 * YOCTO_PER_NEAR},
        )
    if config.gateway != "rpc":
        raise ConfigurationError(f"Unknown DROPS_GATEWAY: {config.gateway!r}")
    return NearRpcGateway(
        node_url=config.node_url,
        contract_name=config.contract_name,
        owner_account=config.account_id,
        credentials=credentials,
    )


def build_context(config: DropsConfig) -> DropContext:
    if not config.account_id:
        raise ConfigurationError("NEAR_ACCOUNT_ID is not set")

    credentials = CredentialStore(
        config.credentials_path,
        network_id=config.network_id,
        secret=config.credentials_secret,
        owner_account=config.account_id,
    )
    if config.gateway == "rpc" and credentials.get_key(config.account_id) is None:
        # Views still work; funding will fail with ConfigurationError
        logger.warning(f"No signing key for {config.account_id}: funding is disabled")

    return DropContext(
        account_id=config.account_id,
        store=DropStore(JsonFileBackend(config.store_path)),
        gateway=build_gateway(config, credentials),
        decisions=PresetDecisions(approve=False),
        credentials=credentials,
        config=config,
    )


config = DropsConfig.from_env()
context = build_context(config)
reconciler = ReconciliationEngine.from_context(context)


# ============================================================
# APP LIFECYCLE
# ============================================================

@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("=" * 60)
    logger.info(f"neardrop starting for {config.account_id} on {config.network_id}")
    logger.info(f"Contract: {context.contract_name} | Ledger: {type(context.gateway).__name__}")
    logger.info("=" * 60)

    # Initial pass, then periodic. Non-fatal: an unreachable ledger just
    # leaves the drops in place until the next pass.
    report = await reconciler.reconcile(config.account_id)
    logger.info(
        f"Drops: {len(report.active)} active, {len(report.pruned)} pruned, "
        f"{len(report.unreachable)} unreachable"
    )
    try:
        balance = await context.gateway.get_account_balance(config.account_id)
        logger.info(f"Balance: {format_near(balance)} Ⓝ")
    except DropError as e:
        logger.warning(f"Balance check failed: {e}")

    reconcile_task = asyncio.create_task(
        reconciler.run_periodic(config.account_id, config.reconcile_interval_seconds)
    )

    yield

    # Shutdown
    logger.info("neardrop shutting down...")
    reconcile_task.cancel()
    try:
        await reconcile_task
    except asyncio.CancelledError:
        pass
    await context.gateway.close()
    logger.info("Goodbye.")


def create_neardrop_app():
    """Create the fully wired FastAPI app."""
    app = create_app(context, reconciler=reconciler)

    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan

    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_neardrop_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
