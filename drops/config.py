"""
Runtime configuration from environment variables.

main.py calls load_dotenv() before from_env(), so a .env file works the
same as exported variables. Defaults target NEAR testnet.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from .constants import LIMITS


@dataclass(frozen=True)
class DropsConfig:
    network_id: str = "testnet"
    node_url: str = "https://rpc.testnet.near.org"
    wallet_url: str = "https://wallet.testnet.near.org"
    contract_name: str = "linkdrop.testnet"
    account_id: str = ""
    app_url: str = "http://localhost:8000"
    data_dir: Path = Path("data")
    gateway: str = "rpc"                      # "rpc" | "memory"
    reconcile_interval_seconds: int = 60
    min_viable_balance: int = LIMITS.MIN_VIABLE_BALANCE
    multisig_wasm_path: Path = Path("wasm/multisig.wasm")
    credentials_secret: str = ""

    @property
    def store_path(self) -> Path:
        return self.data_dir / "drops.json"

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / "credentials.json"

    @classmethod
    def from_env(cls) -> "DropsConfig":
        network_id = os.getenv("NEAR_NETWORK_ID", "testnet")
        return cls(
            network_id=network_id,
            node_url=os.getenv("NEAR_NODE_URL", f"https://rpc.{network_id}.near.org"),
            wallet_url=os.getenv("NEAR_WALLET_URL", f"https://wallet.{network_id}.near.org"),
            contract_name=os.getenv("NEAR_CONTRACT_NAME", f"linkdrop.{network_id}"),
            account_id=os.getenv("NEAR_ACCOUNT_ID", ""),
            app_url=os.getenv("DROPS_APP_URL", "http://localhost:8000"),
            data_dir=Path(os.getenv("DROPS_DATA_DIR", "data")),
            gateway=os.getenv("DROPS_GATEWAY", "rpc").lower(),
            reconcile_interval_seconds=int(os.getenv("DROPS_RECONCILE_INTERVAL", "60")),
            min_viable_balance=int(
                os.getenv("DROPS_MIN_VIABLE_BALANCE", str(LIMITS.MIN_VIABLE_BALANCE))
            ),
            multisig_wasm_path=Path(os.getenv("MULTISIG_WASM_PATH", "wasm/multisig.wasm")),
            credentials_secret=os.getenv("CREDENTIALS_SECRET", ""),
        )
