"""
Credential Store - Encrypted storage for account keys.

Holds the full-access keys of accounts created by claiming a drop, and the
signing key of the issuing account. Secrets are encrypted at rest using
Fernet symmetric encryption; the encryption key is derived from
CREDENTIALS_SECRET via HMAC-SHA256.

Fallback: if the store file doesn't exist yet, the issuing account's key is
read from NEAR_OWNER_SECRET_KEY (migration path from a manual .env).
"""

import os
import json
import asyncio
import time
import hmac
import base64
import hashlib
import logging
import tempfile
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import StorageError
from .keys import KeyPair

logger = logging.getLogger("neardrop.credentials")


class CredentialStore:
    """Maps account_id -> KeyPair, encrypted on disk."""

    def __init__(
        self,
        path: Path,
        network_id: str = "testnet",
        secret: str = "",
        owner_account: str = "",
    ):
        self.path = Path(path)
        self.network_id = network_id
        self._secret = secret or os.getenv(
            "CREDENTIALS_SECRET", "neardrop-credentials-change-me"
        )
        self._fernet = self._init_encryption(self._secret)
        self._keys: dict[str, dict] = {}  # account_id -> {secret_key, added_at}
        self._load(owner_account)

    @staticmethod
    def _init_encryption(secret: str) -> Fernet:
        derived = hmac.new(
            secret.encode(),
            b"neardrop-credential-encryption",
            hashlib.sha256,
        ).digest()
        return Fernet(base64.urlsafe_b64encode(derived))

    def _load(self, owner_account: str):
        """Load keys from the encrypted file, falling back to the environment."""
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise StorageError(f"Failed to read credential store {self.path}: {e}")

            for account_id, data in raw.get(self.network_id, {}).items():
                try:
                    secret_key = self._fernet.decrypt(data["key"].encode()).decode()
                except (InvalidToken, KeyError):
                    logger.warning(f"Failed to decrypt key for {account_id}")
                    continue
                self._keys[account_id] = {
                    "secret_key": secret_key,
                    "added_at": data.get("added_at", 0),
                }
            logger.info(f"Loaded {len(self._keys)} account keys ({self.network_id})")
            return

        env_secret = os.getenv("NEAR_OWNER_SECRET_KEY", "")
        if owner_account and env_secret:
            self.set_key(owner_account, KeyPair.from_secret(env_secret))
            logger.info(f"Migrated signing key for {owner_account} from environment")

    def _save(self):
        """Atomic write: temp file in the same directory, then rename."""
        try:
            existing = {}
            if self.path.exists():
                existing = json.loads(self.path.read_text(encoding="utf-8"))
            existing[self.network_id] = {
                account_id: {
                    "key": self._fernet.encrypt(info["secret_key"].encode()).decode(),
                    "added_at": info.get("added_at", 0),
                }
                for account_id, info in self._keys.items()
            }

            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp", prefix="credentials_"
            )
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                    json.dump(existing, f, indent=2)
                os.replace(tmp_path, str(self.path))
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except (OSError, ValueError) as e:
            logger.error(f"Failed to save credential store: {e}")
            raise StorageError(f"Failed to save credential store {self.path}: {e}")

    def set_key(self, account_id: str, key_pair: KeyPair):
        """Set or replace the key for an account."""
        self._keys[account_id] = {
            "secret_key": key_pair.secret_key,
            "added_at": time.time(),
        }
        self._save()
        logger.info(f"Key stored for {account_id} ({key_pair.public_key[:8]}...)")

    async def store_key(self, account_id: str, key_pair: KeyPair):
        """set_key with the file write moved off the event loop."""
        await asyncio.get_running_loop().run_in_executor(None, self.set_key, account_id, key_pair)

    def get_key(self, account_id: str) -> Optional[KeyPair]:
        info = self._keys.get(account_id)
        if not info:
            return None
        return KeyPair.from_secret(info["secret_key"])

    def remove_key(self, account_id: str):
        if account_id in self._keys:
            del self._keys[account_id]
            self._save()
            logger.info(f"Key removed for {account_id}")

    def list_accounts(self) -> list[str]:
        return sorted(self._keys)

    def get_status(self) -> dict:
        """Status for the account endpoint. NEVER returns key material."""
        return {
            "network_id": self.network_id,
            "accounts": self.list_accounts(),
            "storage_file": str(self.path),
        }
