"""
Capability Keys - ed25519 key pairs for drops

A drop key is an ordinary NEAR ed25519 key pair. Its public half is
registered on the linkdrop contract; whoever holds the secret half can call
the claim methods the contract allowed for it.

Encoding follows NEAR conventions:
- public key: base58 of the 32 raw bytes
- secret key: base58 of seed (32 bytes) + public key (32 bytes)
The "ed25519:" network prefix is stripped for storage and links.
"""

import logging
from dataclasses import dataclass

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .errors import ValidationError

logger = logging.getLogger("neardrop.keys")

KEY_TYPE_PREFIX = "ed25519:"


def strip_prefix(key: str) -> str:
    """Drop the "ed25519:" prefix if present."""
    if key.startswith(KEY_TYPE_PREFIX):
        return key[len(KEY_TYPE_PREFIX):]
    return key


def with_prefix(key: str) -> str:
    """Add the "ed25519:" prefix the ledger expects in RPC payloads."""
    return KEY_TYPE_PREFIX + strip_prefix(key)


def _raw_private(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _raw_public(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@dataclass(frozen=True)
class KeyPair:
    public_key: str     # base58, no prefix
    secret_key: str     # base58 seed+public, no prefix

    @classmethod
    def from_private_key(cls, private_key: Ed25519PrivateKey) -> "KeyPair":
        seed = _raw_private(private_key)
        public = _raw_public(private_key)
        return cls(
            public_key=base58.b58encode(public).decode("ascii"),
            secret_key=base58.b58encode(seed + public).decode("ascii"),
        )

    @classmethod
    def from_secret(cls, secret_key: str) -> "KeyPair":
        """
        Rebuild a key pair from a stored or shared secret.

        Accepts the 64-byte NEAR form (seed + public) or a bare 32-byte seed,
        with or without the "ed25519:" prefix.
        """
        try:
            raw = base58.b58decode(strip_prefix(secret_key.strip()))
        except ValueError as e:
            raise ValidationError(f"Malformed secret key: {e}")
        if len(raw) not in (32, 64):
            raise ValidationError(f"Secret key has {len(raw)} bytes, expected 32 or 64")
        private_key = Ed25519PrivateKey.from_private_bytes(raw[:32])
        pair = cls.from_private_key(private_key)
        if len(raw) == 64 and raw[32:] != base58.b58decode(pair.public_key):
            raise ValidationError("Secret key does not match its embedded public key")
        return pair

    @property
    def public_key_bytes(self) -> bytes:
        return base58.b58decode(self.public_key)

    def sign(self, message: bytes) -> bytes:
        """ed25519 signature over message (64 bytes)."""
        seed = base58.b58decode(self.secret_key)[:32]
        return Ed25519PrivateKey.from_private_bytes(seed).sign(message)

    def __repr__(self) -> str:
        # Never print the secret half
        return f"KeyPair(public_key={self.public_key!r})"


class KeyGenerator:
    """Produces fresh capability key pairs from the OS CSPRNG."""

    def generate(self) -> KeyPair:
        pair = KeyPair.from_private_key(Ed25519PrivateKey.generate())
        logger.debug(f"Generated key pair {pair.public_key[:8]}...")
        return pair
