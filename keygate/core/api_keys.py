"""API key generation, hashing, and comparison primitives."""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from hashlib import sha256

DISPLAY_PREFIX_LENGTH = 8


@dataclass(frozen=True)
class GeneratedAPIKey:
    """Raw key shown once, plus the values that are safe to persist."""

    raw_key: str
    key_hash: str
    key_prefix: str


class APIKeyCore:
    """Core API key operations."""

    def __init__(self, prefix: str = "qrw_") -> None:
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def generate(self) -> GeneratedAPIKey:
        """Generate a key from 32 random bytes with the configured prefix."""
        raw_key = f"{self._prefix}{secrets.token_hex(32)}"
        return GeneratedAPIKey(
            raw_key=raw_key,
            key_hash=self.hash_key(raw_key),
            key_prefix=self.key_prefix(raw_key),
        )

    def hash_key(self, raw_key: str) -> str:
        """Hash raw API key using SHA-256 hex digest."""
        return sha256(raw_key.encode("utf-8")).hexdigest()

    def key_prefix(self, raw_key: str) -> str:
        """Return display prefix from the first characters of the raw key."""
        return raw_key[:DISPLAY_PREFIX_LENGTH]

    def is_valid_format(self, raw_key: str) -> bool:
        """Validate API key prefix format."""
        if len(raw_key) <= len(self._prefix):
            return False
        if any(character.isspace() for character in raw_key):
            return False
        return hmac.compare_digest(raw_key[: len(self._prefix)], self._prefix)

    def hash_matches(self, expected_hash: str, raw_key: str) -> bool:
        """Constant-time compare between stored hash and raw key hash."""
        candidate_hash = self.hash_key(raw_key)
        return hmac.compare_digest(expected_hash, candidate_hash)


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract bearer token from an Authorization header value."""
    if authorization is None:
        return None
    authorization = authorization.strip()
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if not hmac.compare_digest(scheme.lower(), "bearer"):
        return None
    stripped = token.strip()
    return stripped or None
