"""Credential persistence for sessions.

This module defines the CredentialStore port used by the session manager and
its implementations:
- InMemoryCredentialStore: process-local, non-persistent
- EncryptedFileCredentialStore: AES-256-GCM encrypted JSON file
- EphemeralCredentialStore: accepts writes, never returns anything

Encrypted file format (binary):
    salt (16 bytes) + nonce (12 bytes) + AES-256-GCM ciphertext

The encryption key is derived from a passphrase with PBKDF2-HMAC-SHA256. The
plaintext is a JSON document mapping credential keys to serialized
credentials. Writes go to a temporary file that atomically replaces the
target.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ssokeeper.core.config import CredentialStoreProvider, CredentialStoreSettings
from ssokeeper.models.credential import Credential

if TYPE_CHECKING:
    from pydantic import SecretStr

logger = logging.getLogger(__name__)

SALT_SIZE_BYTES = 16
GCM_NONCE_SIZE_BYTES = 12
KEY_SIZE_BYTES = 32
DEFAULT_KDF_ITERATIONS = 600_000
FILE_FORMAT_VERSION = 1


class CredentialStoreError(Exception):
    """Base exception for credential store operations."""

    pass


class CredentialStoreCorruptError(CredentialStoreError):
    """Raised when persisted credentials cannot be decrypted or parsed."""

    pass


class CredentialStore(Protocol):
    """Port for credential persistence.

    Keys are opaque strings; the session manager uses ``session_key()``.
    All user id comparisons are case-insensitive.
    """

    async def store(self, key: str, credential: Credential) -> None: ...

    async def get(self, key: str) -> Credential | None: ...

    async def remove(self, key: str) -> bool: ...

    async def update(
        self,
        key: str,
        update_fn: Callable[[Credential | None], Credential],
    ) -> Credential: ...

    async def exists(self, key: str) -> bool: ...

    async def list_keys(self, user_id: str) -> list[str]: ...

    async def list_keys_by_pattern(self, pattern: str) -> list[str]: ...

    async def get_user_credentials(self, user_id: str) -> list[Credential]: ...

    async def cleanup_expired(self, now: datetime | None = None) -> int: ...

    async def clear_user_credentials(self, user_id: str) -> int: ...

    async def clear_all(self) -> None: ...

    async def count(self) -> int: ...


def _require_key(key: str) -> None:
    if not key:
        raise ValueError("Credential key cannot be empty")


def match_key_pattern(key: str, pattern: str) -> bool:
    """Match a key against a simple wildcard pattern (case-insensitive).

    Supported forms: ``*`` (everything), ``prefix*``, ``*suffix`` and a bare
    substring.
    """
    key_lower = key.lower()
    pattern_lower = pattern.lower()
    if pattern_lower == "*":
        return True
    if pattern_lower.endswith("*"):
        return key_lower.startswith(pattern_lower[:-1])
    if pattern_lower.startswith("*"):
        return key_lower.endswith(pattern_lower[1:])
    return pattern_lower in key_lower


class InMemoryCredentialStore:
    """Non-persistent credential store for tests and development.

    Stored credentials are copied on the way in and out so callers cannot
    mutate the stored records.
    """

    def __init__(self) -> None:
        self._credentials: dict[str, Credential] = {}
        self._lock = asyncio.Lock()

    async def _load(self) -> None:
        """Hook for subclasses that back the map with storage."""

    async def _flush(self, credentials: dict[str, Credential]) -> None:
        """Hook for subclasses that back the map with storage."""

    async def _commit(self, credentials: dict[str, Credential]) -> None:
        # The new map only replaces the current one once it has been flushed
        await self._flush(credentials)
        self._credentials = credentials

    async def store(self, key: str, credential: Credential) -> None:
        _require_key(key)
        async with self._lock:
            await self._load()
            updated = dict(self._credentials)
            updated[key] = credential.copy()
            await self._commit(updated)
        logger.debug("Stored credential: key=%s", key)

    async def get(self, key: str) -> Credential | None:
        _require_key(key)
        async with self._lock:
            await self._load()
            credential = self._credentials.get(key)
        if credential is None:
            logger.debug("Credential not found: key=%s", key)
            return None
        return credential.copy()

    async def remove(self, key: str) -> bool:
        _require_key(key)
        async with self._lock:
            await self._load()
            if key not in self._credentials:
                return False
            updated = dict(self._credentials)
            del updated[key]
            await self._commit(updated)
        logger.debug("Removed credential: key=%s", key)
        return True

    async def update(
        self,
        key: str,
        update_fn: Callable[[Credential | None], Credential],
    ) -> Credential:
        """Atomically replace a credential with ``update_fn(existing)``."""
        _require_key(key)
        async with self._lock:
            await self._load()
            existing = self._credentials.get(key)
            result = update_fn(existing.copy() if existing else None)
            updated = dict(self._credentials)
            updated[key] = result.copy()
            await self._commit(updated)
        return result

    async def exists(self, key: str) -> bool:
        _require_key(key)
        async with self._lock:
            await self._load()
            return key in self._credentials

    async def list_keys(self, user_id: str) -> list[str]:
        if not user_id:
            raise ValueError("User id cannot be empty")
        user_lower = user_id.lower()
        async with self._lock:
            await self._load()
            return [k for k, c in self._credentials.items() if c.user_id.lower() == user_lower]

    async def list_keys_by_pattern(self, pattern: str) -> list[str]:
        if not pattern:
            raise ValueError("Pattern cannot be empty")
        async with self._lock:
            await self._load()
            return [k for k in self._credentials if match_key_pattern(k, pattern)]

    async def get_user_credentials(self, user_id: str) -> list[Credential]:
        if not user_id:
            raise ValueError("User id cannot be empty")
        user_lower = user_id.lower()
        async with self._lock:
            await self._load()
            return [
                c.copy() for c in self._credentials.values() if c.user_id.lower() == user_lower
            ]

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        async with self._lock:
            await self._load()
            kept = {k: c for k, c in self._credentials.items() if not c.is_expired(now)}
            removed = len(self._credentials) - len(kept)
            if removed:
                await self._commit(kept)
        if removed:
            logger.info("Cleaned up expired credentials: count=%d", removed)
        return removed

    async def clear_user_credentials(self, user_id: str) -> int:
        if not user_id:
            raise ValueError("User id cannot be empty")
        user_lower = user_id.lower()
        async with self._lock:
            await self._load()
            kept = {k: c for k, c in self._credentials.items() if c.user_id.lower() != user_lower}
            removed = len(self._credentials) - len(kept)
            if removed:
                await self._commit(kept)
        if removed:
            logger.info("Cleared user credentials: user_id=%s, count=%d", user_id, removed)
        return removed

    async def clear_all(self) -> None:
        async with self._lock:
            await self._load()
            count = len(self._credentials)
            await self._commit({})
        logger.warning("Cleared all credentials: count=%d", count)

    async def count(self) -> int:
        async with self._lock:
            await self._load()
            return len(self._credentials)


class EncryptedFileCredentialStore(InMemoryCredentialStore):
    """Credential store backed by an AES-256-GCM encrypted JSON file.

    The file is read lazily on first access and rewritten after every
    mutation. The salt is kept in the file header so the same passphrase
    derives the same key across restarts.

    Example:
        store = EncryptedFileCredentialStore(
            "/var/lib/ssokeeper/credentials.enc",
            passphrase=b"...",
        )
        await store.store(session_key(session_id), credential)
    """

    def __init__(
        self,
        file_path: str | Path,
        passphrase: bytes,
        *,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> None:
        """Initialize the store.

        Args:
            file_path: Location of the encrypted credential file.
            passphrase: Secret used to derive the encryption key.
            kdf_iterations: PBKDF2 iteration count.

        Raises:
            ValueError: If the passphrase is empty.
        """
        if not passphrase:
            raise ValueError("A passphrase is required for the encrypted credential store")
        super().__init__()
        self._path = Path(file_path)
        self._passphrase = passphrase
        self._kdf_iterations = kdf_iterations
        self._salt: bytes | None = None
        self._key: bytes | None = None
        self._loaded = False

    @property
    def file_path(self) -> Path:
        """Path of the encrypted credential file."""
        return self._path

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE_BYTES,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return kdf.derive(self._passphrase)

    async def _load(self) -> None:
        if self._loaded:
            return

        if not self._path.exists():
            self._salt = os.urandom(SALT_SIZE_BYTES)
            self._key = await asyncio.to_thread(self._derive_key, self._salt)
            self._credentials = {}
            self._loaded = True
            logger.info("Credential file not found, starting empty: path=%s", self._path)
            return

        try:
            blob = await asyncio.to_thread(self._path.read_bytes)
        except OSError as e:
            raise CredentialStoreError(f"Failed to read credential file: {e}") from e

        if len(blob) < SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES:
            raise CredentialStoreCorruptError("Credential file is truncated")

        salt = blob[:SALT_SIZE_BYTES]
        nonce = blob[SALT_SIZE_BYTES : SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES]
        ciphertext = blob[SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES :]
        key = await asyncio.to_thread(self._derive_key, salt)

        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise CredentialStoreCorruptError(
                "Credential file could not be decrypted (wrong passphrase or corrupted file)"
            ) from e

        try:
            document = json.loads(plaintext)
            credentials = {
                str(k): Credential.from_dict(v) for k, v in document["credentials"].items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise CredentialStoreCorruptError(f"Credential file content is invalid: {e}") from e

        self._salt = salt
        self._key = key
        self._credentials = credentials
        self._loaded = True
        logger.info(
            "Loaded credential file: path=%s, count=%d",
            self._path,
            len(credentials),
        )

    async def _flush(self, credentials: dict[str, Credential]) -> None:
        if self._key is None or self._salt is None:
            raise CredentialStoreError("Credential store is not loaded")

        document = {
            "version": FILE_FORMAT_VERSION,
            "credentials": {k: c.to_dict() for k, c in credentials.items()},
        }
        plaintext = json.dumps(document, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        blob = self._salt + nonce + AESGCM(self._key).encrypt(nonce, plaintext, None)

        try:
            await asyncio.to_thread(self._write_atomic, blob)
        except OSError as e:
            raise CredentialStoreError(f"Failed to write credential file: {e}") from e

    def _write_atomic(self, blob: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_bytes(blob)
        tmp_path.chmod(0o600)
        os.replace(tmp_path, self._path)


class EphemeralCredentialStore:
    """Credential store that persists nothing.

    Writes are accepted and discarded; every read misses. Useful when
    sessions must never outlive the process.
    """

    async def store(self, key: str, credential: Credential) -> None:
        _require_key(key)

    async def get(self, key: str) -> Credential | None:
        _require_key(key)
        return None

    async def remove(self, key: str) -> bool:
        _require_key(key)
        return False

    async def update(
        self,
        key: str,
        update_fn: Callable[[Credential | None], Credential],
    ) -> Credential:
        _require_key(key)
        return update_fn(None)

    async def exists(self, key: str) -> bool:
        return False

    async def list_keys(self, user_id: str) -> list[str]:
        return []

    async def list_keys_by_pattern(self, pattern: str) -> list[str]:
        return []

    async def get_user_credentials(self, user_id: str) -> list[Credential]:
        return []

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        return 0

    async def clear_user_credentials(self, user_id: str) -> int:
        return 0

    async def clear_all(self) -> None:
        return None

    async def count(self) -> int:
        return 0


def _secret_bytes(secret: SecretStr | None) -> bytes:
    if secret is None:
        return b""
    return secret.get_secret_value().encode("utf-8")


def create_credential_store(settings: CredentialStoreSettings) -> CredentialStore:
    """Create the credential store selected by configuration.

    Args:
        settings: Credential store settings.

    Returns:
        Configured credential store.

    Raises:
        ValueError: If the encrypted file provider has no passphrase.
    """
    if settings.provider == CredentialStoreProvider.ENCRYPTED_FILE:
        store: CredentialStore = EncryptedFileCredentialStore(
            settings.file_path,
            _secret_bytes(settings.passphrase),
            kdf_iterations=settings.kdf_iterations,
        )
    elif settings.provider == CredentialStoreProvider.EPHEMERAL:
        store = EphemeralCredentialStore()
    else:
        store = InMemoryCredentialStore()

    logger.info("Credential store created: provider=%s", settings.provider.value)
    return store
