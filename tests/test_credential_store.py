"""Tests for credential stores.

Tests cover:
- In-memory store CRUD, copying semantics and user scoping
- Key pattern matching
- Expired credential cleanup
- Encrypted file store persistence, file format and failure modes
- Ephemeral store
- Store factory
"""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import SecretStr

from ssokeeper.core.config import CredentialStoreProvider, CredentialStoreSettings
from ssokeeper.models.credential import Credential
from ssokeeper.services.credential_store import (
    GCM_NONCE_SIZE_BYTES,
    SALT_SIZE_BYTES,
    CredentialStoreCorruptError,
    EncryptedFileCredentialStore,
    EphemeralCredentialStore,
    InMemoryCredentialStore,
    create_credential_store,
    match_key_pattern,
)

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)

# Low iteration count keeps key derivation fast in tests
TEST_KDF_ITERATIONS = 1_000


def _credential(user_id: str = "alice", **overrides) -> Credential:
    values = {
        "user_id": user_id,
        "username": user_id,
        "access_token": "at",
        "refresh_token": "rt",
        "created_at": T0,
        "expires_at": T0 + timedelta(hours=1),
        "metadata": {"session_id": "s1"},
    }
    values.update(overrides)
    return Credential(**values)


class TestMatchKeyPattern:
    """Tests for wildcard key matching."""

    @pytest.mark.parametrize(
        ("key", "pattern", "expected"),
        [
            ("sso:session:abc", "*", True),
            ("sso:session:abc", "sso:session:*", True),
            ("SSO:SESSION:abc", "sso:session:*", True),
            ("other:abc", "sso:session:*", False),
            ("sso:session:abc", "*abc", True),
            ("sso:session:abd", "*abc", False),
            ("sso:session:abc", "session", True),
            ("sso:token:abc", "session", False),
        ],
    )
    def test_patterns(self, key, pattern, expected):
        assert match_key_pattern(key, pattern) is expected


class TestInMemoryCredentialStore:
    """Tests for InMemoryCredentialStore."""

    @pytest.mark.asyncio
    async def test_store_and_get(self):
        store = InMemoryCredentialStore()
        await store.store("k1", _credential())

        result = await store.get("k1")

        assert result is not None
        assert result.user_id == "alice"
        assert result.access_token == "at"
        assert await store.exists("k1")
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_get_missing(self):
        store = InMemoryCredentialStore()
        assert await store.get("missing") is None
        assert not await store.exists("missing")

    @pytest.mark.asyncio
    async def test_stored_credentials_are_copies(self):
        store = InMemoryCredentialStore()
        credential = _credential()
        await store.store("k1", credential)

        credential.metadata["session_id"] = "changed"
        fetched = await store.get("k1")
        fetched.metadata["session_id"] = "changed-again"

        assert (await store.get("k1")).metadata["session_id"] == "s1"

    @pytest.mark.asyncio
    async def test_store_replaces(self):
        store = InMemoryCredentialStore()
        await store.store("k1", _credential(access_token="old"))
        await store.store("k1", _credential(access_token="new"))

        assert (await store.get("k1")).access_token == "new"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_remove(self):
        store = InMemoryCredentialStore()
        await store.store("k1", _credential())

        assert await store.remove("k1") is True
        assert await store.remove("k1") is False
        assert await store.get("k1") is None

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self):
        store = InMemoryCredentialStore()
        with pytest.raises(ValueError, match="key cannot be empty"):
            await store.store("", _credential())
        with pytest.raises(ValueError):
            await store.get("")

    @pytest.mark.asyncio
    async def test_update_creates_and_modifies(self):
        store = InMemoryCredentialStore()

        created = await store.update("k1", lambda existing: existing or _credential())
        assert created.user_id == "alice"

        def rotate(existing):
            existing.access_token = "rotated"
            return existing

        await store.update("k1", rotate)
        assert (await store.get("k1")).access_token == "rotated"

    @pytest.mark.asyncio
    async def test_failing_update_leaves_store_unchanged(self):
        store = InMemoryCredentialStore()
        await store.store("k1", _credential())

        def fail(existing):
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await store.update("k1", fail)
        assert (await store.get("k1")).access_token == "at"

    @pytest.mark.asyncio
    async def test_user_scoping_is_case_insensitive(self):
        store = InMemoryCredentialStore()
        await store.store("k1", _credential("Alice"))
        await store.store("k2", _credential("alice"))
        await store.store("k3", _credential("bob"))

        assert sorted(await store.list_keys("ALICE")) == ["k1", "k2"]
        assert len(await store.get_user_credentials("alice")) == 2

        assert await store.clear_user_credentials("alice") == 2
        assert await store.list_keys("bob") == ["k3"]

    @pytest.mark.asyncio
    async def test_empty_user_rejected(self):
        store = InMemoryCredentialStore()
        with pytest.raises(ValueError):
            await store.list_keys("")
        with pytest.raises(ValueError):
            await store.clear_user_credentials("")

    @pytest.mark.asyncio
    async def test_list_keys_by_pattern(self):
        store = InMemoryCredentialStore()
        await store.store("sso:session:a", _credential())
        await store.store("sso:session:b", _credential())
        await store.store("other:c", _credential())

        assert sorted(await store.list_keys_by_pattern("sso:session:*")) == [
            "sso:session:a",
            "sso:session:b",
        ]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        store = InMemoryCredentialStore()
        await store.store("expired", _credential(expires_at=T0))
        await store.store("live", _credential(expires_at=T0 + timedelta(hours=2)))
        await store.store("forever", _credential(expires_at=None))

        removed = await store.cleanup_expired(T0 + timedelta(hours=1))

        assert removed == 1
        assert sorted(await store.list_keys_by_pattern("*")) == ["forever", "live"]

    @pytest.mark.asyncio
    async def test_clear_all(self):
        store = InMemoryCredentialStore()
        await store.store("k1", _credential())
        await store.store("k2", _credential())
        await store.clear_all()
        assert await store.count() == 0


class TestEncryptedFileCredentialStore:
    """Tests for EncryptedFileCredentialStore."""

    def test_empty_passphrase_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="passphrase"):
            EncryptedFileCredentialStore(tmp_path / "creds.enc", b"")

    @pytest.mark.asyncio
    async def test_missing_file_starts_empty(self, tmp_path):
        store = EncryptedFileCredentialStore(
            tmp_path / "creds.enc", b"pass", kdf_iterations=TEST_KDF_ITERATIONS
        )
        assert await store.count() == 0
        assert not store.file_path.exists()

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "creds.enc"
        first = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)
        await first.store("sso:session:s1", _credential())
        await first.store("sso:session:s2", _credential("bob"))
        await first.remove("sso:session:s2")

        second = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)
        restored = await second.get("sso:session:s1")

        assert restored == _credential()
        assert await second.count() == 1

    @pytest.mark.asyncio
    async def test_file_is_encrypted(self, tmp_path):
        path = tmp_path / "creds.enc"
        store = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)
        await store.store("k1", _credential(access_token="very-secret-token"))

        blob = path.read_bytes()
        assert b"very-secret-token" not in blob
        assert b"alice" not in blob
        assert len(blob) > SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES
        assert (path.stat().st_mode & 0o777) == 0o600

    @pytest.mark.asyncio
    async def test_salt_is_stable_and_nonce_fresh(self, tmp_path):
        path = tmp_path / "creds.enc"
        store = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)
        await store.store("k1", _credential())
        first = path.read_bytes()
        await store.store("k2", _credential())
        second = path.read_bytes()

        assert first[:SALT_SIZE_BYTES] == second[:SALT_SIZE_BYTES]
        assert (
            first[SALT_SIZE_BYTES : SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES]
            != second[SALT_SIZE_BYTES : SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES]
        )

    @pytest.mark.asyncio
    async def test_wrong_passphrase(self, tmp_path):
        path = tmp_path / "creds.enc"
        store = EncryptedFileCredentialStore(path, b"right", kdf_iterations=TEST_KDF_ITERATIONS)
        await store.store("k1", _credential())

        other = EncryptedFileCredentialStore(path, b"wrong", kdf_iterations=TEST_KDF_ITERATIONS)
        with pytest.raises(CredentialStoreCorruptError, match="wrong passphrase"):
            await other.get("k1")

    @pytest.mark.asyncio
    async def test_truncated_file(self, tmp_path):
        path = tmp_path / "creds.enc"
        path.write_bytes(b"short")
        store = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)

        with pytest.raises(CredentialStoreCorruptError, match="truncated"):
            await store.count()

    @pytest.mark.asyncio
    async def test_tampered_file(self, tmp_path):
        path = tmp_path / "creds.enc"
        store = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)
        await store.store("k1", _credential())

        blob = bytearray(path.read_bytes())
        blob[-1] ^= 0x01
        path.write_bytes(bytes(blob))

        reopened = EncryptedFileCredentialStore(path, b"pass", kdf_iterations=TEST_KDF_ITERATIONS)
        with pytest.raises(CredentialStoreCorruptError):
            await reopened.get("k1")


class TestEphemeralCredentialStore:
    """Tests for EphemeralCredentialStore."""

    @pytest.mark.asyncio
    async def test_reads_always_miss(self):
        store = EphemeralCredentialStore()
        await store.store("k1", _credential())

        assert await store.get("k1") is None
        assert not await store.exists("k1")
        assert await store.remove("k1") is False
        assert await store.count() == 0
        assert await store.list_keys("alice") == []


class TestCreateCredentialStore:
    """Tests for the credential store factory."""

    def test_memory_default(self):
        store = create_credential_store(CredentialStoreSettings())
        assert isinstance(store, InMemoryCredentialStore)
        assert not isinstance(store, EncryptedFileCredentialStore)

    def test_ephemeral(self):
        settings = CredentialStoreSettings(provider=CredentialStoreProvider.EPHEMERAL)
        assert isinstance(create_credential_store(settings), EphemeralCredentialStore)

    def test_encrypted_file(self, tmp_path):
        settings = CredentialStoreSettings(
            provider=CredentialStoreProvider.ENCRYPTED_FILE,
            file_path=str(tmp_path / "creds.enc"),
            passphrase=SecretStr("pass"),
            kdf_iterations=10_000,
        )
        store = create_credential_store(settings)

        assert isinstance(store, EncryptedFileCredentialStore)
        assert store.file_path == tmp_path / "creds.enc"

    def test_encrypted_file_without_passphrase(self, tmp_path):
        settings = CredentialStoreSettings(
            provider=CredentialStoreProvider.ENCRYPTED_FILE,
            file_path=str(tmp_path / "creds.enc"),
        )
        with pytest.raises(ValueError, match="passphrase"):
            create_credential_store(settings)
