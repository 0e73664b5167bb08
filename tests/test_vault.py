"""Tests for the credential vault and the sealed credential store."""

import base64

import pytest

from wp_migration.client.exceptions import VaultError
from wp_migration.client.vault import (
    CREDENTIALS_OPTION,
    HEADER,
    CredentialStore,
    CredentialVault,
)
from wp_migration.config import CredentialRecord


@pytest.fixture
def vault():
    return CredentialVault(b"installation-secret", context="bridge.local")


@pytest.fixture
def record():
    return CredentialRecord(
        host="db.example.com:3307",
        database="legacy",
        user="reader",
        password="s3cret",
        table_prefix="site_",
        is_multi_tenant=True,
        media_base_url="https://old.example/wp-content/uploads/",
    )


class TestCredentialVault:
    def test_round_trip(self, vault):
        token = vault.encrypt(b"payload")
        assert vault.decrypt(token) == b"payload"

    def test_token_carries_version_header(self, vault):
        raw = base64.b64decode(vault.encrypt(b"payload"))
        assert raw.startswith(HEADER)

    def test_nonce_differs_between_encryptions(self, vault):
        assert vault.encrypt(b"same") != vault.encrypt(b"same")

    def test_tampered_token_is_rejected(self, vault):
        raw = bytearray(base64.b64decode(vault.encrypt(b"payload")))
        raw[-1] ^= 0x01
        with pytest.raises(VaultError, match="authentication"):
            vault.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_wrong_key_is_rejected(self, vault):
        token = vault.encrypt(b"payload")
        other = CredentialVault(b"another-secret", context="bridge.local")
        with pytest.raises(VaultError):
            other.decrypt(token)

    def test_wrong_context_is_rejected(self, vault):
        token = vault.encrypt(b"payload")
        other = CredentialVault(b"installation-secret", context="elsewhere")
        with pytest.raises(VaultError):
            other.decrypt(token)

    def test_invalid_base64(self, vault):
        with pytest.raises(VaultError, match="base64"):
            vault.decrypt("not base64!!")

    def test_unknown_header(self, vault):
        token = base64.b64encode(b"v1:legacy:" + b"x" * 40).decode()
        with pytest.raises(VaultError, match="unknown format"):
            vault.decrypt(token)

    def test_truncated_token(self, vault):
        token = base64.b64encode(HEADER + b"short").decode()
        with pytest.raises(VaultError, match="truncated"):
            vault.decrypt(token)

    def test_empty_key_material(self):
        with pytest.raises(VaultError):
            CredentialVault(b"")

    def test_credentials_round_trip(self, vault, record):
        opened = vault.open_credentials(vault.seal_credentials(record))

        assert opened.host == "db.example.com:3307"
        assert opened.password.get_secret_value() == "s3cret"
        assert opened.table_prefix == "site_"
        assert opened.is_multi_tenant is True
        assert opened.media_base_url == "https://old.example/wp-content/uploads"

    def test_unknown_keys_are_dropped(self, vault):
        token = vault.encrypt(b'{"host": "h", "database": "d", "user": "u", "legacy_flag": 1}')
        opened = vault.open_credentials(token)

        assert opened.database == "d"
        assert opened.charset == "utf8mb4"
        assert not hasattr(opened, "legacy_flag")

    def test_non_object_payload(self, vault):
        with pytest.raises(VaultError, match="not an object"):
            vault.open_credentials(vault.encrypt(b"[1, 2]"))


class TestCredentialStore:
    def test_save_load_clear(self, store, vault, record):
        credentials = CredentialStore(store, vault)
        assert credentials.load() is None

        credentials.save(record)
        sealed = store.get_option(CREDENTIALS_OPTION)
        assert sealed
        assert "s3cret" not in sealed

        loaded = credentials.load()
        assert loaded.user == "reader"
        assert loaded.password.get_secret_value() == "s3cret"

        credentials.clear()
        assert credentials.load() is None

    def test_foreign_blob_raises(self, store, vault):
        store.set_option(CREDENTIALS_OPTION, "garbage")
        with pytest.raises(VaultError):
            CredentialStore(store, vault).load()
