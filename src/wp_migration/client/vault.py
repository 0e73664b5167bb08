"""Credential vault for the remote connection descriptor.

Credentials are sealed with AES-256-GCM under a key derived (HKDF-SHA256)
from opaque installation key material. The sealed token is a base64 string
carrying a version header, so tampered or foreign payloads are rejected
instead of decrypting to garbage.
"""

import base64
import binascii
import json
import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import ValidationError

from wp_migration.client.exceptions import VaultError
from wp_migration.config import CredentialRecord
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

HEADER = b"v3:aesgcm:"
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

CREDENTIALS_OPTION = "migration_credentials"


class OptionStore(Protocol):
    """Key-value persistence used to hold the sealed credential blob."""

    def get_option(self, name: str) -> str | None: ...

    def set_option(self, name: str, value: str) -> None: ...

    def delete_option(self, name: str) -> None: ...


class CredentialVault:
    """Authenticated symmetric encryption of small payloads."""

    def __init__(self, key_material: bytes, context: str = "default"):
        """Derive the vault key.

        Args:
            key_material: Opaque installation secret
            context: Derivation context, typically the local site host
        """
        if not key_material:
            raise VaultError("Vault key material must not be empty")

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=f"wp-bridge|{context}".encode(),
        )
        self._aead = AESGCM(hkdf.derive(key_material))
        self.context = context

    def encrypt(self, plaintext: bytes) -> str:
        """Encrypt bytes into a base64 token."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext, HEADER)
        return base64.b64encode(HEADER + nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> bytes:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises:
            VaultError: On malformed input, unknown header or failed authentication
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise VaultError("Credential token is not valid base64") from e

        if not raw.startswith(HEADER):
            raise VaultError("Credential token has an unknown format")

        payload = raw[len(HEADER) :]
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise VaultError("Credential token is truncated")

        nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, HEADER)
        except InvalidTag as e:
            raise VaultError("Credential token failed authentication") from e

    def seal_credentials(self, record: CredentialRecord) -> str:
        """Serialize and encrypt a credential record."""
        return self.encrypt(json.dumps(record.to_plain_dict()).encode("utf-8"))

    def open_credentials(self, token: str) -> CredentialRecord:
        """Decrypt a credential record; unknown keys are dropped."""
        plaintext = self.decrypt(token)
        try:
            data = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise VaultError("Decrypted credentials are not valid JSON") from e

        if not isinstance(data, dict):
            raise VaultError("Decrypted credentials are not an object")

        known = {k: v for k, v in data.items() if k in CredentialRecord.model_fields}
        try:
            return CredentialRecord(**known)
        except ValidationError as e:
            raise VaultError(f"Decrypted credentials are invalid: {e}") from e


class CredentialStore:
    """Persists the sealed credential blob in the local store's options."""

    def __init__(self, options: OptionStore, vault: CredentialVault):
        self.options = options
        self.vault = vault

    def save(self, record: CredentialRecord) -> None:
        self.options.set_option(CREDENTIALS_OPTION, self.vault.seal_credentials(record))
        logger.info("credentials_saved", host=record.host, database=record.database)

    def load(self) -> CredentialRecord | None:
        """Return the stored credentials, or None when nothing is stored.

        Raises:
            VaultError: If a blob exists but cannot be opened
        """
        token = self.options.get_option(CREDENTIALS_OPTION)
        if not token:
            return None
        return self.vault.open_credentials(token)

    def clear(self) -> None:
        self.options.delete_option(CREDENTIALS_OPTION)
        logger.info("credentials_cleared")
