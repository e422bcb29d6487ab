"""Key vault adapters: encrypt/decrypt private-key PEM material at rest."""

from __future__ import annotations

import base64
import logging
import os
from abc import ABC, abstractmethod

from azure.identity import DefaultAzureCredential
from azure.keyvault.keys.crypto import CryptographyClient, KeyWrapAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cert_engine.config import AppConfig
from cert_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

_IV_LENGTH = 12  # NIST-recommended for GCM
_TAG_LENGTH = 16
_SEPARATOR = ":"
_ENVELOPE_PREFIX = "kv1"

_credential: DefaultAzureCredential | None = None


def _get_credential() -> DefaultAzureCredential:
    """Process-wide credential; token caching lives inside it."""
    global _credential
    if _credential is None:
        _credential = DefaultAzureCredential()
    return _credential


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _seal(key: bytes, plaintext: str) -> list[str]:
    """AES-256-GCM encrypt, returning [iv, tag, ciphertext] as base64 parts."""
    iv = os.urandom(_IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
    return [_b64(iv), _b64(tag), _b64(ciphertext)]


def _open(key: bytes, iv_b64: str, tag_b64: str, ct_b64: str) -> str:
    """Inverse of _seal. Raises cryptography's InvalidTag when data was tampered with."""
    iv = base64.b64decode(iv_b64)
    sealed = base64.b64decode(ct_b64) + base64.b64decode(tag_b64)
    return AESGCM(key).decrypt(iv, sealed, None).decode("utf-8")


class KeyVault(ABC):
    """Interface for protecting ``privateKeyPem`` and ``accountKeyPem`` at rest."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        """Return an opaque ciphertext string safe to persist."""

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext for a value produced by ``encrypt``."""


class LocalKeyVault(KeyVault):
    """AES-256-GCM with a static key. Ciphertext format is ``iv:tag:ciphertext`` (base64 parts)."""

    def __init__(self, encryption_key_b64: str) -> None:
        key = base64.b64decode(encryption_key_b64)
        if len(key) != 32:
            raise ConfigurationError(f"ENCRYPTION_KEY must be 32 bytes (got {len(key)})")
        self._key = key

    def encrypt(self, plaintext: str) -> str:
        return _SEPARATOR.join(_seal(self._key, plaintext))

    def decrypt(self, ciphertext: str) -> str:
        parts = ciphertext.split(_SEPARATOR)
        if len(parts) != 3:
            raise ValueError("Invalid encrypted data format")
        return _open(self._key, *parts)


class AzureKeyVault(KeyVault):
    """Envelope encryption: a per-value data key, wrapped by an RSA key held in Azure Key Vault.

    Ciphertext format is ``kv1:wrapped_key:iv:tag:ciphertext`` (base64 parts).
    """

    def __init__(
        self,
        vault_url: str,
        key_name: str,
        credential=None,
        _crypto_client: CryptographyClient | None = None,
    ) -> None:
        key_id = f"{vault_url.rstrip('/')}/keys/{key_name}"
        self._client = _crypto_client or CryptographyClient(key_id, credential or _get_credential())

    def encrypt(self, plaintext: str) -> str:
        data_key = AESGCM.generate_key(bit_length=256)
        wrapped = self._client.wrap_key(KeyWrapAlgorithm.rsa_oaep_256, data_key)
        return _SEPARATOR.join([_ENVELOPE_PREFIX, _b64(wrapped.encrypted_key), *_seal(data_key, plaintext)])

    def decrypt(self, ciphertext: str) -> str:
        parts = ciphertext.split(_SEPARATOR)
        if len(parts) != 5 or parts[0] != _ENVELOPE_PREFIX:
            raise ValueError("Invalid encrypted data format")
        unwrapped = self._client.unwrap_key(KeyWrapAlgorithm.rsa_oaep_256, base64.b64decode(parts[1]))
        return _open(unwrapped.key, *parts[2:])


def get_key_vault(config: AppConfig) -> KeyVault:
    """Instantiate the key vault adapter selected by ``KEY_VAULT_PROVIDER``."""
    if config.key_vault_provider == "azure":
        if not (config.azure_keyvault_url and config.azure_keyvault_key_name):
            raise ConfigurationError("AZURE_KEYVAULT_URL and AZURE_KEYVAULT_KEY_NAME are required")
        logger.info("Using Azure Key Vault key %s for envelope encryption", config.azure_keyvault_key_name)
        return AzureKeyVault(config.azure_keyvault_url, config.azure_keyvault_key_name)

    if config.key_vault_provider == "local":
        if not config.encryption_key:
            raise ConfigurationError("ENCRYPTION_KEY is not set")
        return LocalKeyVault(config.encryption_key)

    raise ConfigurationError(f"Unknown key vault provider: '{config.key_vault_provider}'")
