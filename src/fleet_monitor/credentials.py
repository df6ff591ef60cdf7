"""
Device secret decryption.

The device registry stores secrets as "salt:iv:authTag:ciphertext" (all
base64) encrypted with AES-256-GCM under a key derived by scrypt from the
shared encryption key. Secrets are only decrypted right before a session is
opened and are never logged.
"""

from __future__ import annotations

import base64
import binascii
import logging
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ._types import Device, DeviceCredentials
from .errors import CredentialError

logger = logging.getLogger(__name__)

# Key derivation parameters shared with the registry that encrypts secrets
KDF_SALT = b"salt"
KDF_N = 2 ** 14
KDF_R = 8
KDF_P = 1
KEY_LENGTH = 32


class SecretDecryptor(ABC):
    """Turns a stored secret into the plain secret the device expects."""

    @abstractmethod
    def decrypt(self, stored: str) -> str:
        pass

    def credentials_for(self, device: Device, timeout: float = 10.0) -> DeviceCredentials:
        """Build session credentials for a device."""
        return DeviceCredentials(
            address=device.address,
            port=device.port,
            username=device.username,
            secret=self.decrypt(device.secret_encrypted),
            timeout=timeout,
        )


class PlainSecretDecryptor(SecretDecryptor):
    """Pass-through for registries that store secrets unencrypted."""

    def decrypt(self, stored: str) -> str:
        return stored


class AesGcmSecretDecryptor(SecretDecryptor):
    """AES-256-GCM decryptor for "salt:iv:authTag:ciphertext" secrets."""

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise CredentialError("Encryption key is empty")
        kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=KDF_N, r=KDF_R, p=KDF_P)
        self._aead = AESGCM(kdf.derive(encryption_key.encode("utf-8")))

    def decrypt(self, stored: str) -> str:
        parts = stored.split(":")
        if len(parts) != 4:
            raise CredentialError("Invalid encrypted secret format")

        _, iv_b64, tag_b64, cipher_b64 = parts
        try:
            iv = base64.b64decode(iv_b64)
            tag = base64.b64decode(tag_b64)
            ciphertext = base64.b64decode(cipher_b64)
        except (binascii.Error, ValueError) as e:
            raise CredentialError(f"Encrypted secret is not valid base64: {e}") from e

        try:
            plain = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise CredentialError("Secret authentication failed (wrong key?)") from e
        except ValueError as e:
            raise CredentialError(f"Malformed encrypted secret: {e}") from e

        return plain.decode("utf-8")

    def encrypt(self, plain: str, iv: bytes, salt: bytes = b"\x00" * 32) -> str:
        """Encrypt in the registry's format. Used by tooling and tests."""
        sealed = self._aead.encrypt(iv, plain.encode("utf-8"), None)
        ciphertext, tag = sealed[:-16], sealed[-16:]
        return ":".join(
            base64.b64encode(part).decode("ascii")
            for part in (salt, iv, tag, ciphertext)
        )


def build_decryptor(encryption_key: str | None) -> SecretDecryptor:
    """Pick a decryptor for the configured key."""
    if encryption_key:
        return AesGcmSecretDecryptor(encryption_key)
    logger.warning("No encryption key configured, device secrets are used as stored")
    return PlainSecretDecryptor()
