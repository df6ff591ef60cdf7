"""
Tests for device secret decryption.
"""

import pytest

from fleet_monitor._types import Device
from fleet_monitor.credentials import (
    AesGcmSecretDecryptor,
    PlainSecretDecryptor,
    build_decryptor,
)
from fleet_monitor.errors import CredentialError


IV = bytes(range(12))


def test_encrypt_decrypt():
    """Should decrypt a secret in the registry format."""
    decryptor = AesGcmSecretDecryptor("shared-key")
    stored = decryptor.encrypt("s3cret", IV)

    assert stored.count(":") == 3
    assert decryptor.decrypt(stored) == "s3cret"


def test_unicode_secret():
    decryptor = AesGcmSecretDecryptor("shared-key")
    assert decryptor.decrypt(decryptor.encrypt("pässwörd", IV)) == "pässwörd"


def test_wrong_key():
    """A different key must fail authentication, not return garbage."""
    stored = AesGcmSecretDecryptor("shared-key").encrypt("s3cret", IV)

    with pytest.raises(CredentialError):
        AesGcmSecretDecryptor("other-key").decrypt(stored)


def test_tampered_ciphertext():
    decryptor = AesGcmSecretDecryptor("shared-key")
    salt, iv, tag, _ = decryptor.encrypt("s3cret", IV).split(":")
    forged = ":".join([salt, iv, tag, "AAAAAAAA"])

    with pytest.raises(CredentialError):
        decryptor.decrypt(forged)


@pytest.mark.parametrize("stored", ["plain", "a:b:c", "a:b:c:d:e"])
def test_bad_format(stored):
    with pytest.raises(CredentialError, match="format"):
        AesGcmSecretDecryptor("shared-key").decrypt(stored)


def test_bad_base64():
    with pytest.raises(CredentialError):
        AesGcmSecretDecryptor("shared-key").decrypt("salt:abc:def:ghi")


def test_empty_key_rejected():
    with pytest.raises(CredentialError):
        AesGcmSecretDecryptor("")


def test_credentials_for():
    device = Device(name="r1", address="10.0.0.1", port=8729, username="admin", secret_encrypted="pw")
    credentials = PlainSecretDecryptor().credentials_for(device, timeout=3.0)

    assert credentials.address == "10.0.0.1"
    assert credentials.port == 8729
    assert credentials.username == "admin"
    assert credentials.secret == "pw"
    assert credentials.timeout == 3.0


def test_build_decryptor():
    assert isinstance(build_decryptor(None), PlainSecretDecryptor)
    assert isinstance(build_decryptor("shared-key"), AesGcmSecretDecryptor)
