import base64
import secrets

import pytest

from trustcore.service import generator
from trustcore.service.errors import EntropyUnavailableError
from trustcore.storage.crypto import SecretCipher


def test_random_secret_encodings():
    b32 = generator.random_secret(20)
    assert len(b32) == 32
    assert "=" not in b32
    base64.b32decode(b32)

    b64 = generator.random_secret(32, "base64")
    assert "=" not in b64
    assert len(base64.urlsafe_b64decode(b64 + "=")) == 32

    with pytest.raises(ValueError):
        generator.random_secret(16, "hex")


def test_random_token_is_hex():
    token = generator.random_token(32)
    assert len(token) == 64
    int(token, 16)


def test_random_code_charset():
    code = generator.random_code(generator.BACKUP_CODE_CHARSET, 50)
    assert len(code) == 50
    assert set(code) <= set(generator.BACKUP_CODE_CHARSET)
    with pytest.raises(ValueError):
        generator.random_code("", 4)


def test_charset_excludes_confusable_characters():
    for ch in "0O1IL":
        assert ch not in generator.BACKUP_CODE_CHARSET


def test_entropy_failure_is_not_downgraded(monkeypatch):
    def broken(_n):
        raise OSError("getrandom failed")

    monkeypatch.setattr(secrets, "token_bytes", broken)
    with pytest.raises(EntropyUnavailableError):
        generator.random_token(32)


def test_cipher_round_trip_and_key_separation():
    cipher = SecretCipher("key-material-one-0123456789abcdef")
    ciphertext = cipher.encrypt("JBSWY3DPEHPK3PXP")
    assert ciphertext != "JBSWY3DPEHPK3PXP"
    assert cipher.decrypt(ciphertext) == "JBSWY3DPEHPK3PXP"
    assert cipher.encrypt(None) is None

    other = SecretCipher("key-material-two-0123456789abcdef")
    with pytest.raises(RuntimeError):
        other.decrypt(ciphertext)


def test_cipher_requires_key():
    with pytest.raises(RuntimeError):
        SecretCipher("")
