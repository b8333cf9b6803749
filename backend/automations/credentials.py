"""
Encryption for third-party credentials stored on `Credential` rows.

Fernet (AES-CBC + HMAC, authenticated) with a key derived from
``settings.CREDENTIAL_ENCRYPTION_KEY`` through PBKDF2. Plaintext never leaves
this module except through `decrypt`/`decrypt_dict`; API responses use `mask`.
"""
from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from django.conf import settings

MIN_KEY_LENGTH = 32
KDF_SALT = b"flowcrm.automations.credentials"
KDF_ITERATIONS = 100_000

SENSITIVE_KEYS = {"api_key", "apikey", "token", "access_token", "refresh_token", "secret", "password", "client_secret"}


class EncryptionError(Exception):
    pass


class InvalidKeyError(EncryptionError):
    pass


class DecryptionError(EncryptionError):
    pass


class CredentialCipher:
    def __init__(self, key_source: Optional[str] = None):
        key_source = key_source if key_source is not None else getattr(settings, "CREDENTIAL_ENCRYPTION_KEY", "")
        if not key_source:
            raise InvalidKeyError("CREDENTIAL_ENCRYPTION_KEY is not configured")
        if len(key_source) < MIN_KEY_LENGTH:
            raise InvalidKeyError(
                f"Encryption key must be at least {MIN_KEY_LENGTH} characters long, got {len(key_source)}"
            )
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=KDF_SALT, iterations=KDF_ITERATIONS)
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(key_source.encode("utf-8"))))

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise EncryptionError(f"plaintext must be str, got {type(plaintext).__name__}")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            raise DecryptionError("ciphertext must be a non-empty string")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise DecryptionError("Invalid encrypted data or wrong encryption key") from e

    def encrypt_dict(self, data: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data, sort_keys=True))

    def decrypt_dict(self, ciphertext: str) -> Dict[str, Any]:
        try:
            data = json.loads(self.decrypt(ciphertext))
        except ValueError as e:
            raise DecryptionError("Decrypted credential is not a JSON object") from e
        if not isinstance(data, dict):
            raise DecryptionError("Decrypted credential is not a JSON object")
        return data


@lru_cache(maxsize=4)
def _cipher_for(key_source: str) -> CredentialCipher:
    # key derivation is slow on purpose; derive once per key
    return CredentialCipher(key_source)


def get_cipher() -> CredentialCipher:
    return _cipher_for(getattr(settings, "CREDENTIAL_ENCRYPTION_KEY", "") or "")


def encrypt(plaintext: str) -> str:
    return get_cipher().encrypt(plaintext)


def decrypt(ciphertext: str) -> str:
    return get_cipher().decrypt(ciphertext)


def encrypt_dict(data: Dict[str, Any]) -> str:
    return get_cipher().encrypt_dict(data)


def decrypt_dict(ciphertext: str) -> Dict[str, Any]:
    return get_cipher().decrypt_dict(ciphertext)


def mask(value: Any) -> str:
    """`sk_live_abcdef123456` -> `sk_l****3456`; short values are fully hidden."""
    if value is None:
        return ""
    text = str(value)
    if len(text) <= 8:
        return "****"
    return f"{text[:4]}****{text[-4:]}"


def mask_sensitive(data: Dict[str, Any], keys: Iterable[str] = SENSITIVE_KEYS) -> Dict[str, Any]:
    keys = {k.lower() for k in keys}
    out = {}
    for k, v in (data or {}).items():
        if isinstance(v, dict):
            out[k] = mask_sensitive(v, keys)
        elif k.lower() in keys:
            out[k] = mask(v)
        else:
            out[k] = v
    return out
