# crypto.py — Secret handling for registry passwords, agent tokens and TOTP seeds
# - AES-256-GCM with key = SHA-256(ENCRYPTION_SECRET), random 12-byte nonce,
#   output base64(nonce || ciphertext || tag)
# - Password-based bundles: PBKDF2-HMAC-SHA256 (100k rounds, 32-byte salt)

import os
import base64
import binascii
import hashlib
from typing import Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

NONCE_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 32
PBKDF2_ITERATIONS = 100_000


class CryptoError(Exception):
    """Decryption failed: wrong key, truncated input or tampered bytes."""


class Crypto:
    """Symmetric encryption for values stored in the database."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("encryption secret is required")
        key = hashlib.sha256(secret.encode("utf-8")).digest()
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError):
            raise CryptoError("ciphertext is not valid base64")
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("ciphertext too short")
        try:
            plain = self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag:
            raise CryptoError("message authentication failed")
        return plain.decode("utf-8")


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_with_password(data: bytes, password: str) -> Dict[str, str]:
    """Seal an export bundle. Returns {salt, iv, data}, all base64."""
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(_derive_key(password, salt)).encrypt(nonce, data, None)
    return {
        "salt": base64.b64encode(salt).decode("ascii"),
        "iv": base64.b64encode(nonce).decode("ascii"),
        "data": base64.b64encode(sealed).decode("ascii"),
    }


def decrypt_with_password(bundle: Dict[str, str], password: str) -> bytes:
    try:
        salt = base64.b64decode(bundle["salt"], validate=True)
        nonce = base64.b64decode(bundle["iv"], validate=True)
        sealed = base64.b64decode(bundle["data"], validate=True)
    except (KeyError, TypeError, binascii.Error, ValueError):
        raise CryptoError("malformed bundle")
    try:
        return AESGCM(_derive_key(password, salt)).decrypt(nonce, sealed, None)
    except InvalidTag:
        raise CryptoError("wrong password or corrupted bundle")


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
