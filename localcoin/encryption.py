"""Encrypt custodial mnemonics at rest.

Layout of a ciphertext, hex encoded: ``salt(64) | iv(16) | tag(16) | body``.
The AES-256-GCM key is derived per ciphertext from ``ENCRYPTION_SECRET`` with
PBKDF2-HMAC-SHA512 over the random salt.
"""
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ConfigurationError, SeedRetrievalError


IV_LENGTH = 16
SALT_LENGTH = 64
KEY_LENGTH = 32
TAG_LENGTH = 16
ITERATIONS = 100_000


class SeedCipher:
    def __init__(self, secret: str) -> None:
        self._secret = secret

    def _derive_key(self, salt: bytes) -> bytes:
        if not self._secret:
            raise ConfigurationError("ENCRYPTION_SECRET environment variable is not set.")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=ITERATIONS,
        )
        return kdf.derive(self._secret.encode("utf-8"))

    def encrypt(self, text: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt)
        sealed = AESGCM(key).encrypt(iv, text.encode("utf-8"), None)
        body, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return (salt + iv + tag + body).hex()

    def decrypt(self, encrypted_text: str) -> str:
        try:
            data = bytes.fromhex(encrypted_text)
        except (TypeError, ValueError) as exc:
            raise SeedRetrievalError() from exc
        if len(data) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
            raise SeedRetrievalError()

        salt = data[:SALT_LENGTH]
        iv = data[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = data[SALT_LENGTH + IV_LENGTH : SALT_LENGTH + IV_LENGTH + TAG_LENGTH]
        body = data[SALT_LENGTH + IV_LENGTH + TAG_LENGTH :]

        key = self._derive_key(salt)
        try:
            plain = AESGCM(key).decrypt(iv, body + tag, None)
            return plain.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as exc:
            raise SeedRetrievalError() from exc
