"""AES-256-GCM encryption for custodied Cashu tokens.

Encrypted format: ``iv:authTag:ciphertext``, all hex-encoded. Each call uses a
fresh 96-bit IV, so encrypting the same token twice yields different output
and the token table cannot be pattern-analysed.

Values that still start with ``cashu`` are tokens written before encryption
was introduced; ``decrypt`` hands them back unchanged until the startup
migration rewrites them.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from stashu_engine.common.exceptions import ConfigurationError, VaultError

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32
PLAINTEXT_PREFIX = "cashu"


class TokenVault:
    """Symmetric encryption of bearer tokens at rest."""

    def __init__(self, key: bytes):
        if not isinstance(key, bytes) or len(key) != KEY_LENGTH:
            raise ConfigurationError(
                f"Token encryption key must be exactly {KEY_LENGTH} bytes "
                f"({KEY_LENGTH * 2} hex characters)"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> "TokenVault":
        if not key_hex:
            raise ConfigurationError("Token encryption key is not set")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ConfigurationError("Token encryption key must be hex-encoded") from exc
        return cls(key)

    @staticmethod
    def generate_key_hex() -> str:
        return AESGCM.generate_key(bit_length=KEY_LENGTH * 8).hex()

    @staticmethod
    def is_plaintext(value: str) -> bool:
        return value.startswith(PLAINTEXT_PREFIX)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, value: str) -> str:
        if self.is_plaintext(value):
            return value

        parts = value.split(":")
        if len(parts) != 3:
            raise VaultError('Invalid encrypted token format. Expected "iv:authTag:ciphertext".')

        try:
            iv = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as exc:
            raise VaultError("Encrypted token is not valid hex") from exc

        if len(iv) != IV_LENGTH or len(tag) != AUTH_TAG_LENGTH:
            raise VaultError("Encrypted token has a malformed IV or auth tag")

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise VaultError("Token failed authentication (wrong key or corrupted data)") from exc
        return plaintext.decode("utf-8")
