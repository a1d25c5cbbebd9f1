"""
Token encryption for the OAuth Integration Hub.

Provides authenticated encryption of OAuth tokens at rest using AES-256-GCM
with per-user keys derived from a server-held master secret via PBKDF2.
"""

import base64
import hashlib
import os
from collections import OrderedDict
from typing import Optional, Tuple

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from services.oauth_hub.exceptions import EncryptionError

logger = structlog.get_logger(__name__)

# Constants
KEY_LENGTH = 32  # 256 bits for AES-256
SALT_LENGTH = 16  # 128 bits
NONCE_LENGTH = 12  # 96 bits for GCM
TAG_LENGTH = 16  # 128 bits for GCM authentication tag
PBKDF2_ITERATIONS = 100000  # OWASP recommended minimum
KEY_VERSION = 1
MIN_PAYLOAD_LENGTH = 1 + NONCE_LENGTH + TAG_LENGTH
KEY_CACHE_SIZE = 1024


class TokenEncryption:
    """
    Token encryption service using AES-256-GCM with user-specific keys.

    Payload layout: version(1) + nonce(12) + ciphertext+tag, base64 encoded.
    Decryption of a tampered payload raises EncryptionError; plaintext is
    never returned on failure.
    """

    def __init__(
        self,
        master_key: str,
        service_salt: Optional[str] = None,
        key_cache_size: int = KEY_CACHE_SIZE,
    ):
        if not master_key:
            raise EncryptionError("Token encryption key is not configured")
        self._master_key = master_key.encode("utf-8")
        self._service_salt = self._load_service_salt(service_salt)
        self._key_cache: "OrderedDict[Tuple[str, int], bytes]" = OrderedDict()
        self._key_cache_size = max(1, key_cache_size)
        logger.info("token_encryption_initialized", key_version=KEY_VERSION)

    def _load_service_salt(self, salt_b64: Optional[str]) -> bytes:
        if not salt_b64:
            logger.warning("token_encryption_salt_missing", fallback="derived")
            return hashlib.sha256(b"crewflow-oauth-hub:" + self._master_key).digest()[
                :SALT_LENGTH
            ]
        try:
            salt_bytes = base64.b64decode(salt_b64, validate=True)
        except ValueError as e:
            logger.error("token_encryption_salt_invalid", error=str(e))
            raise EncryptionError("Token encryption salt is not valid base64") from e
        if len(salt_bytes) < SALT_LENGTH:
            logger.error("token_encryption_salt_too_short", salt_length=len(salt_bytes))
            raise EncryptionError("Token encryption salt must be at least 16 bytes")
        return salt_bytes

    def derive_user_key(self, user_id: str, version: int = KEY_VERSION) -> bytes:
        """
        Derive a user-specific encryption key using PBKDF2.

        Args:
            user_id: User identifier for key derivation
            version: Key version for rotation support

        Returns:
            32-byte encryption key
        """
        cache_key = (user_id, version)
        key = self._key_cache.get(cache_key)
        if key is not None:
            self._key_cache.move_to_end(cache_key)
            return key

        user_salt = hashlib.sha256(
            self._service_salt + f"{user_id}:{version}".encode("utf-8")
        ).digest()[:SALT_LENGTH]
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=user_salt,
            iterations=PBKDF2_ITERATIONS,
        )
        key = kdf.derive(self._master_key)
        self._key_cache[cache_key] = key
        if len(self._key_cache) > self._key_cache_size:
            self._key_cache.popitem(last=False)
        return key

    def encrypt_token(
        self, token: str, user_id: str, additional_data: Optional[str] = None
    ) -> str:
        """
        Encrypt a token using the user-specific key.

        Args:
            token: Token string to encrypt
            user_id: User ID for key derivation
            additional_data: Optional associated data bound to the ciphertext

        Returns:
            Base64-encoded encrypted token with embedded metadata

        Raises:
            EncryptionError: If encryption fails
        """
        if not token:
            raise EncryptionError("Token cannot be empty", {"user_id": user_id})
        try:
            key = self.derive_user_key(user_id)
            nonce = os.urandom(NONCE_LENGTH)
            aad = additional_data.encode("utf-8") if additional_data else None
            ciphertext = AESGCM(key).encrypt(nonce, token.encode("utf-8"), aad)
            return base64.b64encode(bytes([KEY_VERSION]) + nonce + ciphertext).decode(
                "utf-8"
            )
        except Exception as e:
            logger.error("token_encryption_failed", user_id=user_id, error=str(e))
            raise EncryptionError(
                "Failed to encrypt token", {"user_id": user_id}
            ) from e

    def decrypt_token(
        self, encrypted_token: str, user_id: str, additional_data: Optional[str] = None
    ) -> str:
        """
        Decrypt a token produced by ``encrypt_token``.

        Raises:
            EncryptionError: If the payload is malformed, tampered with, or
                was encrypted for a different user or associated data
        """
        if not encrypted_token:
            raise EncryptionError("Encrypted token cannot be empty", {"user_id": user_id})
        try:
            encrypted_data = base64.b64decode(encrypted_token, validate=True)
        except ValueError as e:
            raise EncryptionError(
                "Encrypted token is not valid base64", {"user_id": user_id}
            ) from e

        if len(encrypted_data) < MIN_PAYLOAD_LENGTH:
            raise EncryptionError("Encrypted token is too short", {"user_id": user_id})

        version = encrypted_data[0]
        nonce = encrypted_data[1 : 1 + NONCE_LENGTH]
        ciphertext = encrypted_data[1 + NONCE_LENGTH :]
        aad = additional_data.encode("utf-8") if additional_data else None

        try:
            plaintext = AESGCM(self.derive_user_key(user_id, version)).decrypt(
                nonce, ciphertext, aad
            )
        except InvalidTag as e:
            logger.error(
                "token_decryption_failed",
                user_id=user_id,
                reason="authentication_tag_mismatch",
            )
            raise EncryptionError(
                "Encrypted token failed integrity check", {"user_id": user_id}
            ) from e
        return plaintext.decode("utf-8")

    def is_encrypted(self, token: str) -> bool:
        """Check if a token string looks like an encrypted payload."""
        try:
            data = base64.b64decode(token, validate=True)
        except ValueError:
            return False
        return len(data) >= MIN_PAYLOAD_LENGTH and data[0] == KEY_VERSION
