"""
Encryption helpers for stored page access tokens.
Uses Fernet symmetric encryption; tokens live in BYTEA columns.
"""

from cryptography.fernet import Fernet, InvalidToken

from crm_sync.config import settings
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Raised when a token cannot be encrypted or decrypted."""


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from settings.

    Raises:
        EncryptionError: If encryption key is not configured or invalid
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except ValueError as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a page access token for database storage.

    Raises:
        EncryptionError: If the token is empty
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    encrypted = _get_fernet().encrypt(token.encode("utf-8"))
    logger.debug("Token encrypted", token_length=len(token))
    return encrypted


def decrypt_token(encrypted_token: bytes | memoryview) -> str:
    """
    Decrypt a page access token read from the database.

    psycopg returns BYTEA as bytes; memoryview is accepted too.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()
    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def generate_new_key() -> str:
    """Generate a new Fernet key (initial setup or key rotation)."""
    return Fernet.generate_key().decode("utf-8")
