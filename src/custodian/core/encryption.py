"""Envelope encryption for resource-level cryptographic erase.

Each governed resource's personal data can be encrypted under its own
AES-256-GCM data key. Data keys are stored wrapped by a master key; the
cryptographic erase strategy destroys the wrapped key, after which every
copy of the ciphertext (including backups) is unreadable.

Usage:
    from custodian.core.encryption import KeyRing, key_from_string

    ring = KeyRing(key_from_string(settings.data_key_master_key.get_secret_value()))
    encryptor = await ring.issue_key(session, "users", "user-42")
    token = encryptor.encrypt_string("jane@example.com")

    await ring.destroy(session, "users", "user-42")
"""

import base64
import secrets
from datetime import UTC, datetime

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from custodian.db.models.data_key import DataEncryptionKey
from custodian.utils.exceptions import CustodianError


class EncryptionError(CustodianError):
    """Raised when encryption or decryption fails."""

    pass


class EncryptionKeyError(EncryptionError):
    """Raised when an encryption key is missing or invalid."""

    pass


class DecryptionError(EncryptionError):
    """Raised when decryption fails (wrong key, corrupted data, etc.)."""

    pass


class KeyDestroyedError(EncryptionKeyError):
    """Raised when the data key of a resource has been cryptographically erased."""

    pass


# Constants
NONCE_SIZE = 12  # 96 bits recommended for AES-GCM
KEY_SIZE = 32  # 256 bits for AES-256


class Encryptor:
    """AES-256-GCM encryptor.

    Output format: nonce (12 bytes) || ciphertext || tag (16 bytes).
    """

    def __init__(self, key: bytes):
        """Initialize encryptor with a key.

        Raises:
            EncryptionKeyError: If key is not 32 bytes
        """
        if len(key) != KEY_SIZE:
            raise EncryptionKeyError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        """Encrypt data, authenticating the optional associated data."""
        try:
            nonce = secrets.token_bytes(NONCE_SIZE)
            return nonce + self._aesgcm.encrypt(nonce, plaintext, associated_data)
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

    def decrypt(self, ciphertext: bytes, associated_data: bytes | None = None) -> bytes:
        """Decrypt data produced by encrypt().

        Raises:
            DecryptionError: If decryption fails (wrong key, tampered data, etc.)
        """
        if len(ciphertext) < NONCE_SIZE + 16:
            raise DecryptionError("Ciphertext too short")
        try:
            return self._aesgcm.decrypt(
                ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:], associated_data
            )
        except Exception as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    def encrypt_string(self, plaintext: str, associated_data: bytes | None = None) -> str:
        """Encrypt a string and return a base64-encoded result."""
        encrypted = self.encrypt(plaintext.encode("utf-8"), associated_data)
        return base64.b64encode(encrypted).decode("ascii")

    def decrypt_string(self, ciphertext: str, associated_data: bytes | None = None) -> str:
        """Decrypt a base64-encoded string."""
        return self.decrypt(base64.b64decode(ciphertext), associated_data).decode("utf-8")


def generate_key() -> bytes:
    """Generate a new random 256-bit key."""
    return secrets.token_bytes(KEY_SIZE)


def key_to_string(key: bytes) -> str:
    """Convert key to base64 string for configuration."""
    return base64.b64encode(key).decode("ascii")


def key_from_string(key_string: str) -> bytes:
    """Convert base64 string back to key bytes.

    Raises:
        EncryptionKeyError: If key string is invalid
    """
    try:
        key = base64.b64decode(key_string, validate=True)
    except ValueError as e:
        raise EncryptionKeyError(f"Invalid key string: {e}") from e
    if len(key) != KEY_SIZE:
        raise EncryptionKeyError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


# =============================================================================
# Key Ring
# =============================================================================


def _resource_aad(resource_table: str, resource_id: str) -> bytes:
    return f"{resource_table}:{resource_id}".encode("utf-8")


class KeyRing:
    """Per-resource data keys wrapped by a master key.

    The wrapped key is bound to its resource through associated data, so a
    key row copied onto another resource fails to unwrap.
    """

    def __init__(self, master_key: bytes):
        self._master = Encryptor(master_key)

    async def _get(
        self, session: AsyncSession, resource_table: str, resource_id: str
    ) -> DataEncryptionKey | None:
        stmt = select(DataEncryptionKey).where(
            DataEncryptionKey.resource_table == resource_table,
            DataEncryptionKey.resource_id == resource_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def issue_key(
        self, session: AsyncSession, resource_table: str, resource_id: str
    ) -> Encryptor:
        """Create (or return the existing) data key for a resource.

        Raises:
            KeyDestroyedError: If the resource's key was already destroyed
        """
        row = await self._get(session, resource_table, resource_id)
        if row is not None:
            return self._unwrap(row)

        key = generate_key()
        session.add(
            DataEncryptionKey(
                resource_table=resource_table,
                resource_id=resource_id,
                wrapped_key=self._master.encrypt(key, _resource_aad(resource_table, resource_id)),
            )
        )
        await session.flush()
        return Encryptor(key)

    async def encryptor_for(
        self, session: AsyncSession, resource_table: str, resource_id: str
    ) -> Encryptor:
        """Encryptor for a resource's data key.

        Raises:
            EncryptionKeyError: If the resource has no key
            KeyDestroyedError: If the key was destroyed
        """
        row = await self._get(session, resource_table, resource_id)
        if row is None:
            raise EncryptionKeyError(f"No data key for {resource_table}/{resource_id}")
        return self._unwrap(row)

    async def destroy(
        self,
        session: AsyncSession,
        resource_table: str,
        resource_id: str,
        at: datetime | None = None,
    ) -> bool:
        """Destroy a resource's data key.

        Returns:
            True if a live key was destroyed, False if none existed or it
            was already destroyed.
        """
        row = await self._get(session, resource_table, resource_id)
        if row is None or row.wrapped_key is None:
            return False
        row.wrapped_key = None
        row.destroyed_at = at or datetime.now(UTC)
        await session.flush()
        return True

    def _unwrap(self, row: DataEncryptionKey) -> Encryptor:
        if row.wrapped_key is None:
            raise KeyDestroyedError(
                f"Data key for {row.resource_table}/{row.resource_id} was destroyed"
            )
        key = self._master.decrypt(
            row.wrapped_key, _resource_aad(row.resource_table, row.resource_id)
        )
        return Encryptor(key)
