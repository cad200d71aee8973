"""
Credential vault for Tesla OAuth tokens.

Tokens are stored encrypted with AES-256-GCM in ``encrypted_tesla_tokens``.
Older installations kept them as plaintext on the user's profile; those are
read as a fallback tier and migrated into encrypted storage on first load.
Encrypted storage is authoritative and is never copied back to plaintext.
"""

import base64
import binascii
import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.credential import TeslaCredential
from models.profile import Profile
from services.errors import ConfigurationError, EncryptionError, NotConnected
from utils.timeutil import as_utc

logger = logging.getLogger("vault")

ENCRYPTION_VERSION = 1
NONCE_SIZE = 12


class EncryptionService:
    """AES-256-GCM with a key derived from the server-held secret."""

    def __init__(self, secret: str | None = None):
        secret = secret if secret is not None else os.getenv("TOKEN_ENCRYPTION_KEY")
        if not secret:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY not configured")
        # Derive a 256-bit key from the secret using SHA-256
        key = hashlib.sha256(secret.encode("utf-8")).digest()
        self.aes_gcm = AESGCM(key)
        self.encryption_version = ENCRYPTION_VERSION

    def encrypt(self, plaintext: str) -> str:
        """Return base64(nonce || ciphertext || tag)."""
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self.aes_gcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            combined = base64.b64decode(ciphertext.encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Invalid base64 ciphertext: {e}") from e

        if len(combined) <= NONCE_SIZE:
            raise EncryptionError("Ciphertext too short")

        nonce, body = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
        try:
            return self.aes_gcm.decrypt(nonce, body, None).decode("utf-8")
        except InvalidTag as e:
            raise EncryptionError("Decryption failed: data may have been tampered with") from e


@dataclass
class TeslaTokens:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    source: str = "encrypted"


class EncryptedCredentialTier:
    """Authoritative tier: one encrypted row per user."""

    name = "encrypted"

    def __init__(self, session: AsyncSession, encryption: EncryptionService):
        self.session = session
        self.encryption = encryption

    async def _get(self, user_id: str) -> TeslaCredential | None:
        result = await self.session.execute(
            select(TeslaCredential).where(TeslaCredential.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def read(self, user_id: str) -> TeslaTokens | None:
        record = await self._get(user_id)
        if not record:
            return None
        refresh_token = None
        if record.encrypted_refresh_token:
            refresh_token = self.encryption.decrypt(record.encrypted_refresh_token)
        return TeslaTokens(
            access_token=self.encryption.decrypt(record.encrypted_access_token),
            refresh_token=refresh_token,
            expires_at=as_utc(record.token_expires_at),
            source=self.name,
        )

    async def write(self, user_id: str, tokens: TeslaTokens) -> None:
        encrypted_access = self.encryption.encrypt(tokens.access_token)
        encrypted_refresh = (
            self.encryption.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        )

        record = await self._get(user_id)
        if not record:
            record = TeslaCredential(user_id=user_id)
            self.session.add(record)

        record.encrypted_access_token = encrypted_access
        record.encrypted_refresh_token = encrypted_refresh
        record.token_expires_at = tokens.expires_at
        record.encryption_version = self.encryption.encryption_version
        await self.session.flush()


class LegacyProfileTier:
    """Read-only fallback tier: plaintext tokens on the profile row."""

    name = "legacy"

    def __init__(self, session: AsyncSession):
        self.session = session

    async def read(self, user_id: str) -> TeslaTokens | None:
        result = await self.session.execute(select(Profile).where(Profile.user_id == user_id))
        profile = result.scalar_one_or_none()
        if not profile or not profile.tesla_access_token:
            return None
        return TeslaTokens(
            access_token=profile.tesla_access_token,
            refresh_token=profile.tesla_refresh_token,
            expires_at=as_utc(profile.tesla_token_expires_at),
            source=self.name,
        )

    async def clear(self, user_id: str) -> None:
        result = await self.session.execute(select(Profile).where(Profile.user_id == user_id))
        profile = result.scalar_one_or_none()
        if profile:
            profile.tesla_access_token = None
            profile.tesla_refresh_token = None
            profile.tesla_token_expires_at = None

    async def user_ids(self) -> set[str]:
        result = await self.session.execute(
            select(Profile.user_id).where(Profile.tesla_access_token.is_not(None))
        )
        return set(result.scalars().all())


class CredentialRepository:
    """Single entry point for Tesla credentials across both tiers."""

    def __init__(self, session: AsyncSession, encryption: EncryptionService | None = None):
        self.session = session
        self._encryption = encryption
        self.legacy = LegacyProfileTier(session)

    @property
    def encryption(self) -> EncryptionService:
        if self._encryption is None:
            self._encryption = EncryptionService()
        return self._encryption

    @property
    def encrypted(self) -> EncryptedCredentialTier:
        return EncryptedCredentialTier(self.session, self.encryption)

    async def store(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Encrypt and persist the token pair, replacing any previous record."""
        tokens = TeslaTokens(access_token, refresh_token, expires_at)
        try:
            await self.encrypted.write(user_id, tokens)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info(f"Stored encrypted Tesla tokens for user {user_id}")

    async def load(self, user_id: str) -> TeslaTokens:
        """Return decrypted tokens, migrating a legacy plaintext record if found."""
        encrypted = self.encrypted
        try:
            tokens = await encrypted.read(user_id)
        except EncryptionError as e:
            logger.warning(f"Encrypted tokens for user {user_id} unreadable, trying legacy: {e}")
            tokens = None
        if tokens:
            return tokens

        legacy_tokens = await self.legacy.read(user_id)
        if not legacy_tokens:
            raise NotConnected(user_id)

        try:
            await encrypted.write(user_id, legacy_tokens)
            await self.session.commit()
            logger.info(f"Migrated plaintext Tesla tokens to encrypted storage for user {user_id}")
        except ConfigurationError:
            raise
        except Exception as e:
            await self.session.rollback()
            logger.warning(f"Token migration skipped for user {user_id}: {e}")
        return legacy_tokens

    async def delete(self, user_id: str) -> None:
        """Remove credentials from both tiers."""
        await self.session.execute(
            delete(TeslaCredential).where(TeslaCredential.user_id == user_id)
        )
        await self.legacy.clear(user_id)
        await self.session.commit()
        logger.info(f"Deleted Tesla credentials for user {user_id}")

    async def list_connected_user_ids(self) -> list[str]:
        """Users holding a credential in either tier."""
        encrypted_ids = await self.session.execute(select(TeslaCredential.user_id))
        ids = set(encrypted_ids.scalars().all()) | await self.legacy.user_ids()
        return sorted(ids)
