"""
Credential vault for per-tenant provider credentials.

Envelope encryption with AES-256-GCM:
- each record gets a fresh 256-bit data key that seals the JSON bundle
- the data key is sealed by a versioned master key from settings
- both seals bind "tenant_id|provider" as associated data, so a row copied
  to another tenant or provider fails authentication

Rotation re-wraps data keys under the active master key; payloads are left
untouched.
"""
import json
import os
from typing import Dict, Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.errors import NotFoundError, ProviderAuthError, VaultError
from momo_gateway.database.connection import get_session_factory
from momo_gateway.database.models import ProviderCredential

logger = structlog.get_logger(__name__)

NONCE_SIZE = 12


class DecryptedCredentials:
    """Plaintext credential bundle for one (tenant, provider) pair."""

    def __init__(self, tenant_id: str, provider: str, fields: Dict[str, str]):
        self.tenant_id = tenant_id
        self.provider = provider
        self._fields = dict(fields)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._fields.get(name, default)

    def require(self, name: str) -> str:
        """
        Return a credential field that the provider call cannot do without.

        Raises:
            ProviderAuthError: If the field is missing or empty
        """
        value = self._fields.get(name)
        if not value:
            raise ProviderAuthError(
                f"Credential field '{name}' missing for {self.tenant_id}/{self.provider}"
            )
        return value

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._fields.get("webhook_secret")

    def field_names(self) -> list[str]:
        return sorted(self._fields)

    def __repr__(self) -> str:
        masked = ", ".join(f"{name}=***" for name in self.field_names())
        return f"<DecryptedCredentials({self.tenant_id}/{self.provider}: {masked})>"

    __str__ = __repr__


class CredentialVault:
    """Stores and retrieves envelope-encrypted provider credentials."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        master_keys: Optional[Dict[int, bytes]] = None,
        active_key_version: Optional[int] = None,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.master_keys = master_keys if master_keys is not None else settings.get_master_keys()
        self.active_key_version = (
            active_key_version
            if active_key_version is not None
            else settings.vault_active_key_version
        )

    @staticmethod
    def _aad(tenant_id: str, provider: str) -> bytes:
        return f"{tenant_id}|{provider.upper()}".encode()

    def _master_key(self, version: int) -> AESGCM:
        key = self.master_keys.get(version)
        if key is None:
            raise VaultError(f"Master key version {version} is not configured")
        return AESGCM(key)

    def _seal(self, tenant_id: str, provider: str, fields: Dict[str, str]) -> Dict[str, object]:
        aad = self._aad(tenant_id, provider)
        data_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(data_key).encrypt(
            nonce, json.dumps(fields, sort_keys=True).encode(), aad
        )
        data_key_nonce = os.urandom(NONCE_SIZE)
        wrapped = self._master_key(self.active_key_version).encrypt(data_key_nonce, data_key, aad)
        return {
            "ciphertext": ciphertext,
            "nonce": nonce,
            "wrapped_data_key": wrapped,
            "data_key_nonce": data_key_nonce,
            "key_version": self.active_key_version,
        }

    def _unwrap_data_key(self, record: ProviderCredential) -> bytes:
        aad = self._aad(record.tenant_id, record.provider)
        try:
            return self._master_key(record.key_version).decrypt(
                record.data_key_nonce, record.wrapped_data_key, aad
            )
        except InvalidTag:
            raise VaultError(
                f"Data key for {record.tenant_id}/{record.provider} failed authentication"
            )

    def _open(self, record: ProviderCredential) -> Dict[str, str]:
        data_key = self._unwrap_data_key(record)
        aad = self._aad(record.tenant_id, record.provider)
        try:
            plaintext = AESGCM(data_key).decrypt(record.nonce, record.ciphertext, aad)
        except InvalidTag:
            raise VaultError(
                f"Credentials for {record.tenant_id}/{record.provider} failed authentication"
            )
        return json.loads(plaintext)

    async def put_credentials(
        self, tenant_id: str, provider: str, credentials: Dict[str, str]
    ) -> None:
        """Encrypt and store credentials, replacing and reactivating any existing record."""
        provider = provider.upper()
        sealed = self._seal(tenant_id, provider, credentials)

        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderCredential).where(
                    ProviderCredential.tenant_id == tenant_id,
                    ProviderCredential.provider == provider,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = ProviderCredential(tenant_id=tenant_id, provider=provider, **sealed)
                session.add(record)
            else:
                for name, value in sealed.items():
                    setattr(record, name, value)
                record.is_active = True
            await session.commit()

        logger.info(
            "credentials_stored",
            tenant_id=tenant_id,
            provider=provider,
            key_version=self.active_key_version,
            fields=sorted(credentials),
        )

    async def get_credentials(self, tenant_id: str, provider: str) -> DecryptedCredentials:
        """
        Decrypt credentials for a (tenant, provider) pair.

        Raises:
            ProviderAuthError: If no active credentials exist
            VaultError: If decryption fails
        """
        provider = provider.upper()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderCredential).where(
                    ProviderCredential.tenant_id == tenant_id,
                    ProviderCredential.provider == provider,
                )
            )
            record = result.scalar_one_or_none()

        if record is None or not record.is_active:
            logger.warning("credentials_unavailable", tenant_id=tenant_id, provider=provider)
            raise ProviderAuthError(f"No active {provider} credentials for tenant {tenant_id}")

        return DecryptedCredentials(tenant_id, provider, self._open(record))

    async def rotate(self, tenant_id: Optional[str] = None) -> int:
        """
        Re-wrap data keys under the active master key.

        Args:
            tenant_id: Restrict rotation to one tenant

        Returns:
            int: Number of records re-wrapped
        """
        active = self._master_key(self.active_key_version)
        rotated = 0

        async with self.session_factory() as session:
            stmt = select(ProviderCredential).where(
                ProviderCredential.key_version != self.active_key_version
            )
            if tenant_id is not None:
                stmt = stmt.where(ProviderCredential.tenant_id == tenant_id)
            result = await session.execute(stmt)

            for record in result.scalars().all():
                data_key = self._unwrap_data_key(record)
                data_key_nonce = os.urandom(NONCE_SIZE)
                record.wrapped_data_key = active.encrypt(
                    data_key_nonce, data_key, self._aad(record.tenant_id, record.provider)
                )
                record.data_key_nonce = data_key_nonce
                record.key_version = self.active_key_version
                rotated += 1

            await session.commit()

        logger.info(
            "credentials_rotated",
            tenant_id=tenant_id,
            key_version=self.active_key_version,
            rotated=rotated,
        )
        return rotated

    async def deactivate(self, tenant_id: str, provider: str) -> None:
        """
        Disable credentials for a pair without deleting them.

        Raises:
            NotFoundError: If the pair has no credentials
        """
        provider = provider.upper()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderCredential).where(
                    ProviderCredential.tenant_id == tenant_id,
                    ProviderCredential.provider == provider,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"No {provider} credentials for tenant {tenant_id}")
            record.is_active = False
            await session.commit()

        logger.info("credentials_deactivated", tenant_id=tenant_id, provider=provider)
