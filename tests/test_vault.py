"""
Tests for the envelope-encrypted credential vault.
"""

import pytest
from sqlalchemy import select, update

from momo_gateway.core.errors import NotFoundError, ProviderAuthError, VaultError
from momo_gateway.core.vault import CredentialVault
from momo_gateway.database.models import ProviderCredential

from .conftest import MTN_CREDENTIALS, OTHER_TENANT, TENANT

KEY_V1 = b"\x01" * 32
KEY_V2 = b"\x02" * 32


@pytest.fixture
def vault(session_factory, test_settings) -> CredentialVault:
    return CredentialVault(session_factory, test_settings, master_keys={1: KEY_V1}, active_key_version=1)


class TestCredentialVault:
    """Test suite for CredentialVault."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_round_trip(self, vault: CredentialVault) -> None:
        await vault.put_credentials(TENANT, "mtn", MTN_CREDENTIALS)

        credentials = await vault.get_credentials(TENANT, "MTN")

        assert credentials.provider == "MTN"
        assert credentials.require("api_user") == "mtn-api-user"
        assert credentials.webhook_secret == MTN_CREDENTIALS["webhook_secret"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stored_row_has_no_plaintext(self, vault: CredentialVault, session_factory) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)

        async with session_factory() as session:
            record = (await session.execute(select(ProviderCredential))).scalar_one()

        assert b"mtn-api-key" not in record.ciphertext
        assert KEY_V1 not in record.wrapped_data_key
        assert record.key_version == 1
        assert len(record.nonce) == 12

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repr_masks_values(self, vault: CredentialVault) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        credentials = await vault.get_credentials(TENANT, "MTN")

        text = repr(credentials)
        assert "mtn-api-key" not in text
        assert "api_key=***" in text
        assert str(credentials) == text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials(self, vault: CredentialVault) -> None:
        with pytest.raises(ProviderAuthError):
            await vault.get_credentials(TENANT, "AIRTEL")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_require_missing_field(self, vault: CredentialVault) -> None:
        await vault.put_credentials(TENANT, "MTN", {"api_user": "u"})
        credentials = await vault.get_credentials(TENANT, "MTN")

        with pytest.raises(ProviderAuthError, match="subscription_key"):
            credentials.require("subscription_key")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_put_replaces_existing(self, vault: CredentialVault) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        await vault.put_credentials(TENANT, "MTN", {**MTN_CREDENTIALS, "api_key": "rotated"})

        credentials = await vault.get_credentials(TENANT, "MTN")
        assert credentials.require("api_key") == "rotated"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_row_moved_to_other_tenant_fails_authentication(
        self, vault: CredentialVault, session_factory
    ) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        async with session_factory() as session:
            await session.execute(
                update(ProviderCredential).values(tenant_id=OTHER_TENANT)
            )
            await session.commit()

        with pytest.raises(VaultError):
            await vault.get_credentials(OTHER_TENANT, "MTN")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_master_key(self, vault: CredentialVault, session_factory, test_settings) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        other = CredentialVault(session_factory, test_settings, master_keys={1: KEY_V2}, active_key_version=1)

        with pytest.raises(VaultError):
            await other.get_credentials(TENANT, "MTN")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_key_version(self, vault: CredentialVault, session_factory, test_settings) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        other = CredentialVault(session_factory, test_settings, master_keys={2: KEY_V2}, active_key_version=2)

        with pytest.raises(VaultError, match="version 1"):
            await other.get_credentials(TENANT, "MTN")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rotate_rewraps_under_active_key(
        self, vault: CredentialVault, session_factory, test_settings
    ) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        await vault.put_credentials(OTHER_TENANT, "MTN", MTN_CREDENTIALS)
        async with session_factory() as session:
            before = (
                await session.execute(
                    select(ProviderCredential).where(ProviderCredential.tenant_id == TENANT)
                )
            ).scalar_one()

        rotated_vault = CredentialVault(
            session_factory,
            test_settings,
            master_keys={1: KEY_V1, 2: KEY_V2},
            active_key_version=2,
        )
        assert await rotated_vault.rotate(tenant_id=TENANT) == 1
        assert await rotated_vault.rotate() == 1
        assert await rotated_vault.rotate() == 0

        async with session_factory() as session:
            after = (
                await session.execute(
                    select(ProviderCredential).where(ProviderCredential.tenant_id == TENANT)
                )
            ).scalar_one()
        assert after.key_version == 2
        assert after.ciphertext == before.ciphertext
        assert after.wrapped_data_key != before.wrapped_data_key

        # Old key can be retired once everything is re-wrapped
        v2_only = CredentialVault(session_factory, test_settings, master_keys={2: KEY_V2}, active_key_version=2)
        credentials = await v2_only.get_credentials(TENANT, "MTN")
        assert credentials.require("api_key") == "mtn-api-key"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deactivate(self, vault: CredentialVault) -> None:
        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        await vault.deactivate(TENANT, "MTN")

        with pytest.raises(ProviderAuthError):
            await vault.get_credentials(TENANT, "MTN")

        await vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
        assert (await vault.get_credentials(TENANT, "MTN")).get("api_user") == "mtn-api-user"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, vault: CredentialVault) -> None:
        with pytest.raises(NotFoundError):
            await vault.deactivate(TENANT, "MTN")

    @pytest.mark.unit
    def test_master_keys_from_settings(self, test_settings) -> None:
        keys = test_settings.get_master_keys()
        assert keys == {1: KEY_V1}
