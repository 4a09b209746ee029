"""
Unit tests for the connected-account directory (SQLite + FakeGateway).
"""

import pytest

from spm_payments.core.exceptions import NotFoundError, TipValidationError
from spm_payments.integrations.stripe import ConnectedAccountResult
from spm_payments.models import ConnectAccountStatus
from spm_payments.services.connectedAccountDirectory import derive_account_status

pytestmark = pytest.mark.asyncio


class TestDeriveAccountStatus:

    async def test_statuses(self):
        assert derive_account_status(False, False, False, False) is ConnectAccountStatus.NOT_CREATED
        assert derive_account_status(True, False, False, False) is ConnectAccountStatus.PENDING
        assert derive_account_status(True, True, False, False) is ConnectAccountStatus.RESTRICTED
        assert derive_account_status(True, True, True, True) is ConnectAccountStatus.ACTIVE


class TestUpsert:

    async def test_get_unknown_performer_returns_none(self, directory):
        assert await directory.get("performer_x") is None

    async def test_upsert_creates_record(self, directory):
        record = await directory.upsert("performer_1", connect_account_id="acct_1")

        assert record.connect_account_id == "acct_1"
        assert record.account_status == ConnectAccountStatus.PENDING.value
        assert (await directory.get("performer_1")).id == record.id
        assert (await directory.get_by_account_id("acct_1")).id == record.id

    async def test_upsert_without_account_is_not_created(self, directory):
        record = await directory.upsert("performer_1", email="a@b.c")
        assert record.account_status == ConnectAccountStatus.NOT_CREATED.value

    async def test_account_id_is_never_cleared_or_replaced(self, directory):
        await directory.upsert("performer_1", connect_account_id="acct_1")

        await directory.upsert("performer_1", connect_account_id=None, charges_enabled=True)
        record = await directory.upsert("performer_1", connect_account_id="acct_2")

        assert record.connect_account_id == "acct_1"
        assert record.charges_enabled is True

    async def test_flags_drive_status(self, directory):
        await directory.upsert("performer_1", connect_account_id="acct_1")
        record = await directory.upsert(
            "performer_1",
            details_submitted=True,
            charges_enabled=True,
            payouts_enabled=True,
        )
        assert record.account_status == ConnectAccountStatus.ACTIVE.value


class TestSync:

    async def test_sync_from_account_updates_flags(self, directory):
        await directory.upsert("performer_1", connect_account_id="acct_1")

        record = await directory.sync_from_account(
            ConnectedAccountResult(
                account_id="acct_1",
                details_submitted=True,
                charges_enabled=False,
                payouts_enabled=False,
            )
        )

        assert record.details_submitted is True
        assert record.account_status == ConnectAccountStatus.RESTRICTED.value

    async def test_sync_unknown_account_returns_none(self, directory):
        result = await directory.sync_from_account(
            ConnectedAccountResult("acct_nobody", True, True, True)
        )
        assert result is None

    async def test_refresh_pulls_from_gateway(self, directory, fake_gateway):
        await directory.upsert("performer_1", connect_account_id="acct_1")
        fake_gateway.set_account(ConnectedAccountResult("acct_1", True, True, True))

        record = await directory.refresh("performer_1")

        assert record.account_status == ConnectAccountStatus.ACTIVE.value
        assert len(fake_gateway.calls_to("get_connected_account")) == 1

    async def test_refresh_keeps_stale_record_on_gateway_error(self, directory, fake_gateway):
        await directory.upsert("performer_1", connect_account_id="acct_1")
        fake_gateway.fail_next()

        record = await directory.refresh("performer_1")

        assert record.connect_account_id == "acct_1"
        assert record.account_status == ConnectAccountStatus.PENDING.value

    async def test_refresh_without_account_skips_gateway(self, directory, fake_gateway):
        await directory.upsert("performer_1", email="a@b.c")
        await directory.refresh("performer_1")
        assert fake_gateway.calls_to("get_connected_account") == []


class TestOnboarding:

    async def test_onboard_creates_account_and_link(self, directory, fake_gateway):
        result = await directory.onboard("performer_1", "busker@example.com", "es")

        assert result.account.connect_account_id.startswith("acct_fake_")
        assert result.account.country == "ES"
        assert result.onboarding_url.endswith(result.account.connect_account_id)
        assert len(fake_gateway.calls_to("create_connected_account")) == 1

    async def test_onboard_twice_is_rejected(self, directory):
        await directory.onboard("performer_1", "busker@example.com", "ES")
        with pytest.raises(TipValidationError):
            await directory.onboard("performer_1", "busker@example.com", "ES")

    async def test_create_link_for_existing_account(self, directory):
        await directory.upsert("performer_1", connect_account_id="acct_1")
        url = await directory.create_link("performer_1", "account_update")
        assert url == "https://connect.fake/account_update/acct_1"

    async def test_create_link_without_account_raises(self, directory):
        with pytest.raises(NotFoundError):
            await directory.create_link("performer_1")
