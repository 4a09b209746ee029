"""
E2E: tip payment flow through the HTTP API.

Covers:
- Tipping configuration and geolocation-based payment methods
- Starting a tip, authenticated and anonymous
- Amount rejection and processor failures
- Stripe webhook signature checks and reconciliation
- Transaction visibility, performer earnings and public summaries
- Stripe Connect onboarding for performers

Stripe is replaced by the ``FakeGateway``; webhooks are signed with the
same scheme Stripe uses.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from spm_payments.integrations.stripe import ConnectedAccountResult
from spm_payments.services.transactionLedger import TransactionLedger
from tests.conftest import PERFORMANCE_ID, PERFORMER_ID, TIPPER_ID

pytestmark = pytest.mark.asyncio

TIP_URL = "/api/v1/payments/tip"
WEBHOOK_URL = "/api/v1/payments/webhooks/stripe"


def _tip_body(amount: str = "5.00", **overrides) -> dict:
    body = {
        "amount": amount,
        "performance_id": PERFORMANCE_ID,
        "performer_id": PERFORMER_ID,
    }
    body.update(overrides)
    return body


async def _post_webhook(client: AsyncClient, signed_event, event_type: str, data_object: dict):
    payload, header = signed_event(event_type, data_object)
    return await client.post(
        WEBHOOK_URL,
        content=payload,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


class TestHealthAndConfig:

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_config_defaults(self, client: AsyncClient):
        resp = await client.get("/api/v1/payments/config")
        assert resp.status_code == 200
        body = resp.json()
        assert body["currency"] == "EUR"
        assert body["payment_methods"] == ["card"]
        assert body["configured"] is True
        assert Decimal(body["min_amount"]) == Decimal("0.50")
        assert Decimal(body["max_amount"]) == Decimal("100.00")

    async def test_config_uses_country_header(self, client: AsyncClient):
        resp = await client.get("/api/v1/payments/config", headers={"CF-IPCountry": "NL"})
        assert resp.json()["payment_methods"] == ["card", "ideal"]


class TestCreateTip:

    async def test_authenticated_tip(self, client: AsyncClient, tipper_headers):
        resp = await client.post(TIP_URL, json=_tip_body(), headers=tipper_headers)

        assert resp.status_code == 201
        body = resp.json()
        assert body["amount_cents"] == 500
        assert body["processing_fee_cents"] == 45
        assert body["net_amount_cents"] == 455
        assert body["currency"] == "EUR"
        assert body["client_secret"]

        detail = await client.get(
            f"/api/v1/payments/transactions/{body['transaction_id']}", headers=tipper_headers
        )
        assert detail.status_code == 200
        assert detail.json()["status"] == "pending"
        assert detail.json()["payment_method"] == "card"
        assert detail.json()["from_user_id"] == TIPPER_ID

    async def test_anonymous_tip_without_token(self, client: AsyncClient, performer_headers):
        resp = await client.post(TIP_URL, json=_tip_body())
        assert resp.status_code == 201

        detail = await client.get(
            f"/api/v1/payments/transactions/{resp.json()['transaction_id']}",
            headers=performer_headers,
        )
        assert detail.json()["from_user_id"] is None

    async def test_bad_token_falls_back_to_anonymous(self, client: AsyncClient):
        resp = await client.post(
            TIP_URL, json=_tip_body(), headers={"Authorization": "Bearer garbage"}
        )
        assert resp.status_code == 201

    async def test_amount_below_minimum(self, client: AsyncClient, fake_gateway):
        resp = await client.post(TIP_URL, json=_tip_body("0.25"))

        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["field"] == "amount"
        assert "0.50" in detail["message"]
        assert fake_gateway.calls == []

    async def test_non_positive_amount_fails_schema(self, client: AsyncClient):
        resp = await client.post(TIP_URL, json=_tip_body("0"))
        assert resp.status_code == 422

    async def test_processor_failure_is_generic(self, client: AsyncClient, fake_gateway):
        fake_gateway.fail_next("card_declined: raw processor detail")

        resp = await client.post(TIP_URL, json=_tip_body())

        assert resp.status_code == 502
        assert "raw processor detail" not in resp.text

    async def test_ledger_failure_after_intent_is_generic(self, client: AsyncClient, fake_gateway):
        db_error = OperationalError("INSERT INTO transactions", {}, Exception("database is down"))

        with patch.object(TransactionLedger, "create", new_callable=AsyncMock, side_effect=db_error):
            resp = await client.post(TIP_URL, json=_tip_body())

        assert resp.status_code == 502
        assert resp.json()["detail"] == "Payment could not be started. Please try again."
        assert "database is down" not in resp.text
        assert len(fake_gateway.calls_to("create_tip_intent")) == 1

    async def test_country_header_selects_methods(self, client: AsyncClient):
        resp = await client.post(TIP_URL, json=_tip_body(), headers={"CF-IPCountry": "ES"})
        assert resp.json()["payment_method_types"] == ["card", "bizum"]


class TestWebhooks:

    async def test_invalid_signature_is_rejected(self, client: AsyncClient, signed_event):
        payload, _ = signed_event("payment_intent.succeeded", {"id": "pi_x"})
        resp = await client.post(
            WEBHOOK_URL, content=payload, headers={"Stripe-Signature": "t=1,v1=bad"}
        )
        assert resp.status_code == 400

    async def test_missing_signature_is_rejected(self, client: AsyncClient, signed_event):
        payload, _ = signed_event("payment_intent.succeeded", {"id": "pi_x"})
        resp = await client.post(WEBHOOK_URL, content=payload)
        assert resp.status_code == 400

    async def test_succeeded_webhook_completes_tip(
        self, client: AsyncClient, signed_event, tipper_headers, directory, fake_gateway
    ):
        await directory.upsert(PERFORMER_ID, connect_account_id="acct_1")
        created = (await client.post(TIP_URL, json=_tip_body(), headers=tipper_headers)).json()

        resp = await _post_webhook(
            client,
            signed_event,
            "payment_intent.succeeded",
            {"id": created["payment_intent_id"], "latest_charge": "ch_1"},
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "received": True,
            "event_type": "payment_intent.succeeded",
            "processed": True,
        }
        detail = (
            await client.get(
                f"/api/v1/payments/transactions/{created['transaction_id']}",
                headers=tipper_headers,
            )
        ).json()
        assert detail["status"] == "completed"
        assert detail["payout_status"] == "completed"
        assert [t.amount_cents for t in fake_gateway.transfers] == [455]

    async def test_unhandled_event_is_acknowledged(self, client: AsyncClient, signed_event):
        resp = await _post_webhook(client, signed_event, "customer.created", {"id": "cus_1"})
        assert resp.status_code == 200
        assert resp.json()["processed"] is False


class TestTransactionAccess:

    async def test_requires_token(self, client: AsyncClient):
        created = (await client.post(TIP_URL, json=_tip_body())).json()
        resp = await client.get(f"/api/v1/payments/transactions/{created['transaction_id']}")
        assert resp.status_code in (401, 403)

    async def test_stranger_gets_404(self, client: AsyncClient, auth_header, tipper_headers):
        created = (await client.post(TIP_URL, json=_tip_body(), headers=tipper_headers)).json()
        resp = await client.get(
            f"/api/v1/payments/transactions/{created['transaction_id']}",
            headers=auth_header("someone_else"),
        )
        assert resp.status_code == 404


class TestEarningsAndSummary:

    async def _completed_tip(self, client, signed_event, amount="5.00", headers=None, **fields):
        created = (
            await client.post(TIP_URL, json=_tip_body(amount, **fields), headers=headers or {})
        ).json()
        await _post_webhook(
            client,
            signed_event,
            "payment_intent.succeeded",
            {"id": created["payment_intent_id"], "latest_charge": f"ch_{created['payment_intent_id']}"},
        )
        return created

    async def test_earnings_requires_performer(self, client: AsyncClient, tipper_headers):
        resp = await client.get("/api/v1/payments/earnings", headers=tipper_headers)
        assert resp.status_code == 403

    async def test_earnings_totals(
        self, client: AsyncClient, signed_event, performer_headers, tipper_headers
    ):
        await self._completed_tip(client, signed_event, "5.00", tipper_headers)
        await self._completed_tip(client, signed_event, "10.00", tipper_headers)
        await client.post(TIP_URL, json=_tip_body("2.00"))

        resp = await client.get("/api/v1/payments/earnings", headers=performer_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["transaction_count"] == 2
        assert body["total_amount_cents"] == 1500
        assert body["total_net_cents"] == 455 + 941
        assert body["average_amount_cents"] == 750
        assert len(body["transactions"]) == 3

        pending = await client.get(
            "/api/v1/payments/earnings",
            params={"status": "pending"},
            headers=performer_headers,
        )
        assert [tx["amount_cents"] for tx in pending.json()["transactions"]] == [200]

    async def test_performance_summary_is_public(
        self, client: AsyncClient, signed_event, tipper_headers
    ):
        await self._completed_tip(
            client, signed_event, "5.00", tipper_headers, public_message="Great set!"
        )
        await self._completed_tip(client, signed_event, "3.00", tipper_headers, is_anonymous=True)

        resp = await client.get(f"/api/v1/payments/performance/{PERFORMANCE_ID}/summary")

        assert resp.status_code == 200
        body = resp.json()
        assert body["transaction_count"] == 2
        assert body["total_amount_cents"] == 800
        assert len(body["recent_tips"]) == 1
        assert body["recent_tips"][0]["public_message"] == "Great set!"
        assert body["recent_tips"][0]["from_user"] == TIPPER_ID


class TestConnectOnboarding:

    async def test_create_account_and_link(self, client: AsyncClient, performer_headers):
        resp = await client.post(
            "/api/v1/payments/connect/account",
            json={"email": "busker@example.com", "country": "ES"},
            headers=performer_headers,
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["performer_id"] == PERFORMER_ID
        assert body["connect_account_id"].startswith("acct_fake_")
        assert body["account_status"] == "pending"
        assert body["onboarding_url"].endswith(body["connect_account_id"])

        again = await client.post(
            "/api/v1/payments/connect/account",
            json={"email": "busker@example.com", "country": "ES"},
            headers=performer_headers,
        )
        assert again.status_code == 409

        link = await client.post(
            "/api/v1/payments/connect/link",
            json={"link_type": "account_update"},
            headers=performer_headers,
        )
        assert link.status_code == 200
        assert "account_update" in link.json()["url"]

    async def test_status_reflects_processor(
        self, client: AsyncClient, performer_headers, fake_gateway
    ):
        created = (
            await client.post(
                "/api/v1/payments/connect/account",
                json={"email": "busker@example.com", "country": "ES"},
                headers=performer_headers,
            )
        ).json()
        account = fake_gateway.accounts[created["connect_account_id"]]
        fake_gateway.set_account(
            ConnectedAccountResult(
                account_id=account.account_id,
                details_submitted=True,
                charges_enabled=True,
                payouts_enabled=True,
            )
        )

        resp = await client.get("/api/v1/payments/connect/account", headers=performer_headers)

        assert resp.status_code == 200
        assert resp.json()["account_status"] == "active"
        assert resp.json()["onboarding_url"] is None

    async def test_no_account_yet(self, client: AsyncClient, performer_headers):
        resp = await client.get("/api/v1/payments/connect/account", headers=performer_headers)
        assert resp.status_code == 404

        link = await client.post(
            "/api/v1/payments/connect/link", json={}, headers=performer_headers
        )
        assert link.status_code == 404

    async def test_audience_cannot_onboard(self, client: AsyncClient, tipper_headers):
        resp = await client.post(
            "/api/v1/payments/connect/account",
            json={"email": "fan@example.com", "country": "ES"},
            headers=tipper_headers,
        )
        assert resp.status_code == 403
