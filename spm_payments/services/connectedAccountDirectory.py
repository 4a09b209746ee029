"""
Connected-Account Directory
===========================

Read/write access to each performer's Stripe Connect status. The tip
pipeline consults it before attempting a payout transfer.

Records are refreshed from Stripe opportunistically (on read, and on
``account.updated`` webhooks). Once a ``connect_account_id`` is stored it
is never cleared or replaced by this component.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spm_payments.core.exceptions import GatewayError, NotFoundError, TipValidationError
from spm_payments.integrations.stripe import ConnectedAccountResult, PaymentGateway
from spm_payments.models import ConnectAccountStatus, PerformerPaymentAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OnboardingResult:
    account: PerformerPaymentAccount
    onboarding_url: Optional[str]


def derive_account_status(
    has_account: bool,
    details_submitted: bool,
    charges_enabled: bool,
    payouts_enabled: bool,
) -> ConnectAccountStatus:
    if not has_account:
        return ConnectAccountStatus.NOT_CREATED
    if charges_enabled and payouts_enabled:
        return ConnectAccountStatus.ACTIVE
    if details_submitted:
        return ConnectAccountStatus.RESTRICTED
    return ConnectAccountStatus.PENDING


class ConnectedAccountDirectory:
    """Accessor over ``PerformerPaymentAccount`` rows."""

    def __init__(self, db: AsyncSession, gateway: PaymentGateway) -> None:
        self.db = db
        self.gateway = gateway

    async def get(self, performer_id: str) -> Optional[PerformerPaymentAccount]:
        result = await self.db.execute(
            select(PerformerPaymentAccount).where(
                PerformerPaymentAccount.performer_id == performer_id
            )
        )
        return result.scalar_one_or_none()

    async def get_by_account_id(self, account_id: str) -> Optional[PerformerPaymentAccount]:
        result = await self.db.execute(
            select(PerformerPaymentAccount).where(
                PerformerPaymentAccount.connect_account_id == account_id
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        performer_id: str,
        *,
        connect_account_id: Optional[str] = None,
        charges_enabled: Optional[bool] = None,
        payouts_enabled: Optional[bool] = None,
        details_submitted: Optional[bool] = None,
        email: Optional[str] = None,
        country: Optional[str] = None,
    ) -> PerformerPaymentAccount:
        """Create or update a performer's record.

        ``None`` leaves a field untouched. An existing account id is kept
        even if a different one is passed.
        """
        record = await self.get(performer_id)
        if record is None:
            record = PerformerPaymentAccount(performer_id=performer_id)
            self.db.add(record)

        if connect_account_id:
            if record.connect_account_id and record.connect_account_id != connect_account_id:
                logger.warning(
                    "Ignoring account id change: performer=%s, stored=%s, new=%s",
                    performer_id,
                    record.connect_account_id,
                    connect_account_id,
                )
            elif not record.connect_account_id:
                record.connect_account_id = connect_account_id

        if charges_enabled is not None:
            record.charges_enabled = charges_enabled
        if payouts_enabled is not None:
            record.payouts_enabled = payouts_enabled
        if details_submitted is not None:
            record.details_submitted = details_submitted
        if email is not None:
            record.email = email
        if country is not None:
            record.country = country.upper()

        record.account_status = derive_account_status(
            bool(record.connect_account_id),
            bool(record.details_submitted),
            bool(record.charges_enabled),
            bool(record.payouts_enabled),
        ).value
        await self.db.flush()
        return record

    async def sync_from_account(
        self, account: ConnectedAccountResult
    ) -> Optional[PerformerPaymentAccount]:
        """Apply the processor's view of an account to the stored record."""
        record = await self.get_by_account_id(account.account_id)
        if record is None:
            logger.warning(
                "No performer linked to connected account %s", account.account_id
            )
            return None
        record = await self.upsert(
            record.performer_id,
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
            details_submitted=account.details_submitted,
        )
        logger.info(
            "Connected account synced: performer=%s, account=%s, status=%s",
            record.performer_id,
            account.account_id,
            record.account_status,
        )
        return record

    async def refresh(self, performer_id: str) -> Optional[PerformerPaymentAccount]:
        """Return the record, updated from Stripe when possible.

        A processor failure returns the stored (possibly stale) record.
        """
        record = await self.get(performer_id)
        if record is None or not record.connect_account_id:
            return record
        try:
            account = await self.gateway.get_connected_account(record.connect_account_id)
        except (GatewayError, NotFoundError) as exc:
            logger.warning(
                "Could not refresh connected account: performer=%s, account=%s, error=%s",
                performer_id,
                record.connect_account_id,
                exc.message,
            )
            return record
        return await self.sync_from_account(account)

    async def onboard(
        self,
        performer_id: str,
        email: str,
        country: str,
        business_type: str = "individual",
    ) -> OnboardingResult:
        """Create a connected account for a performer who has none yet.

        Raises:
            TipValidationError: If the performer already has an account.
            GatewayError: If Stripe rejects the account creation.
        """
        record = await self.get(performer_id)
        if record is not None and record.connect_account_id:
            raise TipValidationError(
                "Performer already has a connected account", field="performer_id"
            )

        account = await self.gateway.create_connected_account(
            performer_id, email, country, business_type
        )
        record = await self.upsert(
            performer_id,
            connect_account_id=account.account_id,
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
            details_submitted=account.details_submitted,
            email=email,
            country=country,
        )
        logger.info(
            "Performer onboarding started: performer=%s, account=%s",
            performer_id,
            account.account_id,
        )
        return OnboardingResult(account=record, onboarding_url=account.onboarding_url)

    async def create_link(
        self, performer_id: str, link_type: str = "account_onboarding"
    ) -> str:
        """Fresh onboarding/update link for an existing account.

        Raises:
            NotFoundError: If the performer has no connected account.
        """
        record = await self.get(performer_id)
        if record is None or not record.connect_account_id:
            raise NotFoundError("Connected account for performer", performer_id)
        return await self.gateway.create_onboarding_link(
            record.connect_account_id, link_type
        )
