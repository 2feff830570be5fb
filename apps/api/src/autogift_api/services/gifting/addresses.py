"""Shipping address resolution and the recipient address collection flow."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Mapping

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.domain.calendar import PipelineTiming, as_utc
from autogift_api.models.execution import AddressCollectionStatusEnum, ExecutionStatusEnum, GiftExecution
from autogift_api.models.gifting_rule import GiftingRule
from autogift_api.models.pending_address import PendingRecipientAddress
from autogift_api.models.user import User
from autogift_api.schemas.pipeline_events import (
    AddressReceivedPayload,
    AddressRequestedPayload,
    ProcessingFailedPayload,
)
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.fulfillment import missing_address_fields
from autogift_api.services.notifications import NotificationService
from autogift_api.services.run_summary import RunSummary

from .errors import AddressTokenError, GiftResolutionError
from .executions import transition_execution

if TYPE_CHECKING:
    from .approval import ApprovalResult, ApprovalService


async def resolve_shipping_address(
    session: AsyncSession,
    rule: GiftingRule,
    execution: GiftExecution | None = None,
) -> dict[str, Any] | None:
    """Collected address for the execution, else the recipient's profile address."""

    if execution is not None:
        stmt = (
            select(PendingRecipientAddress)
            .where(
                PendingRecipientAddress.execution_id == execution.id,
                PendingRecipientAddress.status == AddressCollectionStatusEnum.RECEIVED,
            )
            .order_by(PendingRecipientAddress.collected_at.desc())
            .limit(1)
        )
        collected = (await session.execute(stmt)).scalar_one_or_none()
        if collected is not None and collected.shipping_address:
            return dict(collected.shipping_address)

    if rule.recipient_id is not None:
        recipient = await session.get(User, rule.recipient_id)
        if recipient is not None and not missing_address_fields(recipient.shipping_address):
            return dict(recipient.shipping_address)
    return None


async def recipient_contact(session: AsyncSession, rule: GiftingRule) -> tuple[str | None, str | None]:
    if rule.recipient_id is not None:
        recipient = await session.get(User, rule.recipient_id)
        if recipient is not None and recipient.email:
            return recipient.email, recipient.display_name
    return rule.pending_recipient_email, rule.pending_recipient_name


async def issue_address_request(
    session: AsyncSession,
    rule: GiftingRule,
    execution: GiftExecution,
    *,
    notifications: NotificationService,
    event_log: PipelineEventLog,
    timing: PipelineTiming,
    now: datetime,
) -> PendingRecipientAddress:
    """Persist a single-use token and email the recipient a collection link."""

    email, name = await recipient_contact(session, rule)
    if not email:
        raise GiftResolutionError("Recipient has no address and no email to ask for one", stage="address")

    request = PendingRecipientAddress(
        execution_id=execution.id,
        token=secrets.token_urlsafe(32),
        recipient_email=email,
        recipient_name=name,
        requested_by=rule.owner_id,
        status=AddressCollectionStatusEnum.REQUESTED,
        expires_at=now + timedelta(days=timing.address_token_ttl_days),
    )
    session.add(request)
    await session.flush()

    await event_log.record(
        AddressRequestedPayload(request_id=request.id, recipient_email=email, expires_at=request.expires_at),
        rule_id=rule.id,
        execution_id=execution.id,
        user_id=rule.owner_id,
        commit=False,
    )
    await session.commit()
    await session.refresh(request)
    await notifications.send_address_request(rule, request)
    logger.info("Address collection requested", execution_id=str(execution.id), request_id=str(request.id))
    return request


@dataclass(slots=True)
class AddressCompletion:
    request: PendingRecipientAddress
    approval: "ApprovalResult"


class AddressCollectionService:
    """Completes and expires recipient address requests."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        approval: "ApprovalService",
        notifications: NotificationService,
        timing: PipelineTiming,
        event_log: PipelineEventLog | None = None,
    ) -> None:
        self._session = session
        self._approval = approval
        self._notifications = notifications
        self._timing = timing
        self._event_log = event_log or PipelineEventLog(session)

    async def complete(self, token: str, address: Mapping[str, Any], *, now: datetime) -> AddressCompletion:
        """Store the recipient's address and resume the approved gift.

        Raises:
            AddressTokenError: Unknown, used or expired token, or an incomplete address.
        """

        result = await self._session.execute(
            select(PendingRecipientAddress).where(PendingRecipientAddress.token == token)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise AddressTokenError("Invalid address collection token", reason="not_found")
        if request.status != AddressCollectionStatusEnum.REQUESTED:
            raise AddressTokenError("Address collection token already used", reason=request.status.value)
        if as_utc(request.expires_at) <= now:
            raise AddressTokenError("Address collection token expired", reason="expired")

        missing = missing_address_fields(address)
        if missing:
            raise AddressTokenError(f"Address is missing: {', '.join(missing)}", reason="incomplete_address")

        claimed = await self._session.execute(
            update(PendingRecipientAddress)
            .where(
                PendingRecipientAddress.id == request.id,
                PendingRecipientAddress.status == AddressCollectionStatusEnum.REQUESTED,
            )
            .values(
                status=AddressCollectionStatusEnum.RECEIVED,
                shipping_address=dict(address),
                collected_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self._session.rollback()
            raise AddressTokenError("Address collection token already used", reason="received")

        execution = await self._session.get(GiftExecution, request.execution_id)
        rule = await self._session.get(GiftingRule, execution.rule_id)
        await self._event_log.record(
            AddressReceivedPayload(request_id=request.id),
            rule_id=rule.id,
            execution_id=execution.id,
            user_id=rule.owner_id,
            commit=False,
        )
        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.PROCESSING,
            expected=[ExecutionStatusEnum.AWAITING_ADDRESS],
            address_collection_status=AddressCollectionStatusEnum.RECEIVED,
        )
        if not moved:
            raise AddressTokenError("Gift is no longer waiting for an address", reason="stale_execution")
        await self._session.refresh(request)

        await self._notifications.send_address_received(rule)
        logger.info("Recipient address received", execution_id=str(execution.id), request_id=str(request.id))

        selected = [product["product_id"] for product in execution.selected_products or []]
        approval = await self._approval.approve(execution.id, selected_product_ids=selected or None, now=now)
        return AddressCompletion(request=request, approval=approval)

    async def expire_overdue(self, *, now: datetime, simulated: bool = False) -> RunSummary:
        """Expire requested tokens past their deadline and fail their executions."""

        summary = RunSummary(
            component="address_request_expiry",
            reference_date=now.date(),
            simulated=simulated,
            config={"addressTokenTtlDays": self._timing.address_token_ttl_days},
        )
        stmt = select(PendingRecipientAddress).where(
            PendingRecipientAddress.status == AddressCollectionStatusEnum.REQUESTED,
            PendingRecipientAddress.expires_at <= now,
        )
        overdue = list((await self._session.execute(stmt)).scalars())

        for request_id, execution_id in [(request.id, request.execution_id) for request in overdue]:
            try:
                await self._expire_one(request_id, execution_id)
            except Exception as exc:
                await self._session.rollback()
                logger.exception("Failed to expire address request", request_id=str(request_id))
                summary.fail(entity_id=request_id, stage="address_expiry", error=str(exc))
                continue
            summary.record("expired", id=request_id, executionId=execution_id)

        logger.info("Address request expiry sweep finished", **summary.counts)
        return summary

    async def _expire_one(self, request_id: Any, execution_id: Any) -> None:
        result = await self._session.execute(
            update(PendingRecipientAddress)
            .where(
                PendingRecipientAddress.id == request_id,
                PendingRecipientAddress.status == AddressCollectionStatusEnum.REQUESTED,
            )
            .values(status=AddressCollectionStatusEnum.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._session.rollback()
            return
        await self._session.commit()

        execution = await self._session.get(GiftExecution, execution_id)
        rule = await self._session.get(GiftingRule, execution.rule_id)
        moved = await transition_execution(
            self._session,
            execution,
            ExecutionStatusEnum.FAILED,
            expected=[ExecutionStatusEnum.AWAITING_ADDRESS],
            address_collection_status=AddressCollectionStatusEnum.EXPIRED,
            error_message="Recipient did not provide a shipping address in time",
        )
        if not moved:
            return
        await self._event_log.record(
            ProcessingFailedPayload(stage="address_collection", error="Address collection token expired"),
            rule_id=rule.id,
            execution_id=execution.id,
            user_id=rule.owner_id,
        )
        await self._notifications.send_address_expired(rule)


__all__ = [
    "AddressCollectionService",
    "AddressCompletion",
    "issue_address_request",
    "recipient_contact",
    "resolve_shipping_address",
]
