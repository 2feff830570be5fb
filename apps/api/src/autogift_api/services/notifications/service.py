"""Owner and recipient notifications raised by the gift pipeline."""

from __future__ import annotations

import smtplib
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.core.settings import get_settings
from autogift_api.models.execution import GiftExecution
from autogift_api.models.gifting_rule import GiftingRule
from autogift_api.models.order import Order
from autogift_api.models.pending_address import PendingRecipientAddress
from autogift_api.models.user import User

from .backend import EmailBackend, SMTPEmailBackend
from .templates import (
    RenderedTemplate,
    render_address_expired,
    render_address_received,
    render_address_request,
    render_gift_rejected,
    render_gift_reminder,
    render_order_attention,
    render_order_scheduled,
    render_payment_failed,
    render_payment_retrying,
)


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    subject: str
    body_text: str
    body_html: str | None
    event_type: str
    metadata: dict[str, Any]


@dataclass
class _Contact:
    email: str
    display_name: Optional[str]


def occasion_for(rule: GiftingRule) -> str:
    if rule.holiday_key:
        return rule.holiday_key
    return getattr(rule.event_type, "value", str(rule.event_type))


class NotificationService:
    """Renders pipeline templates and hands them to an email backend.

    Delivery problems are logged and never undo the pipeline state change
    that triggered the message.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        backend: Optional[EmailBackend] = None,
        *,
        frontend_url: str | None = None,
        currency: str = "usd",
    ) -> None:
        self._db = db_session
        self._backend = backend if backend is not None else self._build_default_backend()
        self._frontend_url = (frontend_url or get_settings().frontend_url).rstrip("/")
        self._currency = currency
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return self._events

    def approval_url(self, execution_id: UUID) -> str:
        return f"{self._frontend_url}/auto-gifts/approve/{execution_id}"

    def address_collection_url(self, token: str) -> str:
        return f"{self._frontend_url}/gift-address/{token}"

    async def recipient_name(self, rule: GiftingRule) -> str:
        if rule.recipient_id:
            recipient = await self._get_user(rule.recipient_id)
            if recipient is not None:
                return recipient.display_name or recipient.email or "your recipient"
        return rule.pending_recipient_name or rule.pending_recipient_email or "your recipient"

    async def send_gift_reminder(
        self,
        rule: GiftingRule,
        execution: GiftExecution | None,
        *,
        event_date: date,
        candidates: Sequence[Mapping[str, Any]],
    ) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_gift_reminder(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
            occasion=occasion_for(rule),
            event_date=event_date,
            candidates=candidates,
            currency=self._currency,
            approval_url=self.approval_url(execution.id) if execution is not None else None,
        )
        return await self._deliver(
            owner,
            template,
            event_type="gift_reminder",
            metadata={
                "rule_id": str(rule.id),
                "execution_id": str(execution.id) if execution is not None else None,
                "event_date": event_date.isoformat(),
                "candidate_count": len(candidates),
            },
        )

    async def send_gift_rejected(self, rule: GiftingRule, execution: GiftExecution, reason: str | None) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_gift_rejected(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
            occasion=occasion_for(rule),
            reason=reason,
        )
        return await self._deliver(
            owner,
            template,
            event_type="gift_rejected",
            metadata={"rule_id": str(rule.id), "execution_id": str(execution.id), "reason": reason},
        )

    async def send_address_request(self, rule: GiftingRule, request: PendingRecipientAddress) -> bool:
        owner = await self._get_user(rule.owner_id)
        template = render_address_request(
            recipient_name=request.recipient_name,
            sender_name=owner.display_name if owner is not None else None,
            occasion=occasion_for(rule),
            collection_url=self.address_collection_url(request.token),
            expires_at=request.expires_at,
        )
        return await self._deliver(
            _Contact(email=request.recipient_email, display_name=request.recipient_name),
            template,
            event_type="address_request",
            metadata={"rule_id": str(rule.id), "execution_id": str(request.execution_id)},
        )

    async def send_address_received(self, rule: GiftingRule) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_address_received(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
        )
        return await self._deliver(owner, template, event_type="address_received", metadata={"rule_id": str(rule.id)})

    async def send_address_expired(self, rule: GiftingRule) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_address_expired(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
        )
        return await self._deliver(owner, template, event_type="address_expired", metadata={"rule_id": str(rule.id)})

    async def send_payment_retrying(
        self,
        rule: GiftingRule,
        execution: GiftExecution,
        *,
        next_retry_at: datetime,
        attempts_remaining: int,
    ) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_payment_retrying(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
            amount=Decimal(execution.total_amount or 0),
            currency=self._currency,
            next_retry_at=next_retry_at,
            attempts_remaining=attempts_remaining,
        )
        return await self._deliver(
            owner,
            template,
            event_type="payment_retrying",
            metadata={
                "execution_id": str(execution.id),
                "next_retry_at": next_retry_at.isoformat(),
                "attempts_remaining": attempts_remaining,
            },
        )

    async def send_payment_failed(self, rule: GiftingRule, execution: GiftExecution, reason: str | None) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_payment_failed(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
            reason=reason,
        )
        return await self._deliver(
            owner,
            template,
            event_type="payment_failed",
            metadata={"execution_id": str(execution.id), "reason": reason},
        )

    async def send_order_scheduled(self, rule: GiftingRule, order: Order) -> bool:
        owner = await self._owner_contact(rule.owner_id)
        if owner is None:
            return False
        template = render_order_scheduled(
            owner_name=owner.display_name,
            recipient_name=await self.recipient_name(rule),
            order_number=order.order_number,
            total=Decimal(order.total or 0),
            currency=order.currency or self._currency,
            delivery_date=order.scheduled_delivery_date,
            hold_until=order.hold_until if order.hold_for_scheduled_delivery else None,
        )
        return await self._deliver(
            owner,
            template,
            event_type="order_scheduled",
            metadata={"order_id": str(order.id), "order_number": order.order_number},
        )

    async def send_order_attention(self, order: Order, *, stage: str, reason: str) -> bool:
        if order.user_id is None:
            return False
        owner = await self._owner_contact(order.user_id)
        if owner is None:
            return False
        template = render_order_attention(
            owner_name=owner.display_name,
            order_number=order.order_number,
            stage=stage,
            reason=reason,
        )
        return await self._deliver(
            owner,
            template,
            event_type="order_attention",
            metadata={"order_id": str(order.id), "stage": stage, "status": getattr(order.status, "value", order.status)},
        )

    def _build_default_backend(self) -> Optional[EmailBackend]:
        settings = get_settings()
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None

        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )

    async def _get_user(self, user_id: UUID) -> User | None:
        result = await self._db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _owner_contact(self, user_id: UUID) -> Optional[_Contact]:
        user = await self._get_user(user_id)
        if user is None or not user.email:
            return None
        return _Contact(email=user.email, display_name=user.display_name)

    async def _deliver(
        self,
        contact: _Contact,
        template: RenderedTemplate,
        *,
        event_type: str,
        metadata: dict[str, Any],
    ) -> bool:
        if self._backend is None:
            logger.debug("Email backend not configured; skipping notification", event_type=event_type)
            return False

        try:
            await self._backend.send_email(
                contact.email,
                template.subject,
                template.text_body,
                body_html=template.html_body,
            )
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send notification", event_type=event_type, recipient=contact.email)
            return False

        self._events.append(
            NotificationEvent(
                recipient=contact.email,
                subject=template.subject,
                body_text=template.text_body,
                body_html=template.html_body,
                event_type=event_type,
                metadata=metadata,
            )
        )
        return True


__all__ = ["NotificationEvent", "NotificationService", "occasion_for"]
