"""Tagged payloads stored on pipeline event log entries."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Mapping, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .gifts import GiftProduct


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NotificationSentPayload(_Payload):
    kind: Literal["notification_sent"] = "notification_sent"
    event_date: date
    days_until: int
    delivered: bool
    candidates: list[GiftProduct] = Field(default_factory=list)


class CheckoutCreatedPayload(_Payload):
    kind: Literal["checkout_created"] = "checkout_created"
    order_id: UUID
    order_number: str
    event_date: date
    amount: Decimal
    payment_mode: Literal["authorized", "setup"]
    product: GiftProduct


class ProcessingFailedPayload(_Payload):
    kind: Literal["processing_failed"] = "processing_failed"
    stage: str
    error: str
    event_date: date | None = None


class ApprovalDecidedPayload(_Payload):
    kind: Literal["approval_decided"] = "approval_decided"
    decision: Literal["approve", "reject"]
    outcome: str
    reason: str | None = None
    selected_product_ids: list[str] = Field(default_factory=list)
    notified: bool = False


class AddressRequestedPayload(_Payload):
    kind: Literal["address_requested"] = "address_requested"
    request_id: UUID
    recipient_email: str
    expires_at: datetime


class AddressReceivedPayload(_Payload):
    kind: Literal["address_received"] = "address_received"
    request_id: UUID


class PaymentAttemptedPayload(_Payload):
    kind: Literal["payment_attempted"] = "payment_attempted"
    attempt_number: int
    succeeded: bool
    amount: Decimal
    intent_id: str | None = None
    error_code: str | None = None
    error: str | None = None
    next_retry_at: datetime | None = None


class OrderStageAdvancedPayload(_Payload):
    kind: Literal["order_stage_advanced"] = "order_stage_advanced"
    stage: str
    from_status: str
    to_status: str
    reference: str | None = None


class UnknownPayload(_Payload):
    """Fallback for entries written by a newer or older pipeline version."""

    kind: str = "unknown"
    data: dict[str, Any] = Field(default_factory=dict)


KnownPayload = Annotated[
    Union[
        NotificationSentPayload,
        CheckoutCreatedPayload,
        ProcessingFailedPayload,
        ApprovalDecidedPayload,
        AddressRequestedPayload,
        AddressReceivedPayload,
        PaymentAttemptedPayload,
        OrderStageAdvancedPayload,
    ],
    Field(discriminator="kind"),
]

PipelineEventPayload = Union[
    NotificationSentPayload,
    CheckoutCreatedPayload,
    ProcessingFailedPayload,
    ApprovalDecidedPayload,
    AddressRequestedPayload,
    AddressReceivedPayload,
    PaymentAttemptedPayload,
    OrderStageAdvancedPayload,
    UnknownPayload,
]

_known_adapter: TypeAdapter[Any] = TypeAdapter(KnownPayload)


def parse_payload(raw: Mapping[str, Any] | None) -> PipelineEventPayload:
    """Decode a stored payload; unrecognised shapes become ``UnknownPayload``."""

    data = dict(raw or {})
    try:
        return _known_adapter.validate_python(data)
    except ValidationError:
        kind = data.get("kind")
        return UnknownPayload(kind=kind if isinstance(kind, str) else "unknown", data=data)


__all__ = [
    "AddressReceivedPayload",
    "AddressRequestedPayload",
    "ApprovalDecidedPayload",
    "CheckoutCreatedPayload",
    "KnownPayload",
    "NotificationSentPayload",
    "OrderStageAdvancedPayload",
    "PaymentAttemptedPayload",
    "PipelineEventPayload",
    "ProcessingFailedPayload",
    "UnknownPayload",
    "parse_payload",
]
