"""Timing rules shared by every pipeline component."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from autogift_api.core.settings import Settings


@dataclass(frozen=True)
class PipelineTiming:
    """Lead times and thresholds, passed explicitly to each service."""

    notification_lead_days: int = 7
    payment_commitment_lead_days: int = 4
    capture_lead_days: int = 4
    shipping_buffer_days: int = 3
    approval_hold_threshold_days: int = 7
    captured_payment_status: str = "captured"
    address_token_ttl_days: int = 7
    payment_retry_delays_hours: tuple[int, ...] = field(default=(12, 24, 36))
    payment_retry_max_attempts: int = 3
    currency: str = "usd"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineTiming":
        return cls(
            notification_lead_days=settings.notification_lead_days,
            payment_commitment_lead_days=settings.payment_commitment_lead_days,
            capture_lead_days=settings.capture_lead_days,
            shipping_buffer_days=settings.shipping_buffer_days,
            approval_hold_threshold_days=settings.approval_hold_threshold_days,
            captured_payment_status=settings.captured_payment_status,
            address_token_ttl_days=settings.address_token_ttl_days,
            payment_retry_delays_hours=tuple(settings.payment_retry_delays_hours),
            payment_retry_max_attempts=settings.payment_retry_max_attempts,
            currency=settings.currency,
        )

    @property
    def look_ahead_days(self) -> int:
        return max(self.notification_lead_days, self.payment_commitment_lead_days)

    def capture_date(self, delivery_date: date) -> date:
        return delivery_date - timedelta(days=self.capture_lead_days)

    def submission_date(self, delivery_date: date) -> date:
        return delivery_date - timedelta(days=self.shipping_buffer_days)

    def is_capture_ready(self, delivery_date: date | None, today: date) -> bool:
        return delivery_date is not None and self.capture_date(delivery_date) <= today

    def is_submission_ready(self, delivery_date: date | None, today: date) -> bool:
        return delivery_date is not None and self.submission_date(delivery_date) <= today

    def should_hold(self, delivery_date: date, today: date) -> bool:
        return days_until(delivery_date, today) > self.approval_hold_threshold_days

    def hold_until(self, delivery_date: date) -> date:
        return self.submission_date(delivery_date)

    def payment_retry_delay(self, attempt: int) -> timedelta | None:
        """Delay before retry number ``attempt`` (1-based); ``None`` once exhausted."""

        if attempt < 1 or attempt > self.payment_retry_max_attempts:
            return None
        if not self.payment_retry_delays_hours:
            return None
        index = min(attempt, len(self.payment_retry_delays_hours)) - 1
        return timedelta(hours=self.payment_retry_delays_hours[index])

    def as_dict(self) -> dict[str, Any]:
        return {
            "notificationLeadDays": self.notification_lead_days,
            "paymentCommitmentLeadDays": self.payment_commitment_lead_days,
            "captureLeadDays": self.capture_lead_days,
            "shippingBufferDays": self.shipping_buffer_days,
            "approvalHoldThresholdDays": self.approval_hold_threshold_days,
            "capturedPaymentStatus": self.captured_payment_status,
            "paymentRetryDelaysHours": list(self.payment_retry_delays_hours),
            "paymentRetryMaxAttempts": self.payment_retry_max_attempts,
        }


def days_until(event_date: date, today: date) -> int:
    return (event_date - today).days


def resolve_today(simulated_date: date | None = None) -> date:
    if simulated_date is not None:
        return simulated_date
    return datetime.now(timezone.utc).date()


def resolve_now(simulated_date: date | None = None) -> datetime:
    """Wall clock, or the last instant of the simulated day."""

    if simulated_date is not None:
        return datetime.combine(simulated_date, time.max, tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; treat them as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["PipelineTiming", "as_utc", "days_until", "resolve_now", "resolve_today"]
