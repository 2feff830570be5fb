"""Wiring of the pipeline components around a single database session."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.core.settings import Settings, get_settings
from autogift_api.domain.calendar import PipelineTiming
from autogift_api.services.catalog import CatalogClient
from autogift_api.services.checkout import AutoGiftCheckoutService
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.fulfillment import FulfillmentClient
from autogift_api.services.gifting import (
    AddressCollectionService,
    ApprovalService,
    AutoGiftOrchestrator,
    GiftSelector,
    PaymentRetryProcessor,
)
from autogift_api.services.notifications import EmailBackend, NotificationService
from autogift_api.services.orders import ScheduledOrderProcessor
from autogift_api.services.payments import PaymentGateway, StripeService


@dataclass
class PipelineDependencies:
    """External collaborators shared by every pipeline run."""

    gateway: PaymentGateway
    fulfillment: FulfillmentClient
    catalog: CatalogClient
    timing: PipelineTiming
    email_backend: EmailBackend | None = None
    frontend_url: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PipelineDependencies":
        resolved = settings or get_settings()
        return cls(
            gateway=StripeService.from_settings(resolved),
            fulfillment=FulfillmentClient.from_settings(resolved),
            catalog=CatalogClient.from_settings(resolved),
            timing=PipelineTiming.from_settings(resolved),
            frontend_url=resolved.frontend_url,
        )


class PipelineServices:
    """Builds the components for one session and one run mode."""

    def __init__(self, session: AsyncSession, dependencies: PipelineDependencies, *, simulated: bool = False) -> None:
        self.session = session
        self.dependencies = dependencies
        self.timing = dependencies.timing
        self.event_log = PipelineEventLog(session, simulated=simulated)
        self.notifications = NotificationService(
            session,
            dependencies.email_backend,
            frontend_url=dependencies.frontend_url,
            currency=self.timing.currency,
        )

    def approval(self) -> ApprovalService:
        return ApprovalService(
            self.session,
            gateway=self.dependencies.gateway,
            notifications=self.notifications,
            timing=self.timing,
            event_log=self.event_log,
        )

    def orchestrator(self) -> AutoGiftOrchestrator:
        return AutoGiftOrchestrator(
            self.session,
            selector=GiftSelector(self.session, self.dependencies.catalog),
            checkout=AutoGiftCheckoutService(self.session, self.dependencies.gateway, self.timing),
            notifications=self.notifications,
            timing=self.timing,
            event_log=self.event_log,
        )

    def scheduled_orders(self) -> ScheduledOrderProcessor:
        return ScheduledOrderProcessor(
            self.session,
            gateway=self.dependencies.gateway,
            fulfillment=self.dependencies.fulfillment,
            notifications=self.notifications,
            timing=self.timing,
            event_log=self.event_log,
        )

    def payment_retries(self) -> PaymentRetryProcessor:
        return PaymentRetryProcessor(
            self.session,
            approval=self.approval(),
            timing=self.timing,
            event_log=self.event_log,
        )

    def address_collection(self) -> AddressCollectionService:
        return AddressCollectionService(
            self.session,
            approval=self.approval(),
            notifications=self.notifications,
            timing=self.timing,
            event_log=self.event_log,
        )


__all__ = ["PipelineDependencies", "PipelineServices"]
