"""Append-only pipeline event log."""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.models.pipeline_event import PipelineEvent, PipelineEventTypeEnum
from autogift_api.schemas.pipeline_events import (
    PipelineEventPayload,
    UnknownPayload,
    parse_payload,
)


class PipelineEventLog:
    """Writes and reads event log rows. Rows are never updated after insert."""

    def __init__(self, session: AsyncSession, *, simulated: bool = False) -> None:
        self._session = session
        self._simulated = simulated

    async def record(
        self,
        payload: PipelineEventPayload,
        *,
        rule_id: UUID | None = None,
        execution_id: UUID | None = None,
        order_id: UUID | None = None,
        user_id: UUID | None = None,
        commit: bool = True,
    ) -> PipelineEvent:
        if isinstance(payload, UnknownPayload):
            raise ValueError("Unknown payloads are read-only and cannot be recorded")

        event = PipelineEvent(
            event_type=PipelineEventTypeEnum(payload.kind),
            rule_id=rule_id,
            execution_id=execution_id,
            order_id=order_id,
            user_id=user_id,
            stage=getattr(payload, "stage", None),
            payload=payload.model_dump(mode="json"),
            is_simulation=self._simulated,
        )
        self._session.add(event)
        if commit:
            await self._session.commit()
        logger.debug(
            "Pipeline event recorded",
            event_type=payload.kind,
            rule_id=str(rule_id) if rule_id else None,
            execution_id=str(execution_id) if execution_id else None,
            order_id=str(order_id) if order_id else None,
        )
        return event

    async def list_events(
        self,
        *,
        rule_id: UUID | None = None,
        execution_id: UUID | None = None,
        order_id: UUID | None = None,
        event_types: Sequence[PipelineEventTypeEnum] | None = None,
    ) -> list[PipelineEvent]:
        stmt = select(PipelineEvent).order_by(PipelineEvent.created_at.asc())
        if rule_id is not None:
            stmt = stmt.where(PipelineEvent.rule_id == rule_id)
        if execution_id is not None:
            stmt = stmt.where(PipelineEvent.execution_id == execution_id)
        if order_id is not None:
            stmt = stmt.where(PipelineEvent.order_id == order_id)
        if event_types:
            stmt = stmt.where(PipelineEvent.event_type.in_(list(event_types)))
        result = await self._session.execute(stmt)
        return list(result.scalars())

    @staticmethod
    def decode(event: PipelineEvent) -> PipelineEventPayload:
        return parse_payload(event.payload)


__all__ = ["PipelineEventLog"]
