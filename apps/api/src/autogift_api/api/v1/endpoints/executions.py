"""Owner decisions on proposed gifts."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.api.dependencies.pipeline import get_pipeline_dependencies
from autogift_api.api.dependencies.security import require_pipeline_api_key
from autogift_api.db.session import get_session
from autogift_api.models.execution import GiftExecution
from autogift_api.services.event_log import PipelineEventLog
from autogift_api.services.gifting import (
    ApprovalStateError,
    ExecutionNotFoundError,
    InvalidSelectionError,
)
from autogift_api.services.pipeline import PipelineDependencies, PipelineServices

router = APIRouter(prefix="/executions", tags=["Executions"], dependencies=[Depends(require_pipeline_api_key)])


class ExecutionDecisionRequest(BaseModel):
    approve: bool
    selected_product_ids: list[str] | None = Field(None, alias="selectedProductIds")
    reason: str | None = None
    decided_by: str | None = Field(None, alias="decidedBy")

    class Config:
        populate_by_name = True


@router.post("/{execution_id}/decision", summary="Approve or reject a proposed gift")
async def decide_execution(
    execution_id: UUID,
    payload: ExecutionDecisionRequest,
    session: AsyncSession = Depends(get_session),
    dependencies: PipelineDependencies = Depends(get_pipeline_dependencies),
) -> dict[str, Any]:
    approval = PipelineServices(session, dependencies).approval()
    try:
        result = await approval.decide(
            execution_id,
            approve=payload.approve,
            selected_product_ids=payload.selected_product_ids,
            reason=payload.reason,
            decided_by=payload.decided_by,
        )
    except ExecutionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ApprovalStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InvalidSelectionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return result.as_dict()


@router.get("/{execution_id}/events", summary="Pipeline events recorded for an execution")
async def list_execution_events(
    execution_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> list[dict[str, Any]]:
    execution = await session.get(GiftExecution, execution_id)
    if execution is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Execution not found")

    event_log = PipelineEventLog(session)
    events = await event_log.list_events(execution_id=execution_id)
    return [
        {
            "id": str(event.id),
            "eventType": event.event_type.value,
            "stage": event.stage,
            "isSimulation": event.is_simulation,
            "createdAt": event.created_at.isoformat() if event.created_at else None,
            "payload": event_log.decode(event).model_dump(mode="json"),
        }
        for event in events
    ]
