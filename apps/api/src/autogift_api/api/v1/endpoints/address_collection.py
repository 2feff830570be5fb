"""Recipient-facing address collection."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.api.dependencies.pipeline import get_pipeline_dependencies
from autogift_api.db.session import get_session
from autogift_api.models.execution import AddressCollectionStatusEnum
from autogift_api.services.gifting import AddressTokenError, ApprovalError
from autogift_api.services.pipeline import PipelineDependencies, PipelineServices

router = APIRouter(prefix="/address-collection", tags=["Address collection"])

_TOKEN_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "expired": status.HTTP_410_GONE,
    "incomplete_address": status.HTTP_400_BAD_REQUEST,
}


class ShippingAddressRequest(BaseModel):
    name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1, alias="addressLine1")
    address_line2: str | None = Field(None, alias="addressLine2")
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1, alias="zipCode")
    country: str = "US"
    phone_number: str | None = Field(None, alias="phoneNumber")

    class Config:
        populate_by_name = True


@router.post("/{token}", summary="Submit the recipient's shipping address")
async def submit_address(
    token: str,
    payload: ShippingAddressRequest,
    session: AsyncSession = Depends(get_session),
    dependencies: PipelineDependencies = Depends(get_pipeline_dependencies),
) -> dict[str, Any]:
    service = PipelineServices(session, dependencies).address_collection()
    address = payload.model_dump(exclude_none=True)
    try:
        completion = await service.complete(token, address, now=datetime.now(timezone.utc))
    except AddressTokenError as exc:
        code = _TOKEN_ERROR_STATUS.get(exc.reason, status.HTTP_409_CONFLICT)
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    except ApprovalError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return {
        "status": AddressCollectionStatusEnum.RECEIVED.value,
        "executionId": str(completion.approval.execution_id),
        "approval": completion.approval.as_dict(),
    }
