from datetime import date

import pytest
from sqlalchemy import select

from autogift_api.models.execution import AddressCollectionStatusEnum, ExecutionStatusEnum, GiftExecution
from autogift_api.models.order import Order
from autogift_api.models.pending_address import PendingRecipientAddress
from autogift_api.services.gifting import AddressTokenError
from autogift_api.services.pipeline import PipelineServices

from conftest import SHIPPING_ADDRESS, utc


async def _awaiting_address(session_factory, seed, dependencies):
    scenario = await seed.scenario(scheduled_date=date(2025, 12, 5), with_recipient=False)
    execution_id = await seed.execution(scenario, occurrence_date=date(2025, 12, 5))
    async with session_factory() as session:
        await PipelineServices(session, dependencies).approval().approve(execution_id, now=utc(2025, 12, 1))
        request = (
            await session.execute(
                select(PendingRecipientAddress).where(PendingRecipientAddress.execution_id == execution_id)
            )
        ).scalar_one()
    return execution_id, request.token


async def _complete(session_factory, dependencies, token, address, now):
    async with session_factory() as session:
        service = PipelineServices(session, dependencies).address_collection()
        return await service.complete(token, address, now=now)


@pytest.mark.asyncio
async def test_address_request_expires_after_ttl(session_factory, seed, dependencies) -> None:
    _, token = await _awaiting_address(session_factory, seed, dependencies)

    async with session_factory() as session:
        request = (
            await session.execute(select(PendingRecipientAddress).where(PendingRecipientAddress.token == token))
        ).scalar_one()
    assert request.status == AddressCollectionStatusEnum.REQUESTED
    assert request.expires_at.date() == date(2025, 12, 8)


@pytest.mark.asyncio
async def test_completed_address_resumes_approved_gift(session_factory, seed, dependencies, gateway, email_backend) -> None:
    execution_id, token = await _awaiting_address(session_factory, seed, dependencies)

    completion = await _complete(session_factory, dependencies, token, SHIPPING_ADDRESS, utc(2025, 12, 2))

    assert completion.approval.status == ExecutionStatusEnum.COMPLETED
    assert len(gateway.authorizations) == 1

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
        order = (await session.execute(select(Order))).scalar_one()
        request = (
            await session.execute(select(PendingRecipientAddress).where(PendingRecipientAddress.token == token))
        ).scalar_one()

    assert execution.status == ExecutionStatusEnum.COMPLETED
    assert execution.address_collection_status == AddressCollectionStatusEnum.RECEIVED
    assert request.status == AddressCollectionStatusEnum.RECEIVED
    assert request.collected_at is not None
    assert order.shipping_address["zip_code"] == "97201"
    assert order.recipient_email == "riley@example.com"

    subjects = [message["Subject"] for message in email_backend.sent_messages]
    assert subjects[:2] == ["You have a gift on the way", "Riley shared their address"]
    assert subjects[2].startswith("Gift order ")


@pytest.mark.asyncio
async def test_token_is_single_use(session_factory, seed, dependencies) -> None:
    _, token = await _awaiting_address(session_factory, seed, dependencies)
    await _complete(session_factory, dependencies, token, SHIPPING_ADDRESS, utc(2025, 12, 2))

    with pytest.raises(AddressTokenError) as excinfo:
        await _complete(session_factory, dependencies, token, SHIPPING_ADDRESS, utc(2025, 12, 2))

    assert excinfo.value.reason == "received"


@pytest.mark.asyncio
async def test_token_errors(session_factory, seed, dependencies) -> None:
    _, token = await _awaiting_address(session_factory, seed, dependencies)

    with pytest.raises(AddressTokenError) as unknown:
        await _complete(session_factory, dependencies, "missing-token", SHIPPING_ADDRESS, utc(2025, 12, 2))
    assert unknown.value.reason == "not_found"

    with pytest.raises(AddressTokenError) as incomplete:
        await _complete(session_factory, dependencies, token, {"name": "Riley"}, utc(2025, 12, 2))
    assert incomplete.value.reason == "incomplete_address"
    assert "address_line1" in str(incomplete.value)

    with pytest.raises(AddressTokenError) as expired:
        await _complete(session_factory, dependencies, token, SHIPPING_ADDRESS, utc(2025, 12, 9))
    assert expired.value.reason == "expired"


@pytest.mark.asyncio
async def test_overdue_requests_fail_their_execution(session_factory, seed, dependencies, email_backend) -> None:
    execution_id, token = await _awaiting_address(session_factory, seed, dependencies)

    async with session_factory() as session:
        service = PipelineServices(session, dependencies).address_collection()
        early = await service.expire_overdue(now=utc(2025, 12, 5))
        summary = await service.expire_overdue(now=utc(2025, 12, 9))

    assert early.counts == {}
    assert summary.counts == {"expired": 1}
    assert summary.details["expired"][0]["executionId"] == str(execution_id)

    async with session_factory() as session:
        execution = await session.get(GiftExecution, execution_id)
    assert execution.status == ExecutionStatusEnum.FAILED
    assert execution.address_collection_status == AddressCollectionStatusEnum.EXPIRED
    assert email_backend.sent_messages[-1]["Subject"] == "Gift for Riley could not be sent"

    with pytest.raises(AddressTokenError) as excinfo:
        await _complete(session_factory, dependencies, token, SHIPPING_ADDRESS, utc(2025, 12, 9))
    assert excinfo.value.reason == "expired"
