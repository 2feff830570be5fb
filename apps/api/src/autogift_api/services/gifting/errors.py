"""Errors raised by the gifting services."""

from __future__ import annotations


class GiftResolutionError(RuntimeError):
    """A rule occurrence cannot progress: no date, gift, address or payment method."""

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class ApprovalError(RuntimeError):
    """Base exception for approval decisions."""


class ExecutionNotFoundError(ApprovalError):
    pass


class ApprovalStateError(ApprovalError):
    """The execution is not awaiting a decision."""

    def __init__(self, execution_id: object, status: str) -> None:
        super().__init__(f"Execution {execution_id} is {status} and cannot be decided")
        self.execution_id = execution_id
        self.status = status


class InvalidSelectionError(ApprovalError):
    """Selected product ids are not part of the proposal."""


class PaymentMethodMissingError(ApprovalError):
    pass


class OrderLinkageError(RuntimeError):
    """An order exists but could not be linked to its execution.

    Never caught inside the pipeline: the order may already hold funds.
    """

    def __init__(self, message: str, *, order_id: object, execution_id: object | None) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.execution_id = execution_id


class AddressTokenError(RuntimeError):
    """The address collection token is unknown, used or expired."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


__all__ = [
    "AddressTokenError",
    "ApprovalError",
    "ApprovalStateError",
    "ExecutionNotFoundError",
    "GiftResolutionError",
    "InvalidSelectionError",
    "OrderLinkageError",
    "PaymentMethodMissingError",
]
