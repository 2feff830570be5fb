"""Gift rule orchestration, approval and recovery services."""

from .addresses import AddressCollectionService, AddressCompletion, resolve_shipping_address
from .approval import ApprovalResult, ApprovalService
from .errors import (
    AddressTokenError,
    ApprovalError,
    ApprovalStateError,
    ExecutionNotFoundError,
    GiftResolutionError,
    InvalidSelectionError,
    OrderLinkageError,
    PaymentMethodMissingError,
)
from .orchestrator import AutoGiftOrchestrator
from .payment_retry import PaymentRetryProcessor
from .selection import GiftSelector

__all__ = [
    "AddressCollectionService",
    "AddressCompletion",
    "AddressTokenError",
    "ApprovalError",
    "ApprovalResult",
    "ApprovalService",
    "ApprovalStateError",
    "AutoGiftOrchestrator",
    "ExecutionNotFoundError",
    "GiftResolutionError",
    "GiftSelector",
    "InvalidSelectionError",
    "OrderLinkageError",
    "PaymentMethodMissingError",
    "PaymentRetryProcessor",
    "resolve_shipping_address",
]
