from .execution import (  # noqa: F401
    APPROVABLE_EXECUTION_STATUSES,
    AddressCollectionStatusEnum,
    ExecutionStatusEnum,
    GiftExecution,
)
from .gifting_rule import GiftEventTypeEnum, GiftingRule  # noqa: F401
from .order import Order, OrderStatusEnum, PaymentStatusEnum  # noqa: F401
from .payment_attempt import PaymentAttempt, PaymentAttemptStatusEnum  # noqa: F401
from .pending_address import PendingRecipientAddress  # noqa: F401
from .pipeline_event import PipelineEvent, PipelineEventTypeEnum  # noqa: F401
from .pipeline_run import PipelineRun  # noqa: F401
from .user import User  # noqa: F401
from .wishlist import WishlistItem  # noqa: F401
