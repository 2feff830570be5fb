from .scheduled_processor import CapturedOrderPersistenceError, ScheduledOrderProcessor
from .state_machine import (
    InvalidOrderTransitionError,
    OrderStateError,
    OrderStateMachine,
    StaleOrderTransitionError,
)

__all__ = [
    "CapturedOrderPersistenceError",
    "InvalidOrderTransitionError",
    "OrderStateError",
    "OrderStateMachine",
    "ScheduledOrderProcessor",
    "StaleOrderTransitionError",
]
