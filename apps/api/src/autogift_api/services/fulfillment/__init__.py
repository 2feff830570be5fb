from .client import (
    FulfillmentClient,
    FulfillmentSubmission,
    FulfillmentSubmissionError,
    missing_address_fields,
)

__all__ = [
    "FulfillmentClient",
    "FulfillmentSubmission",
    "FulfillmentSubmissionError",
    "missing_address_fields",
]
