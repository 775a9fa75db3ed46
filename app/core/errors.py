"""
Domain exceptions raised by the fulfillment core.

Business-rule outcomes of stock deduction (insufficient stock, missing or empty
recipe) are not exceptions; they are reported per line in a BatchResult.
"""
from typing import Any, Optional


class FulfillmentError(Exception):
    """Base class for every error the core surfaces to its callers."""
    code = "fulfillment_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidStatus(FulfillmentError):
    code = "invalid_status"
    status_code = 400


class InvalidOrder(FulfillmentError):
    code = "invalid_order"
    status_code = 400


class NotFound(FulfillmentError):
    code = "not_found"
    status_code = 404


class Forbidden(FulfillmentError):
    code = "forbidden"
    status_code = 403


class IllegalTransition(FulfillmentError):
    code = "illegal_transition"
    status_code = 409


class TransitionConflict(IllegalTransition):
    """Another writer changed the order between our read and our write."""
    code = "transition_conflict"


class IllegalState(FulfillmentError):
    code = "illegal_state"
    status_code = 409


class StorageError(FulfillmentError):
    """
    The persistence layer failed. During a deduction batch, `partial` holds the
    BatchResult of the lines processed before the failure.
    """
    code = "storage_error"
    status_code = 503

    def __init__(self, message: str, partial: Optional[Any] = None, **details: Any):
        super().__init__(message, **details)
        self.partial = partial


class NotificationSinkError(FulfillmentError):
    """A notification sink failed. Logged by the fan-out, never raised to callers."""
    code = "notification_sink_error"
    status_code = 502

    def __init__(self, sink: str, message: str, **details: Any):
        super().__init__(f"{sink}: {message}", **details)
        self.sink = sink
