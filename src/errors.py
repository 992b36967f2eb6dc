"""Typed errors raised by the order engine."""
from typing import Optional


class StockOrderError(Exception):
    """Base error with a stable code and a user-facing message."""

    code = "stock_order_error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidRequest(StockOrderError):
    code = "invalid_request"
    http_status = 400


class ResolutionFailure(StockOrderError):
    """No rule could identify the site and asset id of an input."""

    code = "resolution_failed"
    http_status = 422

    def __init__(self, value: str):
        super().__init__(
            f"Could not identify the stock site and asset id for {value!r}. "
            "Please provide the site and id explicitly."
        )
        self.value = value


class InsufficientBalance(StockOrderError):
    code = "insufficient_balance"
    http_status = 402

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(f"Insufficient balance. Required: {required} pts, Available: {available} pts")
        self.user_id = user_id
        self.required = required
        self.available = available


class DuplicateCharge(StockOrderError):
    code = "duplicate_charge"
    http_status = 409

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} has already been charged")
        self.order_id = order_id


class TaskNotFound(StockOrderError):
    code = "task_not_found"
    http_status = 404

    def __init__(self, task_id: str):
        super().__init__(f"Order {task_id} not found")
        self.task_id = task_id


class BatchNotFound(StockOrderError):
    code = "batch_not_found"
    http_status = 404

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id


class TaskNotCommittable(StockOrderError):
    code = "task_not_committable"
    http_status = 409


class InvalidTransition(StockOrderError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"Order {task_id} cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class VendorError(StockOrderError):
    code = "vendor_error"
    http_status = 502


class VendorRejected(VendorError):
    """Business-level failure reported by the vendor."""

    code = "vendor_rejected"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class VendorUnavailable(VendorError):
    """Transport-level failure; the caller may try again."""

    code = "vendor_unavailable"
    http_status = 503

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class VendorTimeout(VendorUnavailable):
    code = "vendor_timeout"
    http_status = 504


class PollTimeout(StockOrderError):
    code = "poll_timeout"
    http_status = 504

    def __init__(self, task_id: str, attempts: int):
        super().__init__(f"Order {task_id} did not finish after {attempts} status checks")
        self.task_id = task_id
        self.attempts = attempts
