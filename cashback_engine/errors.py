class EngineError(Exception):
    """Base class for errors raised by the cashback engine."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Rejected input; raised before any write."""


class NotFoundError(ValidationError):
    status_code = 404


class InsufficientBalanceError(EngineError):
    def __init__(self, message: str, *, balance=None, requested=None):
        super().__init__(message)
        self.balance = balance
        self.requested = requested


class ExternalSyncError(EngineError):
    """The external store-credit platform refused or failed a call."""

    status_code = 502

    def __init__(self, message: str, *, user_errors: list | None = None):
        super().__init__(message)
        self.user_errors = user_errors or []


class ConcurrencyConflict(EngineError):
    status_code = 409
