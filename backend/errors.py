"""Error taxonomy shared by the scheduling engine and the API layer."""


class TrackerError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TrackerError):
    """Malformed date, missing field, or outcome outside the allowed set."""
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class NotFoundError(TrackerError):
    """Referenced task doesn't exist or isn't owned by the caller."""
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(TrackerError):
    status_code = 409
    code = "CONFLICT"


class TransactionError(TrackerError):
    """A multi-write operation failed and was rolled back."""
    status_code = 500
    code = "TRANSACTION_FAILED"


class TransientStoreError(TrackerError):
    """Store temporarily unavailable (locked, busy). Safe to retry."""
    status_code = 503
    code = "STORE_UNAVAILABLE"
