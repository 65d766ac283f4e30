# errors.py
"""Domain errors raised by the slot service.

Every error carries the HTTP status and the machine readable code the routes
report back to the client.
"""


class SlotServiceError(Exception):
    status_code = 400
    code = "SLOT_ERROR"

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def to_detail(self):
        detail = {"message": self.message, "code": self.code}
        if self.errors:
            detail["errors"] = self.errors
        return detail


class SlotValidationError(SlotServiceError):
    code = "VALIDATION_ERROR"


class OverlapConflictError(SlotServiceError):
    code = "SLOT_OVERLAP"


class CapacityProtectionError(SlotServiceError):
    code = "CAPACITY_PROTECTED"


class LimitExceededError(SlotServiceError):
    code = "SLOT_LIMIT_EXCEEDED"


class OwnershipError(SlotServiceError):
    status_code = 403
    code = "FORBIDDEN"


class PermissionDeniedError(SlotServiceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(SlotServiceError):
    status_code = 404
    code = "NOT_FOUND"


class TransactionConflictError(SlotServiceError):
    status_code = 409
    code = "TRANSACTION_CONFLICT"
