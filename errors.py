"""
Error taxonomy for the storefront services.

Services raise these; the API layer turns them into the
``{"success": false, "message": ...}`` envelope with ``status_code``.
"""


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StoreError):
    status_code = 404


class Forbidden(StoreError):
    status_code = 403


class InvalidState(StoreError):
    status_code = 400


class CouponExpired(InvalidState):
    pass


class InsufficientStock(StoreError):
    status_code = 400


class ValidationFailed(StoreError):
    status_code = 400


class MinimumNotMet(ValidationFailed):
    pass


class LimitExceeded(StoreError):
    status_code = 400


class Conflict(StoreError):
    status_code = 409
