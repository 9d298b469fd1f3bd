"""
Error taxonomy for the marketplace API.

Every error carries a human-readable message and the HTTP status it maps to.
The exception handlers in main.py render them as ``{"message": ...}``.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class EmptyCart(ValidationError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class Unauthorized(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class ConflictOrInconsistency(MarketplaceError):
    status_code = 409
