"""
Error taxonomy

Every domain failure is an HTTPException carrying a short machine readable
``code`` next to the human message, so handlers can simply raise and the app
renders ``{"detail": ..., "code": ...}``.
"""

from fastapi import HTTPException


class ShopError(HTTPException):
    status_code = 500
    code = "error"

    def __init__(self, detail: str):
        super().__init__(status_code=self.status_code, detail=detail)


class ValidationError(ShopError):
    status_code = 400
    code = "validation_error"


class InvalidOption(ShopError):
    status_code = 400
    code = "invalid_option"


class InsufficientStock(ShopError):
    status_code = 400
    code = "insufficient_stock"


class InvalidState(ShopError):
    status_code = 400
    code = "invalid_state"


class Unauthorized(ShopError):
    status_code = 401
    code = "unauthorized"


class Forbidden(ShopError):
    status_code = 403
    code = "forbidden"


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class InternalError(ShopError):
    status_code = 500
    code = "internal_error"
