"""
Application errors.

Services raise these; main.py renders them as ``{"success": false, "message": ...}``
with the status code carried by the class.
"""

CONCURRENCY_MESSAGE = "Order was modified by another request, reload and try again"


class AppError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(AppError):
    status_code = 404


class ValidationError(AppError):
    status_code = 400


class StateConflictError(AppError):
    status_code = 400


class ConcurrencyError(AppError):
    status_code = 409


class AuthorizationError(AppError):
    status_code = 403


class GatewayError(AppError):
    status_code = 502


class SignatureError(GatewayError):
    status_code = 400
