class AppError(Exception):
    """Base error carrying the HTTP status the API should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class InvalidTransition(ValidationError):
    """A lifecycle change that the current status does not allow."""


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class GatewayError(AppError):
    """Failure reported by the payment provider. The provider message is surfaced as-is."""

    status_code = 400

    def __init__(self, message: str, status_code: int = None, code: str = None):
        super().__init__(message, status_code)
        self.code = code


class InternalError(AppError):
    status_code = 500
