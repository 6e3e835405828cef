# core/errors.py
"""
Exception hierarchy shared by services and HTTP handlers
"""


class ServiceError(Exception):
    """Base exception carrying the HTTP status it maps to"""
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(ServiceError):
    status_code = 400


class UnauthorizedError(ServiceError):
    status_code = 401


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConfigurationError(ServiceError):
    """Required provider credentials are missing"""
    status_code = 500


class ProviderError(ServiceError):
    """A third-party API (Stripe, PayPal, SES, R2) rejected the call"""
    status_code = 502
