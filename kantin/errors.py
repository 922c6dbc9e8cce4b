"""Domain errors raised by `crud` and mapped to HTTP responses in `main`."""


class KantinError(ValueError):
    status_code = 400


class ValidationError(KantinError):
    status_code = 400


class InsufficientFundsError(KantinError):
    status_code = 400


class SpendingLimitError(KantinError):
    status_code = 400


class AuthenticationError(KantinError):
    status_code = 401


class PermissionDeniedError(KantinError):
    status_code = 403


class NotFoundError(KantinError):
    status_code = 404


class ConflictError(KantinError):
    status_code = 409
