from __future__ import annotations

from datetime import timedelta


class SentinelError(Exception):
    pass


class ValidationError(SentinelError):
    pass


class PolicyParseError(ValidationError):
    pass


class PolicyValidationError(ValidationError):
    pass


class AuthorizationError(SentinelError):
    pass


class ContextCancelledError(SentinelError):
    pass


class StoreError(SentinelError):
    """A backend call failed. Always raised ``from`` the underlying error."""

    def __init__(self, message: str, *, table: str = "", operation: str = "") -> None:
        self.table = table
        self.operation = operation
        prefix = ""
        if table or operation:
            prefix = f"{table or '-'} {operation or '-'}: "
        super().__init__(prefix + message)


class NotFoundError(SentinelError):
    pass


class PolicyNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class RequestNotFoundError(NotFoundError):
    pass


class BreakGlassNotFoundError(NotFoundError):
    pass


class ConflictError(SentinelError):
    pass


class RecordExistsError(ConflictError):
    pass


class SessionExistsError(RecordExistsError):
    pass


class SessionAlreadyRevokedError(ConflictError):
    def __init__(self, message: str = "session already revoked") -> None:
        super().__init__(message)


class SessionExpiredError(ConflictError):
    def __init__(self, message: str = "session already expired") -> None:
        super().__init__(message)


class InvalidTransitionError(ConflictError):
    pass


class ActiveBreakGlassExistsError(ConflictError):
    pass


class ConcurrentModificationError(ConflictError):
    pass


class RateLimitExceededError(AuthorizationError):
    def __init__(self, message: str, *, retry_after: timedelta = timedelta(0)) -> None:
        self.retry_after = retry_after
        super().__init__(message)
