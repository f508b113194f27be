from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="not_found",
            retryable=False,
            http_status=404,
        )


class ConflictError(ApiError):
    """State precondition violated: wrong status, already processed, mismatched reference."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="conflict",
            retryable=False,
            http_status=409,
        )


class ForbiddenError(ApiError):
    def __init__(self, message: str = "operation not permitted", *, code: str = "FORBIDDEN") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="forbidden",
            retryable=False,
            http_status=403,
        )


class UnauthorizedError(ApiError):
    def __init__(self, message: str, *, code: str = "AUTH_UNAUTHORIZED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )


class RateLimitedError(ApiError):
    def __init__(self, message: str, *, retry_after_s: int, code: str = "RATE_LIMIT_EXCEEDED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="rate_limited",
            retryable=True,
            http_status=429,
        )
        self.retry_after_s = max(1, int(retry_after_s))


class DependencyError(ApiError):
    """An external collaborator failed after the core committed its own state."""

    def __init__(self, message: str, *, collaborator: str, code: str = "DEPENDENCY_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="dependency",
            retryable=True,
            http_status=502,
        )
        self.collaborator = collaborator
