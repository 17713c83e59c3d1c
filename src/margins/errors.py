from __future__ import annotations


class MarginsError(Exception):
    pass


class RetrievalError(MarginsError):
    """Every fetch strategy failed for a URL."""

    def __init__(self, url: str, attempts: list[tuple[str, str]]) -> None:
        self.url = url
        self.attempts = attempts
        detail = "; ".join(f"{name}: {reason}" for name, reason in attempts) or "no strategies configured"
        super().__init__(f"could not fetch {url} ({detail})")


class StorageError(MarginsError):
    pass


class NotConfiguredError(MarginsError):
    pass


class RemoteError(MarginsError):
    def __init__(self, message: str, *, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class AuthExpiredError(RemoteError):
    pass


class PermissionDeniedError(RemoteError):
    pass


def classify_remote_error(status: int, code: str | None, message: str) -> RemoteError:
    """Map an HTTP status plus the API's status string onto the error taxonomy."""
    code_upper = (code or "").upper()
    if status == 401 or code_upper == "UNAUTHENTICATED":
        return AuthExpiredError(message, status=status, code=code)
    if code_upper == "PERMISSION_DENIED":
        return PermissionDeniedError(message, status=status, code=code)
    if status == 403:
        return AuthExpiredError(message, status=status, code=code)
    return RemoteError(message, status=status, code=code)


__all__ = [
    "MarginsError",
    "RetrievalError",
    "StorageError",
    "NotConfiguredError",
    "RemoteError",
    "AuthExpiredError",
    "PermissionDeniedError",
    "classify_remote_error",
]
