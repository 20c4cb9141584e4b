"""
Typed failures for the sync core.

Provider adapters classify their native errors into these types at the
adapter boundary so the orchestrator never sees raw httpx, googleapiclient
or imaplib exceptions.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync core failures."""

    code = "SyncError"
    retryable = False
    safe_message = "Sync failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.safe_message)

    def summary(self) -> dict:
        """Caller-safe description (no provider detail)."""
        return {"code": self.code, "message": self.safe_message}


class Unauthorized(SyncError):
    code = "Unauthorized"
    safe_message = "Not authorized"


class NotOwned(Unauthorized):
    code = "NotOwned"
    safe_message = "Account does not belong to the current user"


class AccountNotFound(SyncError):
    code = "AccountNotFound"
    safe_message = "Account not found"


class AlreadySyncing(SyncError):
    code = "AlreadySyncing"
    safe_message = "Sync already in progress. Please try again later."


class SetupRequired(SyncError):
    code = "SetupRequired"
    safe_message = "Folder setup must be confirmed before syncing"


class ProviderError(SyncError):
    """Failure reported by a provider adapter."""
    code = "ProviderError"
    safe_message = "Email provider error"


class CredentialExpired(ProviderError):
    code = "CredentialExpired"
    safe_message = "Authentication failed - reconnect account"


class ProviderRateLimited(ProviderError):
    code = "ProviderRateLimited"
    retryable = True
    safe_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderTransientError(ProviderError):
    code = "ProviderTransientError"
    retryable = True
    safe_message = "Email provider temporarily unavailable"


class ProviderPermanentError(ProviderError):
    code = "ProviderPermanentError"
    safe_message = "Email provider rejected the request - check the account"


class FolderUnavailable(ProviderPermanentError):
    """A single folder is gone or unreadable; other folders are unaffected."""
    code = "FolderUnavailable"
    safe_message = "Folder no longer available"


class StorageError(SyncError):
    code = "StorageError"
    safe_message = "Could not save synced mail"


class RunTimeout(SyncError):
    code = "RunTimeout"
    safe_message = "Sync timed out. Please try syncing again."


def parse_retry_after(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_http_status(
    status: int,
    detail: str = "",
    retry_after=None,
    folder_scoped: bool = False
) -> ProviderError:
    """
    Map an HTTP status from a REST provider to a typed failure.

    Args:
        status: HTTP status code
        detail: Provider message, kept for logs only
        retry_after: Retry-After header value, if any
        folder_scoped: True when the request addressed a single folder

    Returns:
        ProviderError subclass instance (not raised)
    """
    message = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"

    if status == 401:
        return CredentialExpired(message)
    if status == 429:
        return ProviderRateLimited(message, retry_after=parse_retry_after(retry_after))
    if status == 503 and retry_after is not None:
        return ProviderRateLimited(message, retry_after=parse_retry_after(retry_after))
    if status == 408 or status >= 500:
        return ProviderTransientError(message)
    if status == 404 and folder_scoped:
        return FolderUnavailable(message)
    return ProviderPermanentError(message)


def _all_subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _all_subclasses(sub)


def safe_summary(code: Optional[str]) -> Optional[dict]:
    """Caller-safe summary for a stored error code."""
    if not code:
        return None
    for cls in [SyncError, *_all_subclasses(SyncError)]:
        if cls.code == code:
            return {"code": code, "message": cls.safe_message}
    return {"code": code, "message": SyncError.safe_message}
