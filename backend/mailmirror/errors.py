"""Error taxonomy for the sync core.

Every failure the orchestrator or reconciler can surface is one of these. Each
carries an ErrorKind so the trigger boundary can build a structured response
without inspecting messages, and a ``retryable`` flag telling the scheduler or
push redelivery whether trying the same unit again can help.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    REMOTE_TRANSIENT = "remote_transient"
    REMOTE_FAILED = "remote_failed"
    NOT_FOUND = "not_found"
    RESYNC_REQUIRED = "resync_required"
    STORAGE = "storage"
    BUSY = "busy"


class MailSyncError(Exception):
    kind: ErrorKind = ErrorKind.REMOTE_FAILED
    retryable: bool = False

    def __init__(self, message: str, *, user_id: Optional[int] = None):
        super().__init__(message)
        self.user_id = user_id


# Not-found conditions. Each is reported on its own, never defaulted.

class UserNotFound(MailSyncError):
    kind = ErrorKind.NOT_FOUND


class BaselineCursorMissing(MailSyncError):
    """User has no prev_history_id; push delivery was never authorized."""
    kind = ErrorKind.NOT_FOUND


class BlobNotFound(MailSyncError):
    kind = ErrorKind.NOT_FOUND


# Remote (Gmail) failures

class RemoteFetchFailed(MailSyncError):
    kind = ErrorKind.REMOTE_FAILED


class AuthExpiredError(RemoteFetchFailed):
    """Token expired or revoked. Refreshing is the sign-in flow's job, not ours."""
    kind = ErrorKind.AUTH_EXPIRED


class RemoteTransientError(RemoteFetchFailed):
    """Network error or 5xx. Retried by the scheduler / push redelivery, not here."""
    kind = ErrorKind.REMOTE_TRANSIENT
    retryable = True


class RemoteNotFound(RemoteFetchFailed):
    kind = ErrorKind.NOT_FOUND


# History cannot be reconciled incrementally; a full backfill must run instead.

class ResyncRequired(MailSyncError):
    kind = ErrorKind.RESYNC_REQUIRED


class PartialHistoryOverflow(ResyncRequired):
    """history.list returned more than one page for a single notification."""


class HistoryCursorExpired(ResyncRequired):
    """Gmail no longer has history back to the stored cursor (HTTP 404)."""


class MessageVanished(ResyncRequired):
    """A message listed in history no longer exists (HTTP 404 on messages.get)."""


# Local failures

class BlobStoreError(MailSyncError):
    kind = ErrorKind.STORAGE
    retryable = True


class SyncBusy(MailSyncError):
    """Another trigger holds this user's lease."""
    kind = ErrorKind.BUSY
    retryable = True
