"""Gmail API client: typed thread/message/history payloads, error translation, rate limiting.

Raw API responses are validated and normalized here into the dataclasses below;
nothing past this module sees an open-ended Gmail dict.
"""
import base64
import html
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import message_from_bytes, policy
from email.utils import parsedate_to_datetime
from typing import Callable, List, Optional, Protocol

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from .config import settings
from .errors import (
    AuthExpiredError,
    HistoryCursorExpired,
    RemoteFetchFailed,
    RemoteNotFound,
    RemoteTransientError,
)
from .models import User

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


@dataclass(frozen=True)
class ThreadSummary:
    id: str
    history_id: str


@dataclass
class ThreadPage:
    items: List[ThreadSummary]
    next_page_token: Optional[str] = None


@dataclass(frozen=True)
class ThreadMessage:
    id: str
    labels: List[str] = field(default_factory=list)
    snippet: str = ""
    internal_date: Optional[datetime] = None


@dataclass
class ThreadDetail:
    id: str
    history_id: str
    snippet: str
    labels: List[str]
    last_update: Optional[datetime]
    messages: List[ThreadMessage]


@dataclass
class MessageDetail:
    id: str
    thread_id: str
    body_html: str
    subject: str
    from_address: str
    to_address: str
    date: Optional[datetime]
    labels: List[str]
    snippet: str = ""


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    messages_added: List[str]


@dataclass
class HistoryPage:
    entries: List[HistoryEntry]
    more: bool
    history_id: Optional[str] = None

    def added_message_ids(self) -> List[str]:
        """Added message ids in history order, each once."""
        seen: set[str] = set()
        ordered: List[str] = []
        for entry in self.entries:
            for mid in entry.messages_added:
                if mid not in seen:
                    seen.add(mid)
                    ordered.append(mid)
        return ordered


@dataclass(frozen=True)
class WatchResponse:
    history_id: str
    expiration: Optional[datetime]


class MailboxClient(Protocol):
    """What the orchestrator and reconciler need from the remote mailbox."""

    def list_thread_summaries(self, page_token: Optional[str] = None, max_results: int = 100) -> ThreadPage: ...

    def get_thread_detail(self, thread_id: str) -> ThreadDetail: ...

    def get_message_detail(self, message_id: str) -> MessageDetail: ...

    def list_history_since(self, cursor: str, max_results: int = 500) -> HistoryPage: ...

    def register_watch(self, label_ids: List[str], topic_name: str) -> WatchResponse: ...


ClientFactory = Callable[[User], MailboxClient]


# ----------------------------
# Normalization
# ----------------------------

def _to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_epoch_ms(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def _require_id(raw: dict, key: str, what: str) -> str:
    value = raw.get(key)
    if not value:
        raise RemoteFetchFailed(f"Malformed {what} response: missing {key}")
    return str(value)


def _decode_base64url(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def parse_thread_page(raw: dict) -> ThreadPage:
    items = [
        ThreadSummary(id=_require_id(t, "id", "thread summary"), history_id=str(t.get("historyId", "")))
        for t in raw.get("threads", []) or []
    ]
    return ThreadPage(items=items, next_page_token=raw.get("nextPageToken") or None)


def parse_thread_detail(raw: dict) -> ThreadDetail:
    thread_id = _require_id(raw, "id", "thread")
    messages = [
        ThreadMessage(
            id=_require_id(m, "id", "thread message"),
            labels=list(m.get("labelIds") or []),
            snippet=m.get("snippet") or "",
            internal_date=_from_epoch_ms(m.get("internalDate")),
        )
        for m in raw.get("messages", []) or []
    ]
    labels: List[str] = []
    for m in messages:
        for label in m.labels:
            if label not in labels:
                labels.append(label)
    dates = [m.internal_date for m in messages if m.internal_date is not None]
    snippet = raw.get("snippet") or (messages[-1].snippet if messages else "")
    return ThreadDetail(
        id=thread_id,
        history_id=str(raw.get("historyId", "")),
        snippet=snippet,
        labels=labels,
        last_update=max(dates) if dates else None,
        messages=messages,
    )


def _parse_date_header(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _to_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None


def parse_message_detail(raw: dict) -> MessageDetail:
    """Normalize a messages.get(format="raw") response."""
    message_id = _require_id(raw, "id", "message")
    thread_id = _require_id(raw, "threadId", "message")
    if not raw.get("raw"):
        raise RemoteFetchFailed(f"Malformed message response: {message_id} has no raw content")
    msg = message_from_bytes(_decode_base64url(raw["raw"]), policy=policy.default)

    body_html = ""
    part = msg.get_body(preferencelist=("html",))
    if part is not None:
        body_html = part.get_content()
    else:
        part = msg.get_body(preferencelist=("plain",))
        if part is not None:
            body_html = f"<pre>{html.escape(part.get_content())}</pre>"

    to_address = ""
    to_header = msg.get("To")
    if to_header is not None:
        addresses = getattr(to_header, "addresses", ())
        to_address = addresses[0].addr_spec if addresses else str(to_header)

    date = _parse_date_header(str(msg.get("Date") or "")) or _from_epoch_ms(raw.get("internalDate"))
    return MessageDetail(
        id=message_id,
        thread_id=thread_id,
        body_html=body_html,
        subject=str(msg.get("Subject") or ""),
        from_address=str(msg.get("From") or ""),
        to_address=to_address,
        date=date,
        labels=list(raw.get("labelIds") or []),
        snippet=raw.get("snippet") or "",
    )


def parse_history_page(raw: dict) -> HistoryPage:
    entries = []
    for record in raw.get("history", []) or []:
        added = []
        for item in record.get("messagesAdded", []) or []:
            mid = (item.get("message") or {}).get("id")
            if mid:
                added.append(str(mid))
        entries.append(HistoryEntry(id=str(record.get("id", "")), messages_added=added))
    return HistoryPage(
        entries=entries,
        more=bool(raw.get("nextPageToken")),
        history_id=str(raw["historyId"]) if raw.get("historyId") else None,
    )


# ----------------------------
# Transport
# ----------------------------

def _translate_http_error(e: HttpError, what: str) -> RemoteFetchFailed:
    status = e.resp.status
    if status in (401, 403):
        return AuthExpiredError(f"Gmail rejected credentials during {what} (HTTP {status})")
    if status == 404:
        return RemoteNotFound(f"Gmail returned 404 for {what}")
    if status == 429 or status >= 500:
        return RemoteTransientError(f"Gmail {what} failed with HTTP {status}")
    return RemoteFetchFailed(f"Gmail {what} failed with HTTP {status}")


# Rate limiting: exponential backoff on 429 only
def _with_backoff(fn, what: str, max_retries: Optional[int] = None):
    retries = settings.gmail_rate_limit_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return fn()
        except HttpError as e:
            if e.resp.status == 429 and attempt < retries:
                time.sleep(2 ** attempt)
                attempt += 1
                continue
            raise _translate_http_error(e, what) from e
        except RefreshError as e:
            raise AuthExpiredError(f"Gmail token refresh failed during {what}") from e
        except (TransportError, HttpLib2Error, OSError) as e:
            raise RemoteTransientError(f"Gmail {what} failed: {e}") from e


class GmailMailboxClient:
    """Typed facade over the Gmail v1 discovery service for one user."""

    def __init__(self, service):
        self.service = service

    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "GmailMailboxClient":
        return cls(build("gmail", "v1", credentials=credentials, cache_discovery=False))

    def list_thread_summaries(self, page_token: Optional[str] = None, max_results: int = 100) -> ThreadPage:
        raw = _with_backoff(
            lambda: self.service.users()
            .threads()
            .list(userId="me", maxResults=max_results, pageToken=page_token or None)
            .execute(),
            "threads.list",
        )
        return parse_thread_page(raw)

    def get_thread_detail(self, thread_id: str) -> ThreadDetail:
        raw = _with_backoff(
            lambda: self.service.users().threads().get(userId="me", id=thread_id, format="minimal").execute(),
            f"threads.get({thread_id})",
        )
        return parse_thread_detail(raw)

    def get_message_detail(self, message_id: str) -> MessageDetail:
        raw = _with_backoff(
            lambda: self.service.users().messages().get(userId="me", id=message_id, format="raw").execute(),
            f"messages.get({message_id})",
        )
        return parse_message_detail(raw)

    def list_history_since(self, cursor: str, max_results: int = 500) -> HistoryPage:
        """One page of messageAdded history after cursor. page.more means entries were left behind."""
        try:
            raw = _with_backoff(
                lambda: self.service.users()
                .history()
                .list(
                    userId="me",
                    startHistoryId=cursor,
                    historyTypes=["messageAdded"],
                    maxResults=max_results,
                )
                .execute(),
                "history.list",
            )
        except RemoteNotFound as e:
            raise HistoryCursorExpired(f"History cursor {cursor} is no longer available") from e
        return parse_history_page(raw)

    def register_watch(self, label_ids: List[str], topic_name: str) -> WatchResponse:
        raw = _with_backoff(
            lambda: self.service.users()
            .watch(
                userId="me",
                body={"labelIds": label_ids, "topicName": topic_name, "labelFilterBehavior": "INCLUDE"},
            )
            .execute(),
            "users.watch",
        )
        return WatchResponse(
            history_id=_require_id(raw, "historyId", "watch"),
            expiration=_from_epoch_ms(raw.get("expiration")),
        )

    def stop_watch(self) -> None:
        _with_backoff(lambda: self.service.users().stop(userId="me").execute(), "users.stop")


# ----------------------------
# Credentials
# ----------------------------

def credentials_for_user(user: User) -> Credentials:
    if not user.access_token and not user.refresh_token:
        raise AuthExpiredError(f"User {user.id} has no Gmail credentials", user_id=user.id)
    return Credentials(
        token=user.access_token,
        refresh_token=user.refresh_token,
        token_uri=settings.google_token_uri,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        scopes=SCOPES,
        expiry=user.token_expires_at,
    )


def client_for_user(repo, user: User) -> GmailMailboxClient:
    """
    Build a client from the user's stored tokens, refreshing them up front when
    expired so the new access token is persisted once instead of per request.
    """
    creds = credentials_for_user(user)
    if not creds.valid:
        if not creds.refresh_token:
            raise AuthExpiredError(f"User {user.id} access token expired and no refresh token", user_id=user.id)
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthExpiredError(f"Gmail token refresh failed for user {user.id}", user_id=user.id) from e
        except TransportError as e:
            raise RemoteTransientError(f"Gmail token refresh failed for user {user.id}: {e}", user_id=user.id) from e
        repo.save_user_tokens(user.id, access_token=creds.token, expires_at=creds.expiry)
        logger.info(f"Refreshed Gmail access token for user {user.id}")
    return GmailMailboxClient.from_credentials(creds)
