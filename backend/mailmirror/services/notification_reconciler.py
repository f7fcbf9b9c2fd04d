"""Apply one Gmail push notification to a user's mirror.

Push delivery is at-least-once and may reorder, so a notification at or below
the stored cursor is a normal no-op, and every added message is checked against
the Email table before anything is fetched.

The cursor is advanced to the notification's historyId, not to the highest
history record actually consumed. A notification for an older interval that
arrives after a newer one is therefore discarded as stale even if its messages
were never applied. Tracking max(stored cursor, max consumed historyId) would
close that gap.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..blob_store import BlobStore
from ..config import settings
from ..errors import (
    BaselineCursorMissing,
    MessageVanished,
    PartialHistoryOverflow,
    RemoteNotFound,
    ResyncRequired,
    UserNotFound,
)
from ..gmail_client import ClientFactory
from ..pubsub import GmailNotification
from ..repository import MailRepository
from ..user_lease import user_lease
from .ingest import ingest_message

logger = logging.getLogger(__name__)


class NotificationOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    RESYNC_SCHEDULED = "resync_scheduled"


@dataclass
class NotificationResult:
    outcome: NotificationOutcome
    user_id: int
    history_id: str
    previous_history_id: str
    added: int = 0
    skipped: int = 0


def _history_key(history_id: str) -> int:
    # Gmail history ids are decimal uint64 strings; compare numerically, "90" < "100".
    return int(history_id)


def apply_notification(
    notification: GmailNotification,
    repo: MailRepository,
    blobs: BlobStore,
    client_factory: ClientFactory,
    history_max_results: Optional[int] = None,
) -> NotificationResult:
    """
    Reconcile history since the stored cursor and advance it to notification.history_id.

    Raises UserNotFound, BaselineCursorMissing, PartialHistoryOverflow /
    HistoryCursorExpired / MessageVanished (resync required) or a
    RemoteFetchFailed subclass.
    A failure mid-loop leaves the cursor untouched; the retry starts from the
    same baseline and skips the messages already stored.
    """
    user = repo.get_user_by_email(notification.email_address)
    if user is None:
        raise UserNotFound(f"No user for {notification.email_address}")
    prev_history_id = user.prev_history_id
    if not prev_history_id:
        raise BaselineCursorMissing(
            f"User {user.id} has no baseline history id; register the Gmail watch first", user_id=user.id
        )

    if _history_key(notification.history_id) <= _history_key(prev_history_id):
        logger.info(
            f"User {user.id}: skipping stale notification historyId={notification.history_id} "
            f"(cursor at {prev_history_id})"
        )
        return NotificationResult(
            outcome=NotificationOutcome.STALE,
            user_id=user.id,
            history_id=notification.history_id,
            previous_history_id=prev_history_id,
        )

    client = client_factory(user)
    history = client.list_history_since(
        prev_history_id, max_results=history_max_results or settings.gmail_history_max_results
    )
    if history.more:
        raise PartialHistoryOverflow(
            f"History since {prev_history_id} spans more than one page; full resync required",
            user_id=user.id,
        )

    added = skipped = 0
    for message_id in history.added_message_ids():
        if repo.email_exists(message_id):
            logger.debug(f"Message {message_id} already mirrored; skipping")
            skipped += 1
            continue
        try:
            stored = ingest_message(client, repo, blobs, user.id, message_id)
        except RemoteNotFound as e:
            # Deleted since the history record was written.
            raise MessageVanished(
                f"Message {message_id} listed in history since {prev_history_id} no longer exists",
                user_id=user.id,
            ) from e
        if stored:
            added += 1
        else:
            skipped += 1

    repo.set_prev_history_id(user.id, notification.history_id)
    logger.info(
        f"User {user.id}: applied history {prev_history_id} -> {notification.history_id} "
        f"({added} added, {skipped} skipped)"
    )
    return NotificationResult(
        outcome=NotificationOutcome.APPLIED,
        user_id=user.id,
        history_id=notification.history_id,
        previous_history_id=prev_history_id,
        added=added,
        skipped=skipped,
    )


def handle_notification(
    notification: GmailNotification,
    repo: MailRepository,
    blobs: BlobStore,
    client_factory: ClientFactory,
) -> NotificationResult:
    """
    Push-trigger entry point: apply under the user's lease, and turn a
    resync-required condition into a scheduled full backfill.

    When history cannot be reconciled incrementally the backfill covers the
    interval (changed threads are re-fetched by historyId). The backfill is
    restarted from the first page even if one is in progress, since threads
    changed in the interval sort to the front of the listing. The cursor is
    moved to the notification's historyId to stop every later notification
    from hitting the same overflow.
    """
    user = repo.get_user_by_email(notification.email_address)
    if user is None:
        raise UserNotFound(f"No user for {notification.email_address}")
    user_id = user.id

    with user_lease(repo.db, user_id):
        try:
            return apply_notification(notification, repo, blobs, client_factory)
        except ResyncRequired as e:
            logger.warning(f"User {user_id}: {e}; scheduling full resync")
            previous = repo.get_prev_history_id(user_id) or ""
            repo.restart_pending_sync(user_id)
            repo.set_prev_history_id(user_id, notification.history_id)
            return NotificationResult(
                outcome=NotificationOutcome.RESYNC_SCHEDULED,
                user_id=user_id,
                history_id=notification.history_id,
                previous_history_id=previous,
            )
