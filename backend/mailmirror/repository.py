"""Durable repository for users' mirrors: Thread, Email, PendingSync and the change cursor.

Every write commits before returning, so a unit of work that completed is
durable even if the page or notification it belongs to fails later.
"""
import logging
import random
import time
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .gmail_client import MessageDetail, ThreadDetail
from .models import Email, PendingSync, Thread, User

logger = logging.getLogger(__name__)


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "sqlite_busy" in msg


def _commit_with_retry(db: Session, *, max_retries: int = 6, base_sleep_s: float = 0.05) -> None:
    """
    SQLite can transiently raise 'database is locked' while a backfill and a push
    handler write concurrently. Retry commits with exponential backoff + jitter.
    """
    attempt = 0
    while True:
        try:
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            sleep_s = min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05)
            time.sleep(sleep_s)
            attempt += 1


class MailRepository:
    def __init__(self, db: Session):
        self.db = db

    # Users and the change cursor

    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def get_prev_history_id(self, user_id: int) -> Optional[str]:
        row = self.db.query(User.prev_history_id).filter(User.id == user_id).first()
        return row[0] if row else None

    def set_prev_history_id(self, user_id: int, history_id: str) -> None:
        self.db.query(User).filter(User.id == user_id).update(
            {User.prev_history_id: str(history_id), User.updated_at: datetime.utcnow()},
            synchronize_session="fetch",
        )
        _commit_with_retry(self.db)

    def clear_prev_history_id(self, user_id: int) -> None:
        self.db.query(User).filter(User.id == user_id).update(
            {User.prev_history_id: None}, synchronize_session="fetch"
        )
        _commit_with_retry(self.db)

    def save_user_tokens(self, user_id: int, *, access_token: str, expires_at: Optional[datetime]) -> None:
        self.db.query(User).filter(User.id == user_id).update(
            {User.access_token: access_token, User.token_expires_at: expires_at},
            synchronize_session="fetch",
        )
        _commit_with_retry(self.db)

    def set_watch_expiration(self, user_id: int, expiration: Optional[datetime]) -> None:
        self.db.query(User).filter(User.id == user_id).update(
            {User.watch_expiration: expiration}, synchronize_session="fetch"
        )
        _commit_with_retry(self.db)

    def users_with_watch_expiring_before(self, cutoff: datetime) -> List[User]:
        return (
            self.db.query(User)
            .filter(User.watch_expiration.isnot(None), User.watch_expiration < cutoff)
            .order_by(User.watch_expiration)
            .all()
        )

    # Threads

    def get_thread(self, user_id: int, thread_id: str) -> Optional[Thread]:
        return (
            self.db.query(Thread)
            .filter(Thread.user_id == user_id, Thread.thread_id == thread_id)
            .first()
        )

    def upsert_thread(self, user_id: int, detail: ThreadDetail) -> Tuple[Thread, bool]:
        """Create the thread or overwrite its mutable fields. Returns (thread, created)."""
        row = self.get_thread(user_id, detail.id)
        created = row is None
        if created:
            row = Thread(user_id=user_id, thread_id=detail.id)
            self.db.add(row)
        row.snippet = detail.snippet
        row.history_id = detail.history_id
        row.labels = list(detail.labels)
        row.last_update = detail.last_update
        try:
            _commit_with_retry(self.db)
        except IntegrityError:
            # Lost a create race with another trigger; apply our fields to the winner.
            self.db.rollback()
            if not created:
                raise
            return self.upsert_thread(user_id, detail)
        return row, created

    # Emails

    def get_email(self, message_id: str) -> Optional[Email]:
        return self.db.query(Email).filter(Email.message_id == message_id).first()

    def email_exists(self, message_id: str) -> bool:
        return self.db.query(Email.id).filter(Email.message_id == message_id).first() is not None

    def create_email(self, user_id: int, thread_id: str, detail: MessageDetail, snippet: Optional[str] = None) -> bool:
        """
        Create the Email row if absent. Never updates an existing row.
        Returns False when the row already existed (including a concurrent insert).
        """
        if self.email_exists(detail.id):
            return False
        self.db.add(Email(
            message_id=detail.id,
            user_id=user_id,
            thread_id=thread_id,
            subject=detail.subject,
            from_address=detail.from_address,
            to_address=detail.to_address,
            date=detail.date,
            labels=list(detail.labels),
            snippet=snippet if snippet is not None else (detail.snippet or detail.subject),
        ))
        try:
            _commit_with_retry(self.db)
        except IntegrityError:
            self.db.rollback()
            logger.debug(f"Email {detail.id} inserted concurrently; keeping existing row")
            return False
        return True

    # Backfill cursor

    def get_pending_sync(self, user_id: int) -> Optional[PendingSync]:
        return self.db.query(PendingSync).filter(PendingSync.user_id == user_id).first()

    def pending_syncs(self) -> List[PendingSync]:
        """Pending backfills, least recently advanced first."""
        return self.db.query(PendingSync).order_by(PendingSync.updated_at, PendingSync.user_id).all()

    def schedule_pending_sync(self, user_id: int) -> bool:
        """Start a backfill from the first page unless one is already in progress."""
        if self.get_pending_sync(user_id) is not None:
            return False
        self.db.add(PendingSync(user_id=user_id, next_page_token=None))
        try:
            _commit_with_retry(self.db)
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def restart_pending_sync(self, user_id: int) -> None:
        """Rewind the backfill to the first page, creating the row if needed."""
        row = self.get_pending_sync(user_id)
        now = datetime.utcnow()
        if row:
            row.next_page_token = None
            row.updated_at = now
        else:
            self.db.add(PendingSync(user_id=user_id, next_page_token=None, updated_at=now))
        _commit_with_retry(self.db)

    def save_pending_sync(self, user_id: int, next_page_token: str) -> None:
        row = self.get_pending_sync(user_id)
        now = datetime.utcnow()
        if row:
            row.next_page_token = next_page_token
            row.updated_at = now
        else:
            self.db.add(PendingSync(user_id=user_id, next_page_token=next_page_token, updated_at=now))
        _commit_with_retry(self.db)

    def touch_pending_sync(self, user_id: int) -> None:
        """Move a pending backfill to the back of the queue without changing its page token."""
        self.db.query(PendingSync).filter(PendingSync.user_id == user_id).update(
            {PendingSync.updated_at: datetime.utcnow()}, synchronize_session=False
        )
        _commit_with_retry(self.db)

    def delete_pending_sync(self, user_id: int) -> None:
        self.db.query(PendingSync).filter(PendingSync.user_id == user_id).delete(synchronize_session=False)
        _commit_with_retry(self.db)

    # Bulk clear

    def clear_user_mail(self, user_id: int) -> dict:
        """Delete a user's emails, threads and pending backfill. Blobs are left in place."""
        counts = {
            "emails": int(
                self.db.query(Email).filter(Email.user_id == user_id).delete(synchronize_session=False) or 0
            ),
            "threads": int(
                self.db.query(Thread).filter(Thread.user_id == user_id).delete(synchronize_session=False) or 0
            ),
            "pending_sync": int(
                self.db.query(PendingSync).filter(PendingSync.user_id == user_id).delete(synchronize_session=False)
                or 0
            ),
        }
        _commit_with_retry(self.db)
        return counts
