"""Per-user advisory lease so backfill and push reconciliation never mutate one mirror at once."""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import SyncBusy
from .models import UserLease

logger = logging.getLogger(__name__)


def acquire_lease(db: Session, user_id: int, holder: str, ttl_s: Optional[int] = None) -> None:
    """Take the lease or raise SyncBusy. An expired lease is taken over."""
    now = datetime.utcnow()
    expires_at = now + timedelta(seconds=ttl_s if ttl_s is not None else settings.user_lease_ttl_s)
    db.add(UserLease(user_id=user_id, holder=holder, acquired_at=now, expires_at=expires_at))
    try:
        db.commit()
        return
    except IntegrityError:
        db.rollback()

    taken = (
        db.query(UserLease)
        .filter(UserLease.user_id == user_id, UserLease.expires_at < now)
        .update(
            {UserLease.holder: holder, UserLease.acquired_at: now, UserLease.expires_at: expires_at},
            synchronize_session=False,
        )
    )
    db.commit()
    if not taken:
        raise SyncBusy(f"Mailbox sync already running for user {user_id}", user_id=user_id)
    logger.warning(f"Took over expired lease for user {user_id}")


def release_lease(db: Session, user_id: int, holder: str) -> None:
    db.query(UserLease).filter(UserLease.user_id == user_id, UserLease.holder == holder).delete(
        synchronize_session=False
    )
    db.commit()


@contextmanager
def user_lease(db: Session, user_id: int, ttl_s: Optional[int] = None) -> Iterator[str]:
    holder = uuid.uuid4().hex
    acquire_lease(db, user_id, holder, ttl_s)
    try:
        yield holder
    finally:
        # Drop whatever the failed unit left uncommitted before releasing.
        db.rollback()
        release_lease(db, user_id, holder)
