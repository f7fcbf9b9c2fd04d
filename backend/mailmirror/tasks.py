"""Celery tasks: one backfill step per beat tick, hourly Gmail watch renewal. DB session per task."""
import logging

from celery import shared_task

from .blob_store import get_blob_store
from .database import SessionLocal
from .errors import MailSyncError
from .gmail_client import client_for_user
from .repository import MailRepository
from .services.mailbox_setup import renew_expiring_watches
from .services.sync_orchestrator import run_backfill_step as run_backfill_step_for

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="mailmirror.tasks.run_backfill_step")
def run_backfill_step(self):
    """
    Advance the oldest pending backfill by one page.
    Retryable failures are left for the next beat tick; the rest are raised so they show up as task failures.
    """
    db = SessionLocal()
    try:
        repo = MailRepository(db)
        step = run_backfill_step_for(repo, get_blob_store(), lambda user: client_for_user(repo, user))
        if step is None:
            return {"message": "No pending syncs"}
        return {
            "user_id": step.user_id,
            "synced": step.synced_count,
            "examined": step.total_examined,
            "remaining": step.remaining,
        }
    except MailSyncError as e:
        if e.retryable:
            logger.warning(f"Backfill step for user {e.user_id} deferred ({e.kind.value}): {e}")
            return {"error": str(e), "kind": e.kind.value, "user_id": e.user_id}
        logger.exception(f"Backfill step failed for user {e.user_id} ({e.kind.value})")
        raise
    finally:
        db.close()


@shared_task(bind=True, name="mailmirror.tasks.renew_gmail_watches")
def renew_gmail_watches(self):
    """Re-register Gmail watches that expire soon. Gmail watches last at most 7 days."""
    db = SessionLocal()
    try:
        repo = MailRepository(db)
        result = renew_expiring_watches(repo, lambda user: client_for_user(repo, user))
        logger.info(f"Renewed {result['renewed']} Gmail watches, {len(result['failed'])} failed")
        return result
    finally:
        db.close()
