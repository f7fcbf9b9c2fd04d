"""Sync triggers: scheduled backfill step, Pub/Sub push, Gmail watch registration, sync status."""
import logging

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user_required, require_cron_secret
from ..blob_store import BlobStore, get_blob_store
from ..database import get_sync_db
from ..errors import MailSyncError, UserNotFound
from ..gmail_client import ClientFactory, client_for_user
from ..models import User
from ..pubsub import InvalidPushMessage, decode_push_envelope
from ..repository import MailRepository
from ..schemas import (
    BackfillStepResponse,
    NotificationResponse,
    SyncStatusResponse,
    WatchResponseSchema,
)
from ..services.mailbox_setup import connect_mailbox
from ..services.notification_reconciler import handle_notification
from ..services.sync_orchestrator import run_backfill_step
from ..user_lease import user_lease

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])


def get_repository(db: Session = Depends(get_sync_db)) -> MailRepository:
    return MailRepository(db)


def get_blobs() -> BlobStore:
    return get_blob_store()


def get_client_factory(repo: MailRepository = Depends(get_repository)) -> ClientFactory:
    """Gmail client per user, built from stored OAuth tokens. Overridden in tests."""
    return lambda user: client_for_user(repo, user)


def _sync_user(repo: MailRepository, current_user: User) -> User:
    # current_user comes from the async session; work on a row owned by the sync one.
    user = repo.get_user(current_user.id)
    if user is None:
        raise UserNotFound(f"User {current_user.id} not found", user_id=current_user.id)
    return user


@router.post("/sync/cron", dependencies=[Depends(require_cron_secret)])
def sync_cron(
    repo: MailRepository = Depends(get_repository),
    blobs: BlobStore = Depends(get_blobs),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Advance one pending backfill by one page. Meant to be called by a scheduler."""
    try:
        step = run_backfill_step(repo, blobs, client_factory)
    except MailSyncError as e:
        logger.error(f"Backfill step failed for user {e.user_id} ({e.kind.value}): {e}")
        raise
    if step is None:
        return {"message": "No pending syncs"}
    return BackfillStepResponse(
        user_id=step.user_id,
        synced=step.synced_count,
        examined=step.total_examined,
        remaining=step.remaining,
    )


@router.post("/sync/pubsub", response_model=NotificationResponse)
def sync_pubsub(
    body: dict = Body(...),
    repo: MailRepository = Depends(get_repository),
    blobs: BlobStore = Depends(get_blobs),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """
    Pub/Sub push endpoint for Gmail change notifications.
    Any non-2xx response makes Pub/Sub redeliver, so only undecodable envelopes get a 400.
    """
    try:
        notification = decode_push_envelope(body)
    except InvalidPushMessage as e:
        logger.warning(f"Rejected Pub/Sub push: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    try:
        result = handle_notification(notification, repo, blobs, client_factory)
    except MailSyncError as e:
        logger.error(
            f"Notification for {notification.email_address} historyId={notification.history_id} "
            f"failed ({e.kind.value}): {e}"
        )
        raise
    return NotificationResponse(
        status=result.outcome.value,
        user_id=result.user_id,
        history_id=result.history_id,
        previous_history_id=result.previous_history_id,
        added=result.added,
        skipped=result.skipped,
    )


@router.post("/gmail/watch", response_model=WatchResponseSchema)
def gmail_watch(
    current_user: User = Depends(get_current_user_required),
    repo: MailRepository = Depends(get_repository),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Register (or renew) Gmail push for the current user. The first call also schedules the full backfill."""
    user = _sync_user(repo, current_user)
    try:
        with user_lease(repo.db, user.id):
            result = connect_mailbox(repo, user, client_factory(user))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return WatchResponseSchema(
        history_id=result.history_id,
        expiration=result.expiration,
        baseline_initialized=result.baseline_initialized,
        backfill_scheduled=result.backfill_scheduled,
    )


@router.post("/gmail/watch/stop")
def gmail_watch_stop(
    current_user: User = Depends(get_current_user_required),
    repo: MailRepository = Depends(get_repository),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Stop push delivery. The baseline cursor is kept so a later watch resumes from it."""
    user = _sync_user(repo, current_user)
    with user_lease(repo.db, user.id):
        client_factory(user).stop_watch()
        repo.set_watch_expiration(user.id, None)
    return {"status": "stopped"}


@router.get("/sync-status", response_model=SyncStatusResponse)
def sync_status(
    current_user: User = Depends(get_current_user_required),
    repo: MailRepository = Depends(get_repository),
):
    user = _sync_user(repo, current_user)
    pending = repo.get_pending_sync(user.id)
    return SyncStatusResponse(
        prev_history_id=user.prev_history_id,
        backfill_pending=pending is not None,
        next_page_token=pending.next_page_token if pending else None,
        watch_expiration=user.watch_expiration,
    )
