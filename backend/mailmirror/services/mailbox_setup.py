"""Connect a user's mailbox for push delivery and keep the Gmail watch alive."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from ..config import settings
from ..errors import MailSyncError
from ..gmail_client import ClientFactory, MailboxClient
from ..models import User
from ..repository import MailRepository
from ..user_lease import user_lease

logger = logging.getLogger(__name__)


@dataclass
class WatchResult:
    user_id: int
    history_id: str
    expiration: Optional[datetime]
    baseline_initialized: bool
    backfill_scheduled: bool


def connect_mailbox(
    repo: MailRepository,
    user: User,
    client: MailboxClient,
    label_ids: Optional[List[str]] = None,
) -> WatchResult:
    """
    Register the Gmail watch. On first connection the watch's historyId becomes
    the baseline cursor and a full backfill is scheduled; later calls only renew
    the watch and leave the cursor where reconciliation put it.
    """
    if not settings.pubsub_project_id or not settings.pubsub_topic_name:
        raise ValueError("PUBSUB_PROJECT_ID and PUBSUB_TOPIC_NAME must be set to register a Gmail watch")
    watch = client.register_watch(label_ids or settings.gmail_watch_label_ids, settings.pubsub_topic)
    repo.set_watch_expiration(user.id, watch.expiration)

    baseline_initialized = False
    if not repo.get_prev_history_id(user.id):
        repo.set_prev_history_id(user.id, watch.history_id)
        baseline_initialized = True
    backfill_scheduled = repo.schedule_pending_sync(user.id) if baseline_initialized else False

    logger.info(
        f"User {user.id}: Gmail watch registered until {watch.expiration} "
        f"(baseline_initialized={baseline_initialized}, backfill_scheduled={backfill_scheduled})"
    )
    return WatchResult(
        user_id=user.id,
        history_id=watch.history_id,
        expiration=watch.expiration,
        baseline_initialized=baseline_initialized,
        backfill_scheduled=backfill_scheduled,
    )


def renew_expiring_watches(repo: MailRepository, client_factory: ClientFactory) -> dict:
    """
    Re-register watches that expire within gmail_watch_renew_before_hours. One
    failure does not stop the rest; a user whose lease is held is reported as
    failed and picked up on the next run.
    """
    cutoff = datetime.utcnow() + timedelta(hours=settings.gmail_watch_renew_before_hours)
    renewed = 0
    failed: dict[int, str] = {}
    for user in repo.users_with_watch_expiring_before(cutoff):
        user_id = user.id
        try:
            with user_lease(repo.db, user_id):
                connect_mailbox(repo, user, client_factory(user))
            renewed += 1
        except MailSyncError as e:
            logger.error(f"User {user_id}: watch renewal failed ({e.kind.value}): {e}")
            failed[user_id] = str(e)
    return {"renewed": renewed, "failed": failed}
