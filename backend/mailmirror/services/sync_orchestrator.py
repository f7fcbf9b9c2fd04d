"""Paginated backfill of a user's mailbox, one bounded page of threads per call.

The orchestrator holds no state between calls. The caller persists the returned
next_page_token (PendingSync) and calls again until none is returned. Replaying
a page is safe: threads whose historyId is unchanged are skipped and messages
already mirrored are never fetched again.

Threads and messages are processed strictly in list order, one remote call at a
time. The per-item existence checks rely on that; do not fan this out.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..blob_store import BlobStore
from ..config import settings
from ..errors import MailSyncError, SyncBusy, UserNotFound
from ..gmail_client import ClientFactory, MailboxClient
from ..repository import MailRepository
from ..user_lease import user_lease
from .ingest import ingest_message, upsert_thread

logger = logging.getLogger(__name__)


@dataclass
class SyncPageResult:
    synced_count: int
    total_examined: int
    next_page_token: Optional[str] = None


@dataclass
class BackfillStepResult:
    user_id: int
    synced_count: int
    total_examined: int
    remaining: bool


def sync_page(
    client: MailboxClient,
    repo: MailRepository,
    blobs: BlobStore,
    user_id: int,
    max_results: int,
    page_token: Optional[str] = None,
) -> SyncPageResult:
    """
    Mirror one page of threads.

    A thread is skipped when its stored historyId equals the listed one. Message
    deletions that leave historyId unchanged are not detected.
    Any remote or storage error aborts the page; rows already written stay.
    """
    page = client.list_thread_summaries(page_token=page_token, max_results=max_results)
    synced = 0
    for summary in page.items:
        local = repo.get_thread(user_id, summary.id)
        if local is not None and local.history_id == summary.history_id:
            logger.debug(f"Thread {summary.id} unchanged at historyId={summary.history_id}; skipping")
            continue

        detail = client.get_thread_detail(summary.id)
        new_messages = 0
        for message in detail.messages:
            if repo.email_exists(message.id):
                continue
            if ingest_message(
                client, repo, blobs, user_id, message.id, thread_id=detail.id, snippet=message.snippet
            ):
                new_messages += 1
        # Thread row last: its historyId only matches the remote once every message is stored,
        # so an aborted page re-fetches this thread on retry.
        upsert_thread(repo, user_id, detail)
        synced += 1
        logger.debug(f"Synced thread {detail.id}: {new_messages} new of {len(detail.messages)} messages")

    logger.info(
        f"User {user_id}: synced {synced}/{len(page.items)} threads "
        f"(page_token={page_token!r}, next={page.next_page_token!r})"
    )
    return SyncPageResult(
        synced_count=synced,
        total_examined=len(page.items),
        next_page_token=page.next_page_token,
    )


def backfill_user_page(
    repo: MailRepository,
    blobs: BlobStore,
    client_factory: ClientFactory,
    user_id: int,
    max_results: Optional[int] = None,
) -> BackfillStepResult:
    """
    Run the next page of a user's pending backfill and advance PendingSync.
    On failure PendingSync is left as it was so the same page is retried.
    """
    pending = repo.get_pending_sync(user_id)
    if pending is None:
        return BackfillStepResult(user_id=user_id, synced_count=0, total_examined=0, remaining=False)
    user = repo.get_user(user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found", user_id=user_id)

    result = sync_page(
        client_factory(user),
        repo,
        blobs,
        user_id,
        max_results or settings.gmail_sync_page_size,
        page_token=pending.next_page_token,
    )
    if result.next_page_token:
        repo.save_pending_sync(user_id, result.next_page_token)
    else:
        repo.delete_pending_sync(user_id)
        logger.info(f"User {user_id}: backfill complete")
    return BackfillStepResult(
        user_id=user_id,
        synced_count=result.synced_count,
        total_examined=result.total_examined,
        remaining=bool(result.next_page_token),
    )


def run_backfill_step(
    repo: MailRepository,
    blobs: BlobStore,
    client_factory: ClientFactory,
    max_results: Optional[int] = None,
) -> Optional[BackfillStepResult]:
    """
    Advance the least recently advanced pending backfill by one page.
    Users whose lease is held elsewhere are passed over. Returns None when nothing ran.
    """
    for pending in repo.pending_syncs():
        user_id = pending.user_id
        try:
            with user_lease(repo.db, user_id):
                return backfill_user_page(repo, blobs, client_factory, user_id, max_results)
        except SyncBusy:
            logger.info(f"User {user_id}: lease held elsewhere; trying next pending backfill")
            continue
        except MailSyncError:
            # Back of the queue; the page token stays so the same page is retried later.
            repo.touch_pending_sync(user_id)
            raise
    return None
