"""Steps shared by the backfill orchestrator and the push reconciler."""
import logging
from typing import Optional

from ..blob_store import BlobStore
from ..gmail_client import MailboxClient, ThreadDetail
from ..models import Thread
from ..repository import MailRepository

logger = logging.getLogger(__name__)


def upsert_thread(repo: MailRepository, user_id: int, detail: ThreadDetail) -> Thread:
    thread, created = repo.upsert_thread(user_id, detail)
    logger.debug(f"{'Created' if created else 'Updated'} thread {detail.id} (historyId={detail.history_id})")
    return thread


def ensure_thread(client: MailboxClient, repo: MailRepository, user_id: int, thread_id: str) -> Thread:
    """Return the local thread, fetching and creating it only if it is not mirrored yet."""
    thread = repo.get_thread(user_id, thread_id)
    if thread is not None:
        return thread
    return upsert_thread(repo, user_id, client.get_thread_detail(thread_id))


def ingest_message(
    client: MailboxClient,
    repo: MailRepository,
    blobs: BlobStore,
    user_id: int,
    message_id: str,
    *,
    thread_id: Optional[str] = None,
    snippet: Optional[str] = None,
) -> bool:
    """
    Fetch one message, store its body, then create its Email row.

    The blob is written first: a failure in between leaves an unreferenced blob,
    never an Email row without a body. When thread_id is None the owning thread
    is resolved from the message and created locally if missing.
    Returns True if a new Email row was created.
    """
    detail = client.get_message_detail(message_id)
    if thread_id is None:
        thread_id = ensure_thread(client, repo, user_id, detail.thread_id).thread_id
    blobs.put(message_id, detail.body_html.encode("utf-8"))
    return repo.create_email(user_id, thread_id, detail, snippet=snippet)
