"""Backfill: page sync idempotency, history-skip, resumable pagination, failure handling."""
from datetime import datetime

import pytest

from mailmirror.errors import BlobStoreError, RemoteTransientError, UserNotFound
from mailmirror.gmail_client import ThreadDetail
from mailmirror.models import Email, PendingSync, Thread
from mailmirror.services.notification_reconciler import NotificationOutcome, apply_notification
from mailmirror.pubsub import GmailNotification
from mailmirror.services.sync_orchestrator import backfill_user_page, run_backfill_step, sync_page
from mailmirror.user_lease import acquire_lease

from fakes import make_user


def _stored(db):
    emails = sorted((e.message_id, e.thread_id, e.subject) for e in db.query(Email).all())
    threads = sorted((t.thread_id, t.history_id, tuple(t.labels or [])) for t in db.query(Thread).all())
    return emails, threads


def test_sync_page_twice_is_idempotent(db_session, repo, blobs, fake_client):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=10)
    fake_client.add_message("t1", "m2")
    fake_client.add_message("t2", "m3", history_id=20)

    first = sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert first.synced_count == 2
    assert first.total_examined == 2
    assert first.next_page_token is None
    before = _stored(db_session)
    fetches = fake_client.calls["get_message_detail"]

    second = sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert second.synced_count == 0
    assert second.total_examined == 2
    assert fake_client.calls["get_message_detail"] == fetches
    assert _stored(db_session) == before


def test_unchanged_history_id_skips_thread_detail(db_session, repo, blobs, fake_client):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=50)
    repo.upsert_thread(
        user.id,
        ThreadDetail(id="t1", history_id="50", snippet="", labels=[], last_update=None, messages=[]),
    )

    result = sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert result.synced_count == 0
    assert fake_client.calls["get_thread_detail"] == 0

    fake_client.threads["t1"]["history_id"] = "51"
    result = sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert result.synced_count == 1
    assert fake_client.calls["get_thread_detail"] == 1
    assert repo.get_thread(user.id, "t1").history_id == "51"


def test_existing_email_is_not_fetched_again(db_session, repo, blobs, fake_client):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=10)
    fake_client.add_message("t1", "m2")
    # m1 already mirrored, e.g. by a push notification
    repo.create_email(user.id, "t1", fake_client.get_message_detail("m1"))
    fake_client.message_fetches.clear()

    result = sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert result.synced_count == 1
    assert fake_client.message_fetches["m1"] == 0
    assert fake_client.message_fetches["m2"] == 1
    assert db_session.query(Email).count() == 2


def test_blob_written_under_message_id_before_row(db_session, repo, blobs, fake_client):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=10)

    sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert blobs.blobs["m1"] == b"<p>body of m1</p>"
    email = repo.get_email("m1")
    assert email.thread_id == "t1"
    assert email.snippet == "snippet m1"


def test_blob_failure_creates_no_email_row(db_session, repo, blobs, fake_client):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=10)
    blobs.fail_put = BlobStoreError("bucket unavailable")

    with pytest.raises(BlobStoreError):
        sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert db_session.query(Email).count() == 0
    assert repo.get_thread(user.id, "t1") is None


def test_backfill_resumes_across_pages(db_session, repo, blobs, fake_client, client_factory):
    user = make_user(db_session)
    for i in range(1, 6):
        fake_client.add_message(f"t{i}", f"m{i}", history_id=i * 10)
    repo.schedule_pending_sync(user.id)

    steps = []
    for _ in range(3):
        steps.append(backfill_user_page(repo, blobs, client_factory, user.id, max_results=2))
        if steps[-1].remaining:
            assert repo.get_pending_sync(user.id).next_page_token is not None

    assert [s.synced_count for s in steps] == [2, 2, 1]
    assert [s.remaining for s in steps] == [True, True, False]
    assert repo.get_pending_sync(user.id) is None
    assert db_session.query(Email).count() == 5

    # Backfill finished; another step is a no-op.
    step = backfill_user_page(repo, blobs, client_factory, user.id, max_results=2)
    assert step.remaining is False
    assert step.total_examined == 0


def test_failed_page_leaves_pending_sync_unchanged(db_session, repo, blobs, fake_client, client_factory):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=10)
    fake_client.add_message("t2", "m2", history_id=20)
    fake_client.add_message("t3", "m3", history_id=30)
    repo.save_pending_sync(user.id, "1")
    fake_client.failures["m3"] = RemoteTransientError("HTTP 503")

    with pytest.raises(RemoteTransientError):
        backfill_user_page(repo, blobs, client_factory, user.id, max_results=10)

    assert repo.get_pending_sync(user.id).next_page_token == "1"
    # t2 completed before the failure and stays; t3 was never marked synced.
    assert repo.get_email("m2") is not None
    assert repo.get_thread(user.id, "t3") is None

    del fake_client.failures["m3"]
    fake_client.message_fetches.clear()
    step = backfill_user_page(repo, blobs, client_factory, user.id, max_results=10)
    assert step.synced_count == 1
    assert fake_client.message_fetches == {"m3": 1}
    assert repo.get_pending_sync(user.id) is None


def test_half_ingested_thread_is_refetched_on_retry(db_session, repo, blobs, fake_client):
    user = make_user(db_session)
    fake_client.add_message("t1", "m1", history_id=10)
    sync_page(fake_client, repo, blobs, user.id, max_results=10)
    fake_client.add_message("t1", "m2")
    fake_client.add_message("t1", "m3", history_id=11)
    fake_client.failures["m3"] = RemoteTransientError("HTTP 503")

    with pytest.raises(RemoteTransientError):
        sync_page(fake_client, repo, blobs, user.id, max_results=10)
    # Messages are stored before the thread row, so its historyId still lags the remote.
    assert repo.get_email("m2") is not None
    assert repo.get_email("m3") is None
    assert repo.get_thread(user.id, "t1").history_id == "10"

    del fake_client.failures["m3"]
    fake_client.message_fetches.clear()
    details_before = fake_client.calls["get_thread_detail"]
    result = sync_page(fake_client, repo, blobs, user.id, max_results=10)

    assert result.synced_count == 1
    assert fake_client.calls["get_thread_detail"] == details_before + 1
    assert fake_client.message_fetches == {"m3": 1}
    db_session.expire_all()
    assert repo.get_thread(user.id, "t1").history_id == "11"


def test_backfill_pending_for_unknown_user(repo, blobs, client_factory):
    repo.save_pending_sync(999, "x")
    with pytest.raises(UserNotFound):
        backfill_user_page(repo, blobs, client_factory, 999, max_results=2)
    assert repo.get_pending_sync(999).next_page_token == "x"


def test_run_backfill_step_nothing_pending(repo, blobs, client_factory):
    assert run_backfill_step(repo, blobs, client_factory) is None


def test_run_backfill_step_skips_leased_user(db_session, repo, blobs, fake_client, client_factory):
    busy = make_user(db_session, email="busy@example.com")
    free = make_user(db_session, email="free@example.com")
    fake_client.add_message("t1", "m1", history_id=10)
    repo.schedule_pending_sync(busy.id)
    repo.schedule_pending_sync(free.id)
    acquire_lease(db_session, busy.id, holder="someone-else")

    step = run_backfill_step(repo, blobs, client_factory)
    assert step.user_id == free.id
    assert repo.get_pending_sync(busy.id) is not None
    assert repo.get_pending_sync(free.id) is None


def test_run_backfill_step_failure_moves_user_to_back(db_session, repo, blobs, fake_client, client_factory):
    first = make_user(db_session, email="first@example.com")
    second = make_user(db_session, email="second@example.com")
    fake_client.add_message("t1", "m1", history_id=10)
    repo.schedule_pending_sync(first.id)
    repo.schedule_pending_sync(second.id)
    db_session.query(PendingSync).filter(PendingSync.user_id == first.id).update(
        {PendingSync.updated_at: datetime(2020, 1, 1)}
    )
    db_session.commit()
    fake_client.failures["m1"] = RemoteTransientError("HTTP 500")

    with pytest.raises(RemoteTransientError):
        run_backfill_step(repo, blobs, client_factory)

    assert repo.get_pending_sync(first.id).next_page_token is None
    assert [p.user_id for p in repo.pending_syncs()] == [second.id, first.id]


def test_end_to_end_backfill_then_notification(db_session, repo, blobs, fake_client, client_factory):
    user = make_user(db_session, email="u@example.com")
    fake_client.add_message("t1", "m1", history_id=10)
    fake_client.add_message("t1", "m2")

    result = sync_page(fake_client, repo, blobs, user.id, max_results=10)
    assert result.synced_count == 1
    assert {e.message_id for e in db_session.query(Email).all()} == {"m1", "m2"}
    assert set(blobs.blobs) == {"m1", "m2"}
    thread = repo.get_thread(user.id, "t1")
    history_before, last_update_before = thread.history_id, thread.last_update

    repo.set_prev_history_id(user.id, "10")
    fake_client.add_message("t1", "m3", history_id=11)
    fake_client.set_history(["m3"])
    outcome = apply_notification(
        GmailNotification(emailAddress="u@example.com", historyId="11"), repo, blobs, client_factory
    )

    assert outcome.outcome == NotificationOutcome.APPLIED
    assert outcome.added == 1
    assert repo.get_email("m3").thread_id == "t1"
    db_session.expire_all()
    thread = repo.get_thread(user.id, "t1")
    assert thread.history_id == history_before
    assert thread.last_update == last_update_before
    assert repo.get_prev_history_id(user.id) == "11"
