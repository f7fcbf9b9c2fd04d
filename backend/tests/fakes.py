"""In-test fakes for the Gmail mailbox client and the blob store."""
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from mailmirror.errors import BlobNotFound
from mailmirror.gmail_client import (
    HistoryEntry,
    HistoryPage,
    MessageDetail,
    ThreadDetail,
    ThreadMessage,
    ThreadPage,
    ThreadSummary,
    WatchResponse,
)
from mailmirror.models import User

BASE_DATE = datetime(2024, 1, 1, 12, 0, 0)


class FakeMailboxClient:
    """Remote mailbox held in dicts. Threads list in insertion order; page tokens are offsets."""

    def __init__(self):
        self.threads: Dict[str, dict] = {}
        self.messages: Dict[str, dict] = {}
        self.history = HistoryPage(entries=[], more=False)
        self.watch = WatchResponse(history_id="1000", expiration=datetime(2030, 1, 1))
        self.calls: Counter = Counter()
        self.message_fetches: Counter = Counter()
        self.history_cursors: List[str] = []
        self.watch_calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}  # message_id or thread_id -> error to raise
        self.history_error: Optional[Exception] = None
        self.stopped = False

    def add_message(self, thread_id, message_id, *, history_id=None, labels=("INBOX",), subject=None, minutes=0):
        thread = self.threads.setdefault(thread_id, {"history_id": "1", "messages": []})
        thread["messages"].append(message_id)
        if history_id is not None:
            thread["history_id"] = str(history_id)
        self.messages[message_id] = {
            "thread_id": thread_id,
            "labels": list(labels),
            "subject": subject or f"Subject {message_id}",
            "date": BASE_DATE + timedelta(minutes=minutes or len(self.messages)),
        }

    # MailboxClient

    def list_thread_summaries(self, page_token=None, max_results=100):
        self.calls["list_thread_summaries"] += 1
        ids = list(self.threads)
        start = int(page_token or 0)
        end = start + max_results
        items = [ThreadSummary(id=t, history_id=self.threads[t]["history_id"]) for t in ids[start:end]]
        return ThreadPage(items=items, next_page_token=str(end) if end < len(ids) else None)

    def get_thread_detail(self, thread_id):
        self.calls["get_thread_detail"] += 1
        if thread_id in self.failures:
            raise self.failures[thread_id]
        thread = self.threads[thread_id]
        messages = [
            ThreadMessage(
                id=mid,
                labels=self.messages[mid]["labels"],
                snippet=f"snippet {mid}",
                internal_date=self.messages[mid]["date"],
            )
            for mid in thread["messages"]
        ]
        labels: List[str] = []
        for m in messages:
            for label in m.labels:
                if label not in labels:
                    labels.append(label)
        return ThreadDetail(
            id=thread_id,
            history_id=thread["history_id"],
            snippet=messages[-1].snippet if messages else "",
            labels=labels,
            last_update=max(m.internal_date for m in messages) if messages else None,
            messages=messages,
        )

    def get_message_detail(self, message_id):
        self.calls["get_message_detail"] += 1
        self.message_fetches[message_id] += 1
        if message_id in self.failures:
            raise self.failures[message_id]
        m = self.messages[message_id]
        return MessageDetail(
            id=message_id,
            thread_id=m["thread_id"],
            body_html=f"<p>body of {message_id}</p>",
            subject=m["subject"],
            from_address="Sender <sender@example.com>",
            to_address="u@example.com",
            date=m["date"],
            labels=m["labels"],
            snippet=f"snippet {message_id}",
        )

    def list_history_since(self, cursor, max_results=500):
        self.calls["list_history_since"] += 1
        self.history_cursors.append(cursor)
        if self.history_error is not None:
            raise self.history_error
        return self.history

    def register_watch(self, label_ids, topic_name):
        self.calls["register_watch"] += 1
        self.watch_calls.append((list(label_ids), topic_name))
        return self.watch

    def stop_watch(self):
        self.stopped = True

    # helpers

    def set_history(self, *added: List[str], more: bool = False):
        entries = [HistoryEntry(id=str(i), messages_added=list(ids)) for i, ids in enumerate(added, start=1)]
        self.history = HistoryPage(entries=entries, more=more)


class InMemoryBlobStore:
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.fail_put: Optional[Exception] = None

    def put(self, key, data):
        if self.fail_put is not None:
            raise self.fail_put
        self.blobs[key] = data

    def get(self, key):
        try:
            return self.blobs[key]
        except KeyError:
            raise BlobNotFound(f"No blob stored for {key}")


def make_user(db, email="u@example.com", prev_history_id=None) -> User:
    user = User(email=email, name="Test User", prev_history_id=prev_history_id, access_token="token")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
