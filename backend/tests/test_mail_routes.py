"""Mail read API: list, detail with blob body, threads, bulk clear."""
from datetime import datetime

from mailmirror.auth import create_access_token
from mailmirror.models import Email, PendingSync, Thread

from fakes import make_user


def _auth(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


def _seed(db, user, blobs):
    db.add(Thread(user_id=user.id, thread_id="t1", history_id="10", labels=["INBOX"], last_update=datetime(2024, 1, 2)))
    db.add(Email(message_id="m1", user_id=user.id, thread_id="t1", subject="Old", labels=["INBOX"],
                 date=datetime(2024, 1, 1)))
    db.add(Email(message_id="m2", user_id=user.id, thread_id="t1", subject="New", labels=["INBOX", "UNREAD"],
                 date=datetime(2024, 1, 2)))
    db.commit()
    blobs.blobs["m1"] = b"<p>old</p>"


def test_list_mail_newest_first(client, db_session, blobs):
    user = make_user(db_session)
    _seed(db_session, user, blobs)
    resp = client.get("/api/mail", headers=_auth(user))
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert [e["message_id"] for e in body["emails"]] == ["m2", "m1"]


def test_list_mail_label_filter_and_paging(client, db_session, blobs):
    user = make_user(db_session)
    _seed(db_session, user, blobs)
    body = client.get("/api/mail?label=UNREAD", headers=_auth(user)).json()
    assert [e["message_id"] for e in body["emails"]] == ["m2"]

    body = client.get("/api/mail?limit=1&offset=1", headers=_auth(user)).json()
    assert body["total"] == 2
    assert [e["message_id"] for e in body["emails"]] == ["m1"]

    assert client.get("/api/mail?limit=500", headers=_auth(user)).status_code == 422


def test_mail_is_scoped_to_user(client, db_session, blobs):
    owner = make_user(db_session, email="owner@example.com")
    other = make_user(db_session, email="other@example.com")
    _seed(db_session, owner, blobs)
    assert client.get("/api/mail", headers=_auth(other)).json()["total"] == 0
    assert client.get("/api/mail/m1", headers=_auth(other)).status_code == 404


def test_get_mail_includes_html(client, db_session, blobs):
    user = make_user(db_session)
    _seed(db_session, user, blobs)
    resp = client.get("/api/mail/m1", headers=_auth(user))
    assert resp.status_code == 200
    assert resp.json()["html"] == "<p>old</p>"
    assert resp.json()["subject"] == "Old"


def test_get_mail_missing_blob(client, db_session, blobs):
    user = make_user(db_session)
    _seed(db_session, user, blobs)
    resp = client.get("/api/mail/m2", headers=_auth(user))
    assert resp.status_code == 404
    assert resp.json()["kind"] == "not_found"


def test_threads(client, db_session, blobs):
    user = make_user(db_session)
    _seed(db_session, user, blobs)
    body = client.get("/api/threads", headers=_auth(user)).json()
    assert body["total"] == 1
    assert body["threads"][0]["thread_id"] == "t1"

    detail = client.get("/api/threads/t1", headers=_auth(user)).json()
    assert [e["message_id"] for e in detail["emails"]] == ["m1", "m2"]
    assert client.get("/api/threads/nope", headers=_auth(user)).status_code == 404


def test_clear_mail(client, db_session, blobs):
    user = make_user(db_session, prev_history_id="10")
    _seed(db_session, user, blobs)
    db_session.add(PendingSync(user_id=user.id, next_page_token="p"))
    db_session.commit()

    resp = client.delete("/api/mail", headers=_auth(user))
    assert resp.status_code == 200
    assert resp.json() == {"emails": 2, "threads": 1, "pending_sync": 1}
    db_session.expire_all()
    assert db_session.query(Email).count() == 0
    assert db_session.query(Thread).count() == 0


def test_mail_requires_auth(client):
    assert client.get("/api/mail").status_code == 401


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}
