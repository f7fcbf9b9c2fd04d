"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)  # Gmail address in push payloads
    name = Column(String, nullable=True)
    google_id = Column(String, nullable=True, index=True)
    # OAuth credential pair, written by the sign-in flow; refreshed here when expired
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    # High-water mark of reconciled Gmail history. Set when push delivery is authorized.
    prev_history_id = Column(String(32), nullable=True)
    watch_expiration = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Thread(Base):
    __tablename__ = "threads"
    __table_args__ = (UniqueConstraint("user_id", "thread_id", name="uq_threads_user_thread"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String(64), nullable=False, index=True)  # Gmail thread id
    snippet = Column(Text, nullable=True)
    history_id = Column(String(32), nullable=True)  # thread historyId when last fetched
    labels = Column(JSON, nullable=True)  # list of label ids
    last_update = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Email(Base):
    """Message metadata. The HTML body lives in the blob store under message_id."""
    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(String(64), unique=True, nullable=False, index=True)  # Gmail message id
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String(64), nullable=False, index=True)
    subject = Column(Text, nullable=True)
    from_address = Column(Text, nullable=True)
    to_address = Column(Text, nullable=True)
    date = Column(DateTime, nullable=True)
    labels = Column(JSON, nullable=True)
    snippet = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PendingSync(Base):
    """Backfill in progress. next_page_token is None until the first page has been synced."""
    __tablename__ = "pending_sync"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    next_page_token = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserLease(Base):
    """Advisory lock held by a trigger while it mutates a user's mirror."""
    __tablename__ = "user_lease"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    holder = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)


Index("ix_emails_user_date", Email.user_id, Email.date)
Index("ix_emails_user_thread", Email.user_id, Email.thread_id)
Index("ix_threads_user_last_update", Thread.user_id, Thread.last_update)
