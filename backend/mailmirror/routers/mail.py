"""Mail read API: mirrored emails and threads for the current user, plus bulk clear."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import String, cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_required
from ..blob_store import BlobStore
from ..database import get_db
from ..models import Email, Thread, User
from ..repository import MailRepository
from ..schemas import (
    ClearResponse,
    EmailDetail,
    EmailList,
    EmailMetadata,
    ThreadDetailResponse,
    ThreadList,
    ThreadSummaryResponse,
)
from ..user_lease import user_lease
from .sync import get_blobs, get_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["mail"])


def _label_filter(label: str):
    # labels is a JSON array; match the quoted element in its serialized form.
    return cast(Email.labels, String).like(f'%"{label}"%')


@router.get("/mail", response_model=EmailList)
async def list_mail(
    label: Optional[str] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    """Emails newest first. Optional label filter (e.g. INBOX, UNREAD)."""
    where_clause = [Email.user_id == current_user.id]
    if label:
        where_clause.append(_label_filter(label))

    total = await db.scalar(select(func.count()).select_from(Email).where(*where_clause))
    result = await db.execute(
        select(Email)
        .where(*where_clause)
        .order_by(Email.date.desc(), Email.id.desc())
        .offset(offset)
        .limit(limit)
    )
    emails = result.scalars().all()
    return EmailList(
        emails=[EmailMetadata.model_validate(e) for e in emails],
        total=int(total or 0),
        offset=offset,
        limit=limit,
    )


@router.get("/mail/{message_id}", response_model=EmailDetail)
async def get_mail(
    message_id: str,
    db: AsyncSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
    current_user: User = Depends(get_current_user_required),
):
    """Email metadata plus the HTML body from the blob store."""
    result = await db.execute(
        select(Email).where(Email.message_id == message_id, Email.user_id == current_user.id)
    )
    email = result.scalars().first()
    if not email:
        raise HTTPException(status_code=404, detail="Email not found")
    body = await run_in_threadpool(blobs.get, email.message_id)
    meta = EmailMetadata.model_validate(email)
    return EmailDetail(**meta.model_dump(), html=body.decode("utf-8", errors="replace"))


@router.get("/threads", response_model=ThreadList)
async def list_threads(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    total = await db.scalar(
        select(func.count()).select_from(Thread).where(Thread.user_id == current_user.id)
    )
    result = await db.execute(
        select(Thread)
        .where(Thread.user_id == current_user.id)
        .order_by(Thread.last_update.desc(), Thread.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return ThreadList(
        threads=[ThreadSummaryResponse.model_validate(t) for t in result.scalars().all()],
        total=int(total or 0),
        offset=offset,
        limit=limit,
    )


@router.get("/threads/{thread_id}", response_model=ThreadDetailResponse)
async def get_thread(
    thread_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user_required),
):
    result = await db.execute(
        select(Thread).where(Thread.user_id == current_user.id, Thread.thread_id == thread_id)
    )
    thread = result.scalars().first()
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found")
    emails = await db.execute(
        select(Email)
        .where(Email.user_id == current_user.id, Email.thread_id == thread_id)
        .order_by(Email.date.asc(), Email.id.asc())
    )
    summary = ThreadSummaryResponse.model_validate(thread)
    return ThreadDetailResponse(
        **summary.model_dump(),
        emails=[EmailMetadata.model_validate(e) for e in emails.scalars().all()],
    )


@router.delete("/mail", response_model=ClearResponse)
def clear_mail(
    current_user: User = Depends(get_current_user_required),
    repo: MailRepository = Depends(get_repository),
):
    """Delete the user's mirrored emails, threads and pending backfill. The change cursor is kept."""
    with user_lease(repo.db, current_user.id):
        counts = repo.clear_user_mail(current_user.id)
    logger.info(f"User {current_user.id}: cleared mirror {counts}")
    return ClearResponse(**counts)
