#!/usr/bin/env python3
"""
Drive one user's backfill to completion without Redis/Celery.

Schedules a backfill from the first page if none is pending, then syncs page
after page until Gmail returns no nextPageToken. Interrupting is safe: the
next run resumes from the stored page token.

Usage (from backend/; use the project venv):
  ./.venv/bin/python scripts/run_backfill.py --user-id 1
  ./.venv/bin/python scripts/run_backfill.py --email someone@gmail.com --page-size 100
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

# Ensure backend package is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from mailmirror.blob_store import get_blob_store
from mailmirror.config import settings
from mailmirror.database import SessionLocal, init_db
from mailmirror.errors import MailSyncError
from mailmirror.gmail_client import client_for_user
from mailmirror.repository import MailRepository
from mailmirror.services.sync_orchestrator import backfill_user_page
from mailmirror.user_lease import user_lease


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a user's Gmail backfill to completion.")
    who = parser.add_mutually_exclusive_group(required=True)
    who.add_argument("--user-id", type=int)
    who.add_argument("--email")
    parser.add_argument("--page-size", type=int, default=settings.gmail_sync_page_size)
    parser.add_argument("--max-pages", type=int, default=0, help="Stop after N pages (0 = until done).")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    init_db()

    db = SessionLocal()
    try:
        repo = MailRepository(db)
        user = repo.get_user(args.user_id) if args.user_id is not None else repo.get_user_by_email(args.email)
        if user is None:
            print(f"User not found: {args.user_id or args.email}", file=sys.stderr)
            return 1
        user_id = user.id

        if repo.schedule_pending_sync(user_id):
            print(f"Scheduled backfill for user {user_id} from the first page")
        else:
            print(f"Resuming backfill for user {user_id}")

        blobs = get_blob_store()
        pages = synced = examined = 0
        with user_lease(db, user_id):
            while True:
                step = backfill_user_page(
                    repo, blobs, lambda u: client_for_user(repo, u), user_id, max_results=args.page_size
                )
                pages += 1
                synced += step.synced_count
                examined += step.total_examined
                print(f"  page {pages}: synced {step.synced_count}/{step.total_examined} threads")
                if not step.remaining:
                    break
                if args.max_pages and pages >= args.max_pages:
                    print("Stopping at --max-pages; rerun to continue")
                    break

        print(f"Done: {pages} pages, {synced} threads synced of {examined} examined")
        return 0
    except MailSyncError as e:
        print(f"Backfill failed ({e.kind.value}): {e}", file=sys.stderr)
        if e.retryable:
            print("The error is transient; rerun to resume from the same page.", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
