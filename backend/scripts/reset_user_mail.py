#!/usr/bin/env python3
"""
Clear mirrored mail (emails, threads, pending backfill) for one user or ALL users.
Users, OAuth tokens and change cursors are kept; blobs are left in the store.

This is a destructive operation. By default it will refuse to run unless you pass
--yes-really.

Usage (from repo root):
  python backend/scripts/reset_user_mail.py --user-id 1 --yes-really
  python backend/scripts/reset_user_mail.py --all --yes-really
"""

from __future__ import annotations

import argparse
import os
import sys

# Ensure backend package is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main() -> int:
    parser = argparse.ArgumentParser(description="Wipe mirrored mail for one or all users (keeps users table).")
    who = parser.add_mutually_exclusive_group(required=True)
    who.add_argument("--user-id", type=int)
    who.add_argument("--all", action="store_true")
    parser.add_argument(
        "--reset-cursor",
        action="store_true",
        help="Also clear prev_history_id so the next watch registration re-baselines and backfills.",
    )
    parser.add_argument(
        "--yes-really",
        action="store_true",
        help="Required. Actually perform the delete.",
    )
    args = parser.parse_args()

    if not args.yes_really:
        print(
            "Refusing to run without --yes-really.\n"
            "This deletes mirrored emails and threads.\n"
            "Example:\n"
            "  python backend/scripts/reset_user_mail.py --user-id 1 --yes-really",
            file=sys.stderr,
        )
        return 2

    # Import the DB layer only after confirmation so --help works without DB drivers.
    from mailmirror.database import SessionLocal
    from mailmirror.errors import SyncBusy
    from mailmirror.models import User
    from mailmirror.repository import MailRepository
    from mailmirror.user_lease import user_lease

    db = SessionLocal()
    try:
        repo = MailRepository(db)
        if args.all:
            user_ids = [row[0] for row in db.query(User.id).order_by(User.id).all()]
        else:
            if repo.get_user(args.user_id) is None:
                print(f"User {args.user_id} not found", file=sys.stderr)
                return 1
            user_ids = [args.user_id]

        failed = 0
        for user_id in user_ids:
            try:
                with user_lease(db, user_id):
                    counts = repo.clear_user_mail(user_id)
                    if args.reset_cursor:
                        repo.clear_prev_history_id(user_id)
            except SyncBusy:
                print(f"  - user {user_id}: sync in progress, skipped", file=sys.stderr)
                failed += 1
                continue
            print(
                f"  - user {user_id}: {counts['emails']} emails, {counts['threads']} threads, "
                f"{counts['pending_sync']} pending backfills"
            )
        print("Reset complete." if not failed else f"Reset finished; {failed} user(s) skipped.")
        return 0 if not failed else 1
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
