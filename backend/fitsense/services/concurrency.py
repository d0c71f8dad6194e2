# Overview: Row locking and optimistic-conflict retry for read-modify-write operations.

from __future__ import annotations

import time

from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for ledger mutations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id compare-and-swap still catches conflicts there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a read-modify-write closure, re-running it on lost-update conflicts.

    Only StaleDataError (version_id mismatch at flush) is retried: the whole
    closure runs again against fresh state. Any other store error propagates
    to the caller unchanged.
    """
    for attempt in range(attempts):
        try:
            return func()
        except StaleDataError:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
