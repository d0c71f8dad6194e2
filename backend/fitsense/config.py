# backend/fitsense/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///fitsense.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Reconciliation report keeps only a sample of per-account outcomes
    RECONCILIATION_DETAIL_LIMIT = int(os.environ.get("RECONCILIATION_DETAIL_LIMIT", "20"))

    # Bulk import reports at most this many row errors
    IMPORT_ERROR_LIMIT = 5

    PAYMENT_HISTORY_LIMIT = 500

    # Read-only statistics endpoints may be cached by the client
    STATS_CACHE_SECONDS = int(os.environ.get("STATS_CACHE_SECONDS", "10"))

    EXPIRING_SOON_DAYS = 7

    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    # Callable(to, subject, body). None means log-only delivery.
    EMAIL_DISPATCHER = None
