# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # postgresql://... in production
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Every stock-mutating transaction runs at this isolation level.
    STOCK_ISOLATION_LEVEL = os.environ.get("STOCK_ISOLATION_LEVEL", "SERIALIZABLE")

    # Upper bound on reprocessing passes before giving up on a key.
    REPROCESS_MAX_PASSES = int(os.environ.get("REPROCESS_MAX_PASSES", "5"))

    # Seconds to wait for an in-process advisory lock (non-PostgreSQL databases).
    ADVISORY_LOCK_TIMEOUT = float(os.environ.get("ADVISORY_LOCK_TIMEOUT", "30"))
