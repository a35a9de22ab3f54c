# Overview: Transaction-scoped advisory locks keyed by (store, product).
"""
Advisory locks serialize reprocessing against other writers of the same
(store, product) for the lifetime of one transaction.

PostgreSQL: pg_advisory_xact_lock(key), released by the server on commit or
rollback.

Other dialects (SQLite in development and tests): a process-local lock per
key, released from the session's after_transaction_end hook when the
outermost transaction ends. A session that already holds a key does not
block on it again.
"""

from __future__ import annotations

import hashlib
import threading
from typing import Iterable

from flask import current_app
from sqlalchemy import event, text
from sqlalchemy.orm import Session

from ..errors import ConcurrencyConflict
from ..extensions import db


SESSION_INFO_KEY = "stockledger.advisory_keys"

_registry_guard = threading.Lock()
_registry: dict[int, threading.Lock] = {}


def advisory_key(store_id: int, product_id: int) -> int:
    """Signed 64-bit key derived from "<store>-<product>"."""
    digest = hashlib.blake2b(f"{store_id}-{product_id}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _local_lock(key: int) -> threading.Lock:
    with _registry_guard:
        lock = _registry.get(key)
        if lock is None:
            lock = threading.Lock()
            _registry[key] = lock
        return lock


def acquire_advisory_locks(pairs: Iterable[tuple[int, int]]) -> list[int]:
    """
    Block until every (store_id, product_id) lock is held by the current transaction.

    Keys are taken in sorted order so two writers locking overlapping sets
    cannot deadlock each other.
    """
    keys = sorted({advisory_key(store_id, product_id) for store_id, product_id in pairs})
    if not keys:
        return keys

    session = db.session()
    # Opens the transaction the locks are scoped to.
    connection = session.connection()

    if connection.dialect.name == "postgresql":
        for key in keys:
            session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
        return keys

    held = session.info.setdefault(SESSION_INFO_KEY, set())
    timeout = float(current_app.config.get("ADVISORY_LOCK_TIMEOUT", 30))
    for key in keys:
        if key in held:
            continue
        if not _local_lock(key).acquire(timeout=timeout):
            raise ConcurrencyConflict(f"Timed out after {timeout}s waiting for advisory lock {key}")
        held.add(key)
    return keys


def held_advisory_keys(session=None) -> frozenset:
    session = session if session is not None else db.session()
    return frozenset(session.info.get(SESSION_INFO_KEY, ()))


@event.listens_for(Session, "after_transaction_end")
def _release_local_locks(session, transaction):
    if transaction.parent is not None:
        return
    held = session.info.pop(SESSION_INFO_KEY, None)
    if not held:
        return
    for key in held:
        _local_lock(key).release()
