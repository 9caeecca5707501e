"""Durable registration records and the pending-confirmation queue."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .db import (
    delete_pending_item,
    fetch_entry_start,
    fetch_last_cycle_end,
    fetch_latest_registration_ending_by,
    fetch_pending_item,
    fetch_pending_items,
    fetch_recent_cycles,
    fetch_registration_record,
    fetch_registration_records,
    insert_registration_record,
    open_database,
    record_cycle,
    transaction,
    upsert_pending_item,
)
from .errors import CollectionError
from .models import PendingItem, RegistrationRecord, TimeRange

logger = logging.getLogger(__name__)


class _Database:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        try:
            self._conn = open_database(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise CollectionError(f"Cannot open {self.db_path}: {exc}") from exc
        self._lock = threading.Lock()

    def _call(self, fn, *args):
        with self._lock:
            try:
                return fn(self._conn, *args)
            except sqlite3.Error as exc:
                raise CollectionError(f"{fn.__name__} failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RegistrationLedger(_Database):
    """Maps segment keys to the remote entries they produced.

    ``claim`` serializes everything done for one key, so the
    check-register-write sequence cannot interleave with a retried cycle.
    """

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self._claims: dict[str, threading.Lock] = {}
        self._claim_users: dict[str, int] = {}
        self._claims_guard = threading.Lock()

    def get(self, segment_key: str) -> Optional[RegistrationRecord]:
        return self._call(fetch_registration_record, segment_key)

    def latest_ending_by(self, moment: datetime) -> Optional[RegistrationRecord]:
        return self._call(fetch_latest_registration_ending_by, moment)

    def entry_start(self, entry_id: str) -> Optional[datetime]:
        return self._call(fetch_entry_start, entry_id)

    def records(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[RegistrationRecord]:
        return self._call(fetch_registration_records, start, end)

    @contextmanager
    def claim(self, segment_key: str) -> Iterator[Optional[RegistrationRecord]]:
        """Hold the lock for ``segment_key`` and yield its current record, if any."""
        with self._claims_guard:
            lock = self._claims.setdefault(segment_key, threading.Lock())
            self._claim_users[segment_key] = self._claim_users.get(segment_key, 0) + 1
        try:
            with lock:
                yield self.get(segment_key)
        finally:
            with self._claims_guard:
                self._claim_users[segment_key] -= 1
                if not self._claim_users[segment_key]:
                    del self._claim_users[segment_key]
                    del self._claims[segment_key]

    def write(self, record: RegistrationRecord) -> RegistrationRecord:
        """Persist ``record``; if another writer got there first, return theirs."""
        with self._lock:
            try:
                with transaction(self._conn):
                    existing = fetch_registration_record(self._conn, record.segment_key)
                    if existing is not None:
                        logger.warning(
                            "Segment %s already registered as %s; keeping it.",
                            record.segment_key,
                            existing.entry_id,
                        )
                        return existing
                    insert_registration_record(self._conn, record)
            except sqlite3.Error as exc:
                raise CollectionError(
                    f"Failed to persist registration for {record.segment_key}: {exc}"
                ) from exc
        return record


class PendingQueue(_Database):
    """Segments waiting for the user to pick or create a label."""

    def put(self, item: PendingItem) -> None:
        self._call(upsert_pending_item, item)

    def get(self, segment_key: str) -> Optional[PendingItem]:
        return self._call(fetch_pending_item, segment_key)

    def items(self) -> list[PendingItem]:
        return self._call(fetch_pending_items)

    def remove(self, segment_key: str) -> bool:
        return self._call(delete_pending_item, segment_key)

    def oldest_start(self) -> Optional[datetime]:
        items = self.items()
        return min((item.start for item in items), default=None)


class CycleJournal(_Database):
    """Which analysis windows have been processed."""

    def record(
        self,
        window: TimeRange,
        processed_at: datetime,
        *,
        auto_registered: int,
        pending: int,
        skipped: int,
    ) -> None:
        with self._lock:
            try:
                record_cycle(
                    self._conn,
                    window.start,
                    window.end,
                    processed_at,
                    auto_registered=auto_registered,
                    pending=pending,
                    skipped=skipped,
                )
            except sqlite3.Error as exc:
                raise CollectionError(f"Failed to record cycle {window.start}: {exc}") from exc

    def last_end(self) -> Optional[datetime]:
        return self._call(fetch_last_cycle_end)

    def recent(self, limit: int = 20) -> list[sqlite3.Row]:
        return self._call(fetch_recent_cycles, limit)
