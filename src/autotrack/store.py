"""Append-only store of window samples and calendar events."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .db import (
    cancel_missing_calendar_events,
    fetch_calendar_events,
    fetch_latest_sample_before,
    fetch_samples,
    insert_samples,
    open_database,
    prune_before,
    transaction,
    upsert_calendar_events,
)
from .errors import CollectionError
from .models import CalendarEvent, Sample, StoreItem, TimeRange

logger = logging.getLogger(__name__)


class SampleStore:
    """Persists collector output and serves range-scoped reads.

    Writes are single short transactions so the sampler never waits on
    analysis. Reads never mutate anything and can be repeated freely.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        try:
            self._conn = open_database(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise CollectionError(f"Cannot open store at {self.db_path}: {exc}") from exc
        self._lock = threading.Lock()

    def append(self, item: StoreItem) -> None:
        self.append_many([item])

    def append_many(self, items: Iterable[StoreItem]) -> None:
        samples: list[Sample] = []
        events: list[CalendarEvent] = []
        for item in items:
            if isinstance(item, Sample):
                samples.append(item)
            elif isinstance(item, CalendarEvent):
                events.append(item)
            else:
                raise TypeError(f"Cannot store {type(item).__name__}")
        if not samples and not events:
            return
        with self._lock:
            try:
                with transaction(self._conn):
                    if samples:
                        insert_samples(self._conn, samples)
                    if events:
                        upsert_calendar_events(self._conn, events)
            except sqlite3.Error as exc:
                logger.error("Store write failed: %s", exc)
                raise CollectionError(f"Failed to write {len(samples) + len(events)} items: {exc}") from exc

    def query(self, time_range: TimeRange) -> list[StoreItem]:
        """Samples and calendar events within the inclusive range, by timestamp."""
        samples = self.samples_between(time_range.start, time_range.end)
        events = self.events_overlapping(time_range.start, time_range.end)
        items: list[StoreItem] = [*samples, *events]
        # Stable sort keeps samples ahead of events that share a timestamp.
        return sorted(items, key=lambda item: item.timestamp)

    def samples_between(self, start: datetime, end: datetime) -> list[Sample]:
        return self._read(fetch_samples, start, end)

    def events_overlapping(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        return self._read(fetch_calendar_events, start, end)

    def latest_sample_before(self, moment: datetime) -> Optional[Sample]:
        return self._read(fetch_latest_sample_before, moment)

    def sync_calendar(
        self,
        calendar_id: str,
        window: TimeRange,
        events: Sequence[CalendarEvent],
    ) -> None:
        """Store a fresh fetch of one calendar window.

        Events the remote calendar no longer returns are flagged as
        cancelled rather than deleted.
        """
        with self._lock:
            try:
                with transaction(self._conn):
                    upsert_calendar_events(self._conn, events)
                    cancelled = cancel_missing_calendar_events(
                        self._conn,
                        calendar_id,
                        window.start,
                        window.end,
                        [event.event_id for event in events],
                    )
            except sqlite3.Error as exc:
                raise CollectionError(f"Failed to sync calendar {calendar_id}: {exc}") from exc
        if cancelled:
            logger.info("Calendar %s: %d events removed remotely.", calendar_id, cancelled)

    def prune(self, cutoff: datetime) -> tuple[int, int]:
        """Delete data older than ``cutoff``; callers pick a cutoff that spares unprocessed cycles."""
        with self._lock:
            try:
                with transaction(self._conn):
                    samples, events = prune_before(self._conn, cutoff)
            except sqlite3.Error as exc:
                raise CollectionError(f"Failed to prune store: {exc}") from exc
        if samples or events:
            logger.info("Pruned %d samples and %d calendar events before %s.", samples, events, cutoff)
        return samples, events

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _read(self, fn, *args):
        with self._lock:
            try:
                return fn(self._conn, *args)
            except sqlite3.Error as exc:
                raise CollectionError(f"Store read failed: {exc}") from exc
