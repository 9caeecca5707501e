"""SQLite database layer for samples, calendar events and registrations."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import (
    CalendarEvent,
    Candidate,
    CandidateSource,
    PendingItem,
    RegistrationRecord,
    Sample,
)


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"


def to_db(value: datetime) -> str:
    """Format an aware datetime as a sortable UTC string."""
    if value.tzinfo is None:
        raise ValueError(f"naive datetime {value!r} cannot be stored")
    return value.astimezone(timezone.utc).strftime(DATETIME_FMT)


def from_db(value: str) -> datetime:
    return datetime.strptime(value, DATETIME_FMT).replace(tzinfo=timezone.utc)


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
        timeout=30.0,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA busy_timeout = 30000;")
    initialize_schema(conn)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` so writers are serialized."""
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    else:
        conn.execute("COMMIT;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS samples (
            id INTEGER PRIMARY KEY,
            timestamp TEXT NOT NULL,
            window_title TEXT NOT NULL,
            process_hint TEXT,
            is_idle INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_samples_timestamp
            ON samples(timestamp);

        CREATE TABLE IF NOT EXISTS calendar_events (
            event_id TEXT PRIMARY KEY,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            calendar_id TEXT,
            cancelled INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_events_start
            ON calendar_events(start_time);

        CREATE TABLE IF NOT EXISTS registration_records (
            segment_key TEXT PRIMARY KEY,
            entry_id TEXT NOT NULL,
            label TEXT NOT NULL,
            project TEXT,
            title_key TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            created_at TEXT NOT NULL,
            confirmed_by_user INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_registration_records_end
            ON registration_records(end_time);

        CREATE TABLE IF NOT EXISTS pending_items (
            segment_key TEXT PRIMARY KEY,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            titles TEXT NOT NULL,
            candidates TEXT NOT NULL,
            created_at TEXT NOT NULL,
            failure TEXT
        );

        CREATE TABLE IF NOT EXISTS analysis_cycles (
            start_time TEXT PRIMARY KEY,
            end_time TEXT NOT NULL,
            processed_at TEXT NOT NULL,
            auto_registered INTEGER NOT NULL DEFAULT 0,
            pending INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0
        );
        """
    )


# -- samples -------------------------------------------------------------------


def insert_samples(conn: sqlite3.Connection, samples: Iterable[Sample]) -> None:
    conn.executemany(
        """
        INSERT INTO samples (
            timestamp,
            window_title,
            process_hint,
            is_idle
        ) VALUES (?, ?, ?, ?)
        """,
        [
            (
                to_db(sample.timestamp),
                sample.window_title,
                sample.process_hint,
                1 if sample.is_idle else 0,
            )
            for sample in samples
        ],
    )


def fetch_samples(
    conn: sqlite3.Connection, start: datetime, end: datetime
) -> list[Sample]:
    """Samples with ``start <= timestamp <= end`` in timestamp order."""
    rows = conn.execute(
        """
        SELECT timestamp, window_title, process_hint, is_idle
        FROM samples
        WHERE timestamp >= ? AND timestamp <= ?
        ORDER BY timestamp, id;
        """,
        (to_db(start), to_db(end)),
    )
    return [_row_to_sample(row) for row in rows]


def fetch_latest_sample_before(
    conn: sqlite3.Connection, moment: datetime
) -> Optional[Sample]:
    row = conn.execute(
        """
        SELECT timestamp, window_title, process_hint, is_idle
        FROM samples
        WHERE timestamp < ?
        ORDER BY timestamp DESC, id DESC
        LIMIT 1;
        """,
        (to_db(moment),),
    ).fetchone()
    return _row_to_sample(row) if row else None


def _row_to_sample(row: sqlite3.Row) -> Sample:
    return Sample(
        timestamp=from_db(row["timestamp"]),
        window_title=row["window_title"],
        process_hint=row["process_hint"],
        is_idle=bool(row["is_idle"]),
    )


# -- calendar events -----------------------------------------------------------


def upsert_calendar_events(
    conn: sqlite3.Connection, events: Iterable[CalendarEvent]
) -> None:
    conn.executemany(
        """
        INSERT INTO calendar_events (
            event_id, start_time, end_time, title, description, calendar_id, cancelled
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(event_id) DO UPDATE SET
            start_time = excluded.start_time,
            end_time = excluded.end_time,
            title = excluded.title,
            description = excluded.description,
            calendar_id = excluded.calendar_id,
            cancelled = excluded.cancelled
        """,
        [
            (
                event.event_id,
                to_db(event.start),
                to_db(event.end),
                event.title,
                event.description,
                event.calendar_id,
                1 if event.cancelled else 0,
            )
            for event in events
        ],
    )


def cancel_missing_calendar_events(
    conn: sqlite3.Connection,
    calendar_id: str,
    start: datetime,
    end: datetime,
    keep_ids: Iterable[str],
) -> int:
    """Mark events of a calendar window that a re-fetch no longer returned."""
    keep = list(keep_ids)
    placeholders = ", ".join("?" for _ in keep)
    query = """
        UPDATE calendar_events SET cancelled = 1
        WHERE calendar_id = ? AND cancelled = 0 AND start_time >= ? AND start_time < ?
    """
    params: list[object] = [calendar_id, to_db(start), to_db(end)]
    if keep:
        query += f" AND event_id NOT IN ({placeholders})"
        params.extend(keep)
    cur = conn.execute(query, params)
    return cur.rowcount


def fetch_calendar_events(
    conn: sqlite3.Connection, start: datetime, end: datetime
) -> list[CalendarEvent]:
    """Non-cancelled events overlapping ``[start, end]`` ordered by start."""
    rows = conn.execute(
        """
        SELECT event_id, start_time, end_time, title, description, calendar_id, cancelled
        FROM calendar_events
        WHERE cancelled = 0 AND start_time <= ? AND end_time >= ?
        ORDER BY start_time, event_id;
        """,
        (to_db(end), to_db(start)),
    )
    return [
        CalendarEvent(
            event_id=row["event_id"],
            start=from_db(row["start_time"]),
            end=from_db(row["end_time"]),
            title=row["title"],
            description=row["description"],
            calendar_id=row["calendar_id"],
            cancelled=bool(row["cancelled"]),
        )
        for row in rows
    ]


# -- registration records ------------------------------------------------------


def insert_registration_record(
    conn: sqlite3.Connection, record: RegistrationRecord
) -> None:
    """Insert a record; raises ``sqlite3.IntegrityError`` if the key exists."""
    conn.execute(
        """
        INSERT INTO registration_records (
            segment_key, entry_id, label, project, title_key,
            start_time, end_time, created_at, confirmed_by_user
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.segment_key,
            record.entry_id,
            record.label,
            record.project,
            record.title_key,
            to_db(record.start),
            to_db(record.end),
            to_db(record.created_at),
            1 if record.confirmed_by_user else 0,
        ),
    )


def fetch_registration_record(
    conn: sqlite3.Connection, segment_key: str
) -> Optional[RegistrationRecord]:
    row = conn.execute(
        "SELECT * FROM registration_records WHERE segment_key = ?",
        (segment_key,),
    ).fetchone()
    return _row_to_record(row) if row else None


def fetch_latest_registration_ending_by(
    conn: sqlite3.Connection, moment: datetime
) -> Optional[RegistrationRecord]:
    row = conn.execute(
        """
        SELECT * FROM registration_records
        WHERE end_time <= ?
        ORDER BY end_time DESC, created_at DESC
        LIMIT 1;
        """,
        (to_db(moment),),
    ).fetchone()
    return _row_to_record(row) if row else None


def fetch_registration_records(
    conn: sqlite3.Connection,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[RegistrationRecord]:
    clauses: list[str] = []
    params: list[object] = []
    if start is not None:
        clauses.append("end_time > ?")
        params.append(to_db(start))
    if end is not None:
        clauses.append("start_time < ?")
        params.append(to_db(end))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM registration_records {where} ORDER BY start_time, segment_key",
        params,
    )
    return [_row_to_record(row) for row in rows]


def fetch_entry_start(conn: sqlite3.Connection, entry_id: str) -> Optional[datetime]:
    """Earliest segment start among records sharing ``entry_id``."""
    row = conn.execute(
        "SELECT MIN(start_time) AS start_time FROM registration_records WHERE entry_id = ?",
        (entry_id,),
    ).fetchone()
    if row is None or row["start_time"] is None:
        return None
    return from_db(row["start_time"])


def _row_to_record(row: sqlite3.Row) -> RegistrationRecord:
    return RegistrationRecord(
        segment_key=row["segment_key"],
        entry_id=row["entry_id"],
        label=row["label"],
        project=row["project"],
        title_key=row["title_key"],
        start=from_db(row["start_time"]),
        end=from_db(row["end_time"]),
        created_at=from_db(row["created_at"]),
        confirmed_by_user=bool(row["confirmed_by_user"]),
    )


# -- pending items -------------------------------------------------------------


def upsert_pending_item(conn: sqlite3.Connection, item: PendingItem) -> None:
    """Insert a pending item, or refresh candidates and failure keeping ``created_at``."""
    conn.execute(
        """
        INSERT INTO pending_items (
            segment_key, start_time, end_time, titles, candidates, created_at, failure
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(segment_key) DO UPDATE SET
            candidates = excluded.candidates,
            failure = excluded.failure
        """,
        (
            item.segment_key,
            to_db(item.start),
            to_db(item.end),
            json.dumps(list(item.titles)),
            _candidates_to_json(item.candidates),
            to_db(item.created_at),
            item.failure,
        ),
    )


def fetch_pending_items(conn: sqlite3.Connection) -> list[PendingItem]:
    rows = conn.execute("SELECT * FROM pending_items ORDER BY start_time, segment_key")
    return [_row_to_pending(row) for row in rows]


def fetch_pending_item(
    conn: sqlite3.Connection, segment_key: str
) -> Optional[PendingItem]:
    row = conn.execute(
        "SELECT * FROM pending_items WHERE segment_key = ?", (segment_key,)
    ).fetchone()
    return _row_to_pending(row) if row else None


def delete_pending_item(conn: sqlite3.Connection, segment_key: str) -> bool:
    cur = conn.execute("DELETE FROM pending_items WHERE segment_key = ?", (segment_key,))
    return cur.rowcount > 0


def _candidates_to_json(candidates: Iterable[Candidate]) -> str:
    return json.dumps(
        [
            {
                "label": candidate.label,
                "confidence": candidate.confidence,
                "project": candidate.suggested_project,
                "source": candidate.source.value,
            }
            for candidate in candidates
        ]
    )


def _row_to_pending(row: sqlite3.Row) -> PendingItem:
    candidates = tuple(
        Candidate(
            label=item["label"],
            confidence=float(item["confidence"]),
            suggested_project=item.get("project"),
            source=CandidateSource(item.get("source", CandidateSource.OFFLINE.value)),
        )
        for item in json.loads(row["candidates"])
    )
    return PendingItem(
        segment_key=row["segment_key"],
        start=from_db(row["start_time"]),
        end=from_db(row["end_time"]),
        titles=tuple(json.loads(row["titles"])),
        candidates=candidates,
        created_at=from_db(row["created_at"]),
        failure=row["failure"],
    )


# -- analysis cycles -----------------------------------------------------------


def record_cycle(
    conn: sqlite3.Connection,
    start: datetime,
    end: datetime,
    processed_at: datetime,
    *,
    auto_registered: int,
    pending: int,
    skipped: int,
) -> None:
    conn.execute(
        """
        INSERT INTO analysis_cycles (
            start_time, end_time, processed_at, auto_registered, pending, skipped
        ) VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(start_time) DO UPDATE SET
            end_time = excluded.end_time,
            processed_at = excluded.processed_at,
            auto_registered = excluded.auto_registered,
            pending = excluded.pending,
            skipped = excluded.skipped
        """,
        (to_db(start), to_db(end), to_db(processed_at), auto_registered, pending, skipped),
    )


def fetch_last_cycle_end(conn: sqlite3.Connection) -> Optional[datetime]:
    row = conn.execute("SELECT MAX(end_time) AS end_time FROM analysis_cycles").fetchone()
    if row is None or row["end_time"] is None:
        return None
    return from_db(row["end_time"])


def fetch_recent_cycles(conn: sqlite3.Connection, limit: int = 20) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            "SELECT * FROM analysis_cycles ORDER BY start_time DESC LIMIT ?",
            (limit,),
        )
    )


# -- retention -----------------------------------------------------------------


def prune_before(conn: sqlite3.Connection, cutoff: datetime) -> tuple[int, int]:
    """Delete samples and calendar events that ended before ``cutoff``."""
    cutoff_db = to_db(cutoff)
    samples = conn.execute("DELETE FROM samples WHERE timestamp < ?", (cutoff_db,)).rowcount
    events = conn.execute(
        "DELETE FROM calendar_events WHERE end_time < ?", (cutoff_db,)
    ).rowcount
    return samples, events
