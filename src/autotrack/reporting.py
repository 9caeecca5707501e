"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

from .ledger import PendingQueue, RegistrationLedger
from .models import PendingItem, RegistrationRecord


def local_day_range(day: date) -> tuple[datetime, datetime]:
    """UTC bounds of a calendar day in the local timezone."""
    start = datetime.combine(day, time.min).astimezone()
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, ledger: RegistrationLedger, pending: PendingQueue) -> None:
        self.ledger = ledger
        self.pending = pending

    def print_daily_summary(self, day: date) -> None:
        start, end = local_day_range(day)
        records = self.ledger.records(start=start, end=end)
        waiting = [item for item in self.pending.items() if item.start < end and item.end > start]
        if not records and not waiting:
            print("No registered or pending activity for the selected day.")
            return

        registered = sum(_seconds(record) for record in records)
        print(f"Summary for {day.strftime('%Y-%m-%d')}")
        print("-" * 40)
        print(f"Registered time: {format_duration(registered)}")
        print(f"Pending time:    {format_duration(sum(_seconds(item) for item in waiting))}")
        print()

        top_entries = aggregate_by_label(records)
        if top_entries:
            print("Registered activities:")
            for (label, project), seconds in top_entries:
                project_label = f"[{project}]" if project else ""
                print(f"  {label[:30]:<30} {project_label[:14]:<14} {format_duration(seconds)}")

        if waiting:
            print()
            print("Waiting for confirmation:")
            for item in waiting:
                print(format_pending_line(item))


def print_pending(items: Iterable[PendingItem]) -> None:
    items = list(items)
    if not items:
        print("Nothing is waiting for confirmation.")
        return
    for item in items:
        print(format_pending_line(item))
        print(f"    key: {item.segment_key}")
        if item.registration_failed:
            print(f"    registration failed ({item.failure}); retried every cycle")
        for candidate in item.candidates:
            project = f" [{candidate.suggested_project}]" if candidate.suggested_project else ""
            print(
                f"    {candidate.confidence:.2f}  {candidate.label}{project}"
                f"  ({candidate.source.value})"
            )


def format_pending_line(item: PendingItem) -> str:
    start = item.start.astimezone().strftime("%H:%M")
    end = item.end.astimezone().strftime("%H:%M")
    title = item.titles[0] if item.titles else "(untitled)"
    return f"  {start}-{end}  {title[:50]}"


def aggregate_by_label(
    records: Iterable[RegistrationRecord],
) -> list[tuple[tuple[str, Optional[str]], float]]:
    totals: defaultdict[tuple[str, Optional[str]], float] = defaultdict(float)
    for record in records:
        totals[(record.label, record.project)] += _seconds(record)
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)


def _seconds(item: RegistrationRecord | PendingItem) -> float:
    return (item.end - item.start).total_seconds()


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
