"""FastAPI application that exposes a local API for reviewing and confirming activity."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from .errors import CycleInProgressError
from .models import (
    AutoRegistered,
    Candidate,
    DecisionOutcome,
    PendingConfirmation,
    PendingItem,
    RegistrationRecord,
    SkipReason,
    Skipped,
)
from .reporting import local_day_range
from .service import TrackerService

logger = logging.getLogger(__name__)


class ConfirmPayload(BaseModel):
    label: str
    project: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


def create_app(service: TrackerService, *, run_background: bool = True) -> FastAPI:
    """Instantiate the FastAPI application around a running tracker service."""
    app = FastAPI(title="autotrack", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1", "http://localhost"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service

    @app.on_event("startup")
    async def _startup() -> None:
        if run_background:
            service.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if run_background:
            service.stop()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        tracker: TrackerService = request.app.state.service
        settings = tracker.reloader.current()
        payload = tracker.status()
        payload.update(
            {
                "sample_seconds": settings.sample_interval.total_seconds(),
                "cycle_minutes": settings.cycle_length.total_seconds() / 60.0,
                "confidence_threshold": settings.confidence_threshold,
            }
        )
        return payload

    @app.get("/api/pending")
    def list_pending(request: Request) -> Dict[str, Any]:
        items = request.app.state.service.pending.items()
        return {"pending": [_pending_payload(item) for item in items]}

    @app.post("/api/pending/{key:path}/confirm")
    def confirm_pending(key: str, payload: ConfirmPayload, request: Request) -> Dict[str, Any]:
        tracker: TrackerService = request.app.state.service
        if not payload.label.strip():
            raise HTTPException(status_code=400, detail="label is required")
        try:
            outcome = tracker.pipeline.engine().confirm(key, payload.label, payload.project)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Pending item not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if isinstance(outcome, Skipped) and outcome.reason is SkipReason.REGISTRATION_FAILED:
            raise HTTPException(
                status_code=502, detail=f"Registration failed: {outcome.detail}"
            )
        return outcome_payload(outcome)

    @app.post("/api/pending/{key:path}/dismiss")
    def dismiss_pending(key: str, request: Request) -> Dict[str, Any]:
        try:
            outcome = request.app.state.service.pipeline.engine().dismiss(key)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Pending item not found") from exc
        return outcome_payload(outcome)

    @app.get("/api/registrations")
    def registrations(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        day = _parse_date(date)
        start, end = local_day_range(day.date())
        records = request.app.state.service.ledger.records(start=start, end=end)
        return {
            "date": day.strftime("%Y-%m-%d"),
            "registrations": [_record_payload(record) for record in records],
        }

    @app.post("/api/analyze")
    def analyze(request: Request) -> Dict[str, Any]:
        tracker: TrackerService = request.app.state.service
        try:
            reports = tracker.pipeline.run_due_cycles()
        except CycleInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "cycles": [
                {
                    "start": report.window.start.isoformat(),
                    "end": report.window.end.isoformat(),
                    "classifier": report.classifier,
                    "outcomes": [outcome_payload(o) for o in report.outcomes],
                    "reconsidered": [outcome_payload(o) for o in report.reconsidered],
                }
                for report in reports
            ]
        }

    return app


def outcome_payload(outcome: DecisionOutcome) -> Dict[str, Any]:
    if isinstance(outcome, AutoRegistered):
        return {
            "outcome": "auto_registered",
            "segment_key": outcome.segment_key,
            "entry_id": outcome.entry_id,
            "label": outcome.label,
            "project": outcome.project,
            "reused": outcome.reused,
        }
    if isinstance(outcome, PendingConfirmation):
        return {
            "outcome": "pending_confirmation",
            "segment_key": outcome.segment_key,
            "candidates": [_candidate_payload(c) for c in outcome.candidates],
        }
    return {
        "outcome": "skipped",
        "segment_key": outcome.segment_key,
        "reason": outcome.reason.value,
        "detail": outcome.detail,
    }


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        return _start_of_day(datetime.now())
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc
    return _start_of_day(parsed)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _candidate_payload(candidate: Candidate) -> Dict[str, Any]:
    return {
        "label": candidate.label,
        "confidence": candidate.confidence,
        "project": candidate.suggested_project,
        "source": candidate.source.value,
    }


def _pending_payload(item: PendingItem) -> Dict[str, Any]:
    return {
        "segment_key": item.segment_key,
        "start": item.start.isoformat(),
        "end": item.end.isoformat(),
        "titles": list(item.titles),
        "candidates": [_candidate_payload(c) for c in item.candidates],
        "created_at": item.created_at.isoformat(),
        "registration_failure": item.failure,
    }


def _record_payload(record: RegistrationRecord) -> Dict[str, Any]:
    return {
        "segment_key": record.segment_key,
        "entry_id": record.entry_id,
        "label": record.label,
        "project": record.project,
        "start": record.start.isoformat(),
        "end": record.end.isoformat(),
        "duration_seconds": (record.end - record.start).total_seconds(),
        "confirmed_by_user": record.confirmed_by_user,
    }
