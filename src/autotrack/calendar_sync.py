"""Google Calendar reader that keeps calendar events in the sample store."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from .config import GoogleCalendarConfig
from .errors import CollectionError
from .models import CalendarEvent, TimeRange, utc_now
from .store import SampleStore

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"
LOOKBACK = timedelta(hours=1)
LOOKAHEAD = timedelta(hours=24)


def parse_event_time(value: dict[str, Any]) -> Optional[datetime]:
    """Read a ``start``/``end`` object; all-day events start at UTC midnight."""
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    if value.get("date"):
        return datetime.fromisoformat(value["date"]).replace(tzinfo=timezone.utc)
    return None


def parse_event(item: dict[str, Any], calendar_id: str) -> Optional[CalendarEvent]:
    start = parse_event_time(item.get("start") or {})
    end = parse_event_time(item.get("end") or {})
    if not item.get("id") or start is None or end is None or end <= start:
        return None
    return CalendarEvent(
        event_id=str(item["id"]),
        start=start,
        end=end,
        title=item.get("summary") or "(no title)",
        description=item.get("description"),
        calendar_id=calendar_id,
        cancelled=item.get("status") == "cancelled",
    )


class GoogleCalendarSync:
    """Fetches events around "now" for each configured calendar.

    With no ``[google_calendar]`` section the sync is a no-op that yields
    zero events.
    """

    def __init__(
        self,
        store: SampleStore,
        config: Optional[GoogleCalendarConfig],
        *,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.timeout = timeout
        self._client = http_client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.config is not None and bool(self.config.refresh_token)

    def sync_once(self) -> int:
        """Fetch and store the current window; returns the number of live events."""
        if not self.enabled:
            return 0
        now = self._clock()
        window = TimeRange(now - LOOKBACK, now + LOOKAHEAD)
        total = 0
        for calendar_id in self.config.calendar_id_list:
            events = self.fetch_events(calendar_id, window)
            self.store.sync_calendar(calendar_id, window, events)
            total += sum(1 for event in events if not event.cancelled)
        logger.debug("Calendar sync stored %d events.", total)
        return total

    def fetch_events(self, calendar_id: str, window: TimeRange) -> list[CalendarEvent]:
        params = {
            "timeMin": window.start.isoformat(),
            "timeMax": window.end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "true",
        }
        url = f"{CALENDAR_API_URL}/calendars/{quote(calendar_id, safe='')}/events"
        events: list[CalendarEvent] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            data = self._get(url, params)
            for item in data.get("items", []):
                event = parse_event(item, calendar_id)
                if event is not None:
                    events.append(event)
            page_token = data.get("nextPageToken")
            if not page_token:
                return events

    def _get(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token()}"}
        try:
            response = self._client.get(url, params=params, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise CollectionError(f"Calendar request failed: {exc}") from exc
        if response.status_code == 401:
            with self._lock:
                self._access_token = None
        if response.status_code != 200:
            raise CollectionError(f"Calendar API returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise CollectionError("Calendar API returned invalid JSON") from exc

    def _token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._access_token and self._token_expiry and now < self._token_expiry:
                return self._access_token
            assert self.config is not None
            form = {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": self.config.refresh_token,
                "grant_type": "refresh_token",
            }
            try:
                response = self._client.post(TOKEN_URL, data=form, timeout=self.timeout)
            except httpx.HTTPError as exc:
                raise CollectionError(f"Token refresh failed: {exc}") from exc
            if response.status_code != 200:
                raise CollectionError(f"Token refresh returned HTTP {response.status_code}")
            try:
                payload = response.json()
            except ValueError as exc:
                raise CollectionError("Token refresh returned invalid JSON") from exc
            token = payload.get("access_token")
            if not token:
                raise CollectionError("Token refresh response carried no access_token")
            expires_in = int(payload.get("expires_in", 3600))
            self._access_token = token
            # Refresh a minute early.
            self._token_expiry = now + timedelta(seconds=max(expires_in - 60, 0))
            return token

    def close(self) -> None:
        self._client.close()
