"""Time-tracking registration gateway backed by the Toggl Track v9 API."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .errors import RegistrationError, RegistrationErrorKind
from .models import TimeRange
from .projects import ProjectHints, infer_project

logger = logging.getLogger(__name__)

TOGGL_API_URL = "https://api.track.toggl.com/api/v9"
CREATED_WITH = "autotrack"


class RegistrationGateway(ABC):
    """Creates and extends remote time entries.

    ``timeout`` bounds each remote call in seconds; ``None`` keeps the
    gateway's default.
    """

    @abstractmethod
    def register(
        self,
        label: str,
        project: Optional[str],
        time_range: TimeRange,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Create an entry and return its id.

        Raises:
            RegistrationError: network, auth or project failures.
        """
        ...

    @abstractmethod
    def extend(
        self, entry_id: str, time_range: TimeRange, *, timeout: Optional[float] = None
    ) -> str:
        """Stretch an existing entry to cover ``time_range`` and return its id."""
        ...

    def resolve_project(
        self,
        label: str,
        project: Optional[str],
        hints: ProjectHints = ProjectHints(),
        *,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Project name to register ``label`` under."""
        return project


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class TogglGateway(RegistrationGateway):
    def __init__(
        self,
        api_token: str,
        workspace_id: int,
        *,
        timeout: float = 10.0,
        base_url: str = TOGGL_API_URL,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = httpx.BasicAuth(api_token, "api_token")
        self._client = http_client or httpx.Client(timeout=timeout)
        self._projects: Optional[dict[str, int]] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "TogglGateway":
        return cls(config.api_token, config.workspace_id, timeout=config.timeout_secs)

    def register(
        self,
        label: str,
        project: Optional[str],
        time_range: TimeRange,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        project_id = self._project_id(project, timeout) if project else None
        body: dict[str, Any] = {
            "description": label,
            "workspace_id": self.workspace_id,
            "start": format_timestamp(time_range.start),
            "stop": format_timestamp(time_range.end),
            "duration": int(time_range.duration.total_seconds()),
            "created_with": CREATED_WITH,
        }
        if project_id is not None:
            body["project_id"] = project_id
        data = self._request(
            "POST", f"/workspaces/{self.workspace_id}/time_entries", timeout, json=body
        )
        entry_id = data.get("id") if isinstance(data, dict) else None
        if entry_id is None:
            raise RegistrationError(RegistrationErrorKind.NETWORK, "Response carried no entry id")
        logger.debug("Created time entry %s for %r (%s)", entry_id, label, project)
        return str(entry_id)

    def extend(
        self, entry_id: str, time_range: TimeRange, *, timeout: Optional[float] = None
    ) -> str:
        body = {
            "start": format_timestamp(time_range.start),
            "stop": format_timestamp(time_range.end),
            "duration": int(time_range.duration.total_seconds()),
        }
        self._request(
            "PUT", f"/workspaces/{self.workspace_id}/time_entries/{entry_id}", timeout, json=body
        )
        logger.debug("Extended time entry %s to %s", entry_id, time_range.end)
        return str(entry_id)

    def resolve_project(
        self,
        label: str,
        project: Optional[str],
        hints: ProjectHints = ProjectHints(),
        *,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Map a suggested project onto the workspace's project names.

        An exact (case-insensitive) name wins. Otherwise the names are scored
        against the suggested project, then against the label, using the
        window and calendar titles as extra evidence. A suggested project
        that matches nothing is rejected; without a suggestion the entry may
        stay without a project.

        Raises:
            RegistrationError: ``INVALID_PROJECT`` for an unmatched suggestion,
                or any failure listing the projects.
        """
        names = list(self.list_projects(timeout=timeout))
        if project:
            folded = project.strip().casefold()
            for name in names:
                if name.casefold() == folded:
                    return name
            inferred = infer_project(names, project, hints) or infer_project(names, label, hints)
            if inferred is None:
                raise RegistrationError(
                    RegistrationErrorKind.INVALID_PROJECT, f"Unknown project {project!r}"
                )
            logger.info("Using project %r for suggested %r.", inferred, project)
            return inferred
        return infer_project(names, label, hints)

    def list_projects(self, *, timeout: Optional[float] = None) -> dict[str, int]:
        """Project names of the workspace mapped to their ids (cached)."""
        with self._lock:
            if self._projects is None:
                data = self._request(
                    "GET", f"/workspaces/{self.workspace_id}/projects", timeout
                )
                self._projects = {
                    str(item["name"]): int(item["id"])
                    for item in data or []
                    if isinstance(item, dict) and "name" in item and "id" in item
                }
            return dict(self._projects)

    def _project_id(self, project: str, timeout: Optional[float] = None) -> int:
        folded = project.strip().casefold()
        for name, project_id in self.list_projects(timeout=timeout).items():
            if name.casefold() == folded:
                return project_id
        raise RegistrationError(
            RegistrationErrorKind.INVALID_PROJECT, f"Unknown project {project!r}"
        )

    def _request(
        self, method: str, path: str, timeout: Optional[float] = None, **kwargs: Any
    ) -> Any:
        url = f"{self.base_url}{path}"
        timeout = self.timeout if timeout is None else timeout
        try:
            response = self._client.request(
                method, url, auth=self._auth, timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise RegistrationError(
                RegistrationErrorKind.NETWORK, f"{method} {path} timed out after {timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise RegistrationError(RegistrationErrorKind.NETWORK, f"{method} {path}: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise RegistrationError(RegistrationErrorKind.AUTH, f"HTTP {status} from {path}")
        if status in (400, 404, 422):
            raise RegistrationError(
                RegistrationErrorKind.INVALID_PROJECT, f"HTTP {status}: {response.text[:200]}"
            )
        if status >= 300:
            raise RegistrationError(RegistrationErrorKind.NETWORK, f"HTTP {status} from {path}")
        try:
            return response.json()
        except ValueError as exc:
            raise RegistrationError(RegistrationErrorKind.NETWORK, f"Invalid JSON from {path}") from exc

    def close(self) -> None:
        self._client.close()
