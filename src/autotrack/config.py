"""Configuration models and helpers for the tracker."""

from __future__ import annotations

import logging
import threading
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_PLACEHOLDER_PREFIX = "your_"


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Values the engine reads once at the start of every analysis cycle."""

    sample_interval: timedelta = timedelta(seconds=60)
    cycle_length: timedelta = timedelta(minutes=15)
    idle_threshold: timedelta = timedelta(minutes=5)
    debounce: timedelta = timedelta(seconds=90)
    confidence_threshold: float = 0.5
    excluded_projects: frozenset[str] = field(default_factory=frozenset)
    online_enabled: bool = False
    classifier_timeout: timedelta = timedelta(seconds=10)
    registration_timeout: timedelta = timedelta(seconds=10)
    retention: timedelta = timedelta(days=30)
    pending_expiry: timedelta = timedelta(hours=24)
    continuity_gap: timedelta = timedelta(minutes=15)
    skip_private_windows: bool = True
    max_catchup_cycles: int = 8

    @property
    def max_sample_span(self) -> timedelta:
        """Longest stretch a single sample may stand for before it counts as a gap."""
        return self.sample_interval * 2

    def is_excluded(self, project: Optional[str]) -> bool:
        if not project:
            return False
        folded = project.strip().casefold()
        return any(folded == excluded.strip().casefold() for excluded in self.excluded_projects)


class GeneralConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: Optional[Path] = None
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    collect_interval_secs: int = Field(default=60, ge=1)
    analysis_interval_minutes: int = Field(default=15, ge=1, le=24 * 60)
    idle_threshold_secs: int = Field(default=300, ge=1)
    debounce_secs: int = Field(default=90, ge=0)
    excluded_projects: list[str] = Field(default_factory=list)
    retention_days: int = Field(default=30, ge=1)
    pending_expiry_hours: float = Field(default=24.0, gt=0)
    continuity_gap_minutes: float = Field(default=15.0, ge=0)
    skip_private_windows: bool = True


class TogglConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_token: str
    workspace_id: int
    timeout_secs: float = Field(default=10.0, gt=0)


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    api_key: str = ""
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    timeout_secs: float = Field(default=10.0, gt=0)


class GoogleCalendarConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str
    client_secret: str
    refresh_token: str
    calendar_ids: str = "primary"
    sync_interval_minutes: float = Field(default=5.0, gt=0)

    @property
    def calendar_id_list(self) -> list[str]:
        return [item.strip() for item in self.calendar_ids.split(",") if item.strip()]


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    toggl: Optional[TogglConfig] = None
    openai: Optional[OpenAIConfig] = None
    google_calendar: Optional[GoogleCalendarConfig] = None

    @property
    def online_enabled(self) -> bool:
        return bool(self.openai and self.openai.enabled)

    def engine_settings(self) -> EngineSettings:
        general = self.general
        return EngineSettings(
            sample_interval=timedelta(seconds=general.collect_interval_secs),
            cycle_length=timedelta(minutes=general.analysis_interval_minutes),
            idle_threshold=timedelta(seconds=general.idle_threshold_secs),
            debounce=timedelta(seconds=general.debounce_secs),
            confidence_threshold=general.confidence_threshold,
            excluded_projects=frozenset(general.excluded_projects),
            online_enabled=self.online_enabled,
            classifier_timeout=timedelta(
                seconds=self.openai.timeout_secs if self.openai else 10.0
            ),
            registration_timeout=timedelta(
                seconds=self.toggl.timeout_secs if self.toggl else 10.0
            ),
            retention=timedelta(days=general.retention_days),
            pending_expiry=timedelta(hours=general.pending_expiry_hours),
            continuity_gap=timedelta(minutes=general.continuity_gap_minutes),
            skip_private_windows=general.skip_private_windows,
        )

    def require_registration(self) -> TogglConfig:
        """Return the Toggl settings or fail; the daemon cannot run without them."""
        if self.toggl is None:
            raise ConfigurationError("[toggl] section is required to register time entries")
        if not self.toggl.api_token or self.toggl.api_token.startswith(_PLACEHOLDER_PREFIX):
            raise ConfigurationError("toggl.api_token is not set")
        if self.toggl.workspace_id <= 0:
            raise ConfigurationError("toggl.workspace_id must be a positive id")
        return self.toggl


def parse_config(text: str) -> AppConfig:
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML: {exc}") from exc
    try:
        config = AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    if config.online_enabled:
        key = config.openai.api_key if config.openai else ""
        if not key or key.startswith(_PLACEHOLDER_PREFIX):
            raise ConfigurationError("openai.api_key is required while [openai] is enabled")
    return config


def load_config(path: Path) -> AppConfig:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(
            f"Config file {path} not found; run `autotrack init-config` first"
        ) from exc
    return parse_config(text)


class ConfigReloader:
    """Re-reads the config file on demand and keeps the last good copy.

    Only the first load may fail; later failures are logged and the
    previous settings are returned.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._config = load_config(self.path)

    @property
    def config(self) -> AppConfig:
        with self._lock:
            return self._config

    def current(self) -> EngineSettings:
        with self._lock:
            try:
                self._config = load_config(self.path)
            except ConfigurationError as exc:
                logger.warning("Keeping previous configuration: %s", exc)
            return self._config.engine_settings()


SAMPLE_CONFIG = """\
# autotrack configuration

[general]
# data_dir = "/path/to/data"
confidence_threshold = 0.5
collect_interval_secs = 60
analysis_interval_minutes = 15
idle_threshold_secs = 300
debounce_secs = 90
excluded_projects = ["Break"]
retention_days = 30
pending_expiry_hours = 24
continuity_gap_minutes = 15
skip_private_windows = true

[toggl]
api_token = "your_toggl_api_token"
workspace_id = 0
timeout_secs = 10

[openai]
enabled = false
api_key = "your_openai_api_key"
model = "gpt-4o-mini"
base_url = "https://api.openai.com/v1"
timeout_secs = 10

# [google_calendar]
# client_id = ""
# client_secret = ""
# refresh_token = ""
# calendar_ids = "primary"
# sync_interval_minutes = 5
"""


def write_sample_config(path: Path, *, overwrite: bool = False) -> Path:
    path = Path(path)
    if path.exists() and not overwrite:
        raise FileExistsError(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return path
