"""Foreground-window sampler that feeds the sample store."""

from __future__ import annotations

import ctypes
import logging
import shutil
import subprocess
import sys
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Optional, Protocol

import psutil

from .config import EngineSettings
from .errors import CollectionError
from .models import Sample, utc_now
from .normalization import normalize_window_title
from .store import SampleStore

logger = logging.getLogger(__name__)

NO_WINDOW_TITLE = "(no window)"
MAX_BUFFERED_SAMPLES = 24 * 60


class WindowProbe(Protocol):
    def get_active_window(self) -> tuple[Optional[str], Optional[str]]: ...


class IdleDetector(Protocol):
    def is_idle(self, threshold_ms: int) -> bool: ...


class WindowsIdleDetector:
    """Detects idle state using Win32 APIs."""

    def __init__(self) -> None:
        from ctypes import wintypes

        class LASTINPUTINFO(ctypes.Structure):
            _fields_ = [("cbSize", wintypes.UINT), ("dwTime", wintypes.DWORD)]

        self._info_type = LASTINPUTINFO
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def milliseconds_since_input(self) -> int:
        last_input = self._info_type()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()  # type: ignore[attr-defined]
        elapsed = self._kernel32.GetTickCount64() - last_input.dwTime
        return int(elapsed)

    def is_idle(self, threshold_ms: int) -> bool:
        try:
            return self.milliseconds_since_input() >= threshold_ms
        except OSError:
            logger.exception("Failed to query idle state; assuming not idle.")
            return False


class WindowsActiveWindowProbe:
    """Retrieves the foreground window title and process name."""

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]

    def get_active_window(self) -> tuple[Optional[str], Optional[str]]:
        from ctypes import wintypes

        hwnd = self._user32.GetForegroundWindow()
        if not hwnd:
            return None, None

        length = self._user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        self._user32.GetWindowTextW(hwnd, buffer, length + 1)
        window_title = buffer.value.strip() or None

        pid = wintypes.DWORD()
        self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        return _process_name(pid.value), window_title


class XprintidleDetector:
    """Idle time on X11 via the ``xprintidle`` tool."""

    def is_idle(self, threshold_ms: int) -> bool:
        try:
            output = subprocess.run(
                ["xprintidle"], capture_output=True, text=True, check=True, timeout=5
            ).stdout
            return int(output.strip()) >= threshold_ms
        except (OSError, subprocess.SubprocessError, ValueError):
            logger.exception("Failed to query idle state; assuming not idle.")
            return False


class XdotoolProbe:
    """Active window title and process on X11 via ``xdotool``."""

    def get_active_window(self) -> tuple[Optional[str], Optional[str]]:
        title = self._xdotool("getactivewindow", "getwindowname")
        pid = self._xdotool("getactivewindow", "getwindowpid")
        process_name = _process_name(int(pid)) if pid and pid.isdigit() else None
        return process_name, title or None

    @staticmethod
    def _xdotool(*args: str) -> Optional[str]:
        try:
            result = subprocess.run(
                ["xdotool", *args], capture_output=True, text=True, check=True, timeout=5
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("xdotool %s failed: %s", " ".join(args), exc)
            return None
        return result.stdout.strip()


class NeverIdle:
    def is_idle(self, threshold_ms: int) -> bool:
        return False


def _process_name(pid: int) -> Optional[str]:
    if not pid:
        return None
    try:
        return psutil.Process(pid).name()
    except (psutil.Error, ProcessLookupError):
        return None


def default_probe() -> tuple[WindowProbe, IdleDetector]:
    """Pick the probe and idle detector for the running platform."""
    if sys.platform == "win32":
        return WindowsActiveWindowProbe(), WindowsIdleDetector()
    if shutil.which("xdotool"):
        idle: IdleDetector = XprintidleDetector() if shutil.which("xprintidle") else NeverIdle()
        return XdotoolProbe(), idle
    raise RuntimeError("No window probe available: install xdotool (X11) or run on Windows")


class SampleCollector:
    """Samples foreground activity at a fixed interval and appends it to the store.

    Samples that cannot be written are kept in memory (bounded) and retried
    on the next tick.
    """

    def __init__(
        self,
        store: SampleStore,
        probe: WindowProbe,
        idle_detector: IdleDetector,
        settings: EngineSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self._probe = probe
        self._idle_detector = idle_detector
        self._clock = clock
        self._pending: deque[Sample] = deque(maxlen=MAX_BUFFERED_SAMPLES)
        self._lock = threading.Lock()

    @property
    def buffered(self) -> int:
        with self._lock:
            return len(self._pending)

    def sample_once(self) -> Sample:
        now = self._clock()
        idle = self._idle_detector.is_idle(
            int(self.settings.idle_threshold.total_seconds() * 1000)
        )
        if idle:
            sample = Sample.idle(now)
        else:
            process_name, window_title = self._probe.get_active_window()
            window_title = normalize_window_title(process_name, window_title)
            sample = Sample(
                timestamp=now,
                window_title=window_title or NO_WINDOW_TITLE,
                process_hint=process_name,
            )
        logger.debug(
            "Sample: idle=%s process=%s title=%s",
            sample.is_idle,
            sample.process_hint,
            sample.window_title,
        )
        self._write(sample)
        return sample

    def flush(self) -> bool:
        """Retry buffered samples; returns True when the buffer is empty."""
        with self._lock:
            if not self._pending:
                return True
            try:
                self.store.append_many(list(self._pending))
            except CollectionError as exc:
                logger.warning("Store still unavailable (%d samples buffered): %s", len(self._pending), exc)
                return False
            logger.info("Flushed %d buffered samples.", len(self._pending))
            self._pending.clear()
            return True

    def _write(self, sample: Sample) -> None:
        with self._lock:
            if len(self._pending) == self._pending.maxlen:
                logger.error("Sample buffer full; dropping oldest sample from %s.", self._pending[0].timestamp)
            self._pending.append(sample)
        self.flush()
