"""Utilities to normalize window titles into comparable activity keys."""

from __future__ import annotations

import re
from typing import Optional

_BROWSER_SUFFIXES: dict[str, tuple[str, ...]] = {
    "msedge.exe": (" - Microsoft Edge",),
    "chrome.exe": (" - Google Chrome",),
    "chrome": (" - Google Chrome", " - Chromium"),
    "chromium": (" - Chromium",),
    "firefox.exe": (" - Mozilla Firefox", " — Mozilla Firefox"),
    "firefox": (" - Mozilla Firefox", " — Mozilla Firefox"),
    "brave.exe": (" - Brave",),
    "brave": (" - Brave",),
    "opera.exe": (" - Opera",),
}

_PRIVATE_MARKERS = ("private browsing", "incognito", "inprivate")


def normalize_window_title(process_name: Optional[str], window_title: Optional[str]) -> Optional[str]:
    """Remove common browser suffixes to surface tab names."""
    if not window_title:
        return None
    normalized = window_title.strip()
    if not process_name:
        return normalized or None

    suffixes = _BROWSER_SUFFIXES.get(process_name.lower())
    if suffixes:
        for suffix in suffixes:
            if normalized.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip(" -—")
                break

    normalized = _strip_tab_count(normalized)
    normalized = re.sub(r"\s{2,}", " ", normalized).strip()
    return normalized or None


_EXTRA_TAB_COUNT_PATTERN = re.compile(r"\s+and\s+\d+\s+more\s+pages?", re.IGNORECASE)


def _strip_tab_count(value: str) -> str:
    cleaned = _EXTRA_TAB_COUNT_PATTERN.sub("", value)
    return cleaned.strip(" -|")


_UNREAD_COUNTER_PATTERN = re.compile(r"[(\[]\s*\d+\+?\s*[)\]]")
_MODIFIED_MARKER_PATTERN = re.compile(r"^[*●•]\s*|\s*[*●•]$")
_SEPARATOR_PATTERN = re.compile(r"\s+[-—–|:]\s+")
_TOKEN_PATTERN = re.compile(r"[^\W_]+", re.UNICODE)


def activity_key(window_title: Optional[str]) -> Optional[str]:
    """Reduce a title to the part that identifies the activity.

    Two samples with the same key are treated as the same activity even if
    an unread counter ticked or an editor toggled its modified marker.
    """
    if not window_title:
        return None
    value = _UNREAD_COUNTER_PATTERN.sub(" ", window_title)
    value = _MODIFIED_MARKER_PATTERN.sub("", value.strip())
    value = _SEPARATOR_PATTERN.sub(" - ", value)
    value = re.sub(r"\s{2,}", " ", value).strip(" -|").casefold()
    return value or None


def title_tokens(window_title: Optional[str]) -> frozenset[str]:
    key = activity_key(window_title)
    if not key:
        return frozenset()
    return frozenset(token for token in _TOKEN_PATTERN.findall(key) if len(token) > 1)


def token_similarity(left: frozenset[str], right: frozenset[str]) -> float:
    """Jaccard similarity of two token sets."""
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def is_private_window(window_title: Optional[str]) -> bool:
    if not window_title:
        return False
    lowered = window_title.casefold()
    return any(marker in lowered for marker in _PRIVATE_MARKERS)
