"""Tests for window-title normalization and activity keys."""

from autotrack.normalization import (
    activity_key,
    is_private_window,
    normalize_window_title,
    title_tokens,
    token_similarity,
)


class TestNormalizeWindowTitle:
    def test_strips_browser_suffix(self) -> None:
        assert (
            normalize_window_title("chrome.exe", "Pull requests - Google Chrome")
            == "Pull requests"
        )

    def test_strips_extra_tab_count(self) -> None:
        title = "Docs - Sprint notes and 3 more pages - Microsoft Edge"
        assert normalize_window_title("msedge.exe", title) == "Docs - Sprint notes"

    def test_unknown_process_only_collapses_whitespace(self) -> None:
        assert normalize_window_title("gedit", "  notes.txt   (~/work)  ") == "notes.txt (~/work)"

    def test_empty_title_is_none(self) -> None:
        assert normalize_window_title("chrome.exe", "") is None
        assert normalize_window_title(None, None) is None


class TestActivityKey:
    def test_unread_counter_does_not_change_key(self) -> None:
        assert activity_key("(3) Inbox - Gmail") == activity_key("(12) Inbox - Gmail")

    def test_modified_marker_does_not_change_key(self) -> None:
        assert activity_key("* main.py - project") == activity_key("main.py - project")

    def test_separators_are_unified(self) -> None:
        assert activity_key("Email — Inbox") == "email - inbox"
        assert activity_key("Email | Inbox") == "email - inbox"

    def test_blank_title_has_no_key(self) -> None:
        assert activity_key("   ") is None


class TestTokens:
    def test_tokens_drop_single_characters(self) -> None:
        assert title_tokens("a Quarterly report - Q3") == frozenset({"quarterly", "report", "q3"})

    def test_similarity(self) -> None:
        left = title_tokens("Quarterly report draft")
        right = title_tokens("Quarterly report final")
        assert token_similarity(left, right) == 0.5
        assert token_similarity(left, frozenset()) == 0.0


def test_private_window_detection() -> None:
    assert is_private_window("New Tab - Private Browsing")
    assert is_private_window("Bank (Incognito)")
    assert not is_private_window("Inbox - Gmail")
    assert not is_private_window(None)
