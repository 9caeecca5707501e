"""Tests for configuration parsing and reloading."""

from datetime import timedelta
from pathlib import Path

import pytest

from autotrack.config import (
    SAMPLE_CONFIG,
    ConfigReloader,
    load_config,
    parse_config,
    write_sample_config,
)
from autotrack.errors import ConfigurationError

VALID = """
[general]
confidence_threshold = 0.7
excluded_projects = ["Break", "Lunch"]
collect_interval_secs = 30

[toggl]
api_token = "abc123"
workspace_id = 42
"""


class TestParseConfig:
    def test_defaults_when_sections_missing(self) -> None:
        settings = parse_config("").engine_settings()
        assert settings.confidence_threshold == 0.5
        assert settings.sample_interval == timedelta(seconds=60)
        assert settings.cycle_length == timedelta(minutes=15)
        assert settings.idle_threshold == timedelta(minutes=5)
        assert not settings.online_enabled

    def test_values_flow_into_engine_settings(self) -> None:
        settings = parse_config(VALID).engine_settings()
        assert settings.confidence_threshold == 0.7
        assert settings.sample_interval == timedelta(seconds=30)
        assert settings.is_excluded("lunch")
        assert not settings.is_excluded("Admin")
        assert not settings.is_excluded(None)

    def test_sample_config_parses(self) -> None:
        config = parse_config(SAMPLE_CONFIG)
        assert not config.online_enabled
        assert config.google_calendar is None

    @pytest.mark.parametrize(
        "text",
        [
            "[general\n",
            "[general]\nconfidence_threshold = 1.5\n",
            "[general]\nunknown_key = 1\n",
            "[openai]\nenabled = true\n",
            '[openai]\nenabled = true\napi_key = "your_openai_api_key"\n',
        ],
    )
    def test_invalid_configs_raise(self, text: str) -> None:
        with pytest.raises(ConfigurationError):
            parse_config(text)

    def test_online_enabled_with_key(self) -> None:
        config = parse_config('[openai]\nenabled = true\napi_key = "sk-live"\n')
        assert config.online_enabled
        assert config.engine_settings().online_enabled


class TestRequireRegistration:
    def test_returns_toggl_settings(self) -> None:
        assert parse_config(VALID).require_registration().workspace_id == 42

    @pytest.mark.parametrize(
        "text",
        [
            "",
            '[toggl]\napi_token = "your_toggl_api_token"\nworkspace_id = 42\n',
            '[toggl]\napi_token = "abc"\nworkspace_id = 0\n',
        ],
    )
    def test_incomplete_settings_raise(self, text: str) -> None:
        with pytest.raises(ConfigurationError):
            parse_config(text).require_registration()


class TestFiles:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.toml")

    def test_write_sample_config_refuses_to_overwrite(self, tmp_path: Path) -> None:
        path = write_sample_config(tmp_path / "nested" / "config.toml")
        assert path.read_text(encoding="utf-8") == SAMPLE_CONFIG
        with pytest.raises(FileExistsError):
            write_sample_config(path)
        write_sample_config(path, overwrite=True)

    def test_reloader_picks_up_changes_and_keeps_last_good(self, tmp_path: Path) -> None:
        path = tmp_path / "config.toml"
        path.write_text(VALID, encoding="utf-8")
        reloader = ConfigReloader(path)
        assert reloader.current().confidence_threshold == 0.7

        path.write_text(VALID.replace("0.7", "0.9"), encoding="utf-8")
        assert reloader.current().confidence_threshold == 0.9

        path.write_text("[general\n", encoding="utf-8")
        assert reloader.current().confidence_threshold == 0.9
