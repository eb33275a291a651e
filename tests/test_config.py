"""
Tests for timeline configuration loading.

Run: pytest tests/test_config.py -v
"""

from datetime import date

import pytest

from attendance_analytics.exceptions import ConfigurationError
from attendance_analytics.utilities.config import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATH,
    TimelineSettings,
    load_settings,
)


class TestLoadSettings:
    """YAML settings with dataclass defaults"""

    def test_default_file_matches_defaults(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert DEFAULT_CONFIG_PATH.exists()
        assert load_settings() == TimelineSettings()

    def test_partial_file(self, tmp_path):
        path = tmp_path / "timeline.yaml"
        path.write_text(
            "timeline:\n"
            "  cache_ttl_seconds: 60\n"
            "  holidays: ['2024-11-28', '2024-09-02']\n"
            "  unknown_key: ignored\n"
        )
        settings = load_settings(path)

        assert settings.cache_ttl_seconds == 60
        assert settings.degraded_row_limit == 1000
        assert settings.holidays == (date(2024, 9, 2), date(2024, 11, 28))

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "alt.yaml"
        path.write_text("timeline:\n  excused_absence_percent: 50\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_settings().excused_absence_percent == 50

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "nope.yaml")

    @pytest.mark.parametrize("body", [
        "timeline:\n  tier1_threshold: 85\n  tier2_threshold: 90\n",
        "timeline:\n  cache_ttl_seconds: 0\n",
        "timeline:\n  excused_absence_percent: 120\n",
        "timeline:\n  school_year_start: '13-01'\n",
        "timeline:\n  holidays: ['not-a-date']\n",
    ])
    def test_invalid_values(self, tmp_path, body):
        path = tmp_path / "bad.yaml"
        path.write_text(body)
        with pytest.raises(ConfigurationError):
            load_settings(path)

    @pytest.mark.parametrize("body", [
        "- cache_ttl_seconds\n- 60\n",
        "timeline: 60\n",
        "timeline:\n  - cache_ttl_seconds\n",
    ])
    def test_non_mapping_settings(self, tmp_path, body):
        path = tmp_path / "bad.yaml"
        path.write_text(body)
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_settings(path)

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_settings(path) == TimelineSettings()
