"""
Configuration for the attendance timeline engine.

Defaults live in config/timeline.yaml at the project root. Set
ATTENDANCE_TIMELINE_CONFIG to point at an alternate file.
"""

import os
from dataclasses import dataclass, field, fields
from datetime import date
from pathlib import Path
from typing import Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from ..exceptions import ConfigurationError
from .common import get_project_root, load_yaml_config

load_dotenv()

CONFIG_ENV_VAR = "ATTENDANCE_TIMELINE_CONFIG"
DEFAULT_CONFIG_PATH = get_project_root() / "config" / "timeline.yaml"


@dataclass(frozen=True)
class TimelineSettings:
    """Tunables for aggregation, caching and fallback reads."""

    cache_ttl_seconds: int = 3600
    degraded_row_limit: int = 1000
    school_fast_path_limit: int = 500
    excused_absence_percent: int = 70
    tier1_threshold: float = 95.0
    tier2_threshold: float = 90.0
    school_year_start: str = "08-15"
    school_year_end: str = "06-12"
    school_year_rollover_month: int = 8
    holidays: Tuple[date, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.cache_ttl_seconds <= 0:
            raise ConfigurationError(f"cache_ttl_seconds must be positive, got {self.cache_ttl_seconds}")
        if self.degraded_row_limit <= 0 or self.school_fast_path_limit <= 0:
            raise ConfigurationError("Row limits must be positive")
        if not 0 <= self.excused_absence_percent <= 100:
            raise ConfigurationError(
                f"excused_absence_percent must be between 0 and 100, got {self.excused_absence_percent}"
            )
        if not 0 < self.tier2_threshold < self.tier1_threshold <= 100:
            raise ConfigurationError(
                f"Tier thresholds must satisfy 0 < tier2 < tier1 <= 100, "
                f"got tier1={self.tier1_threshold}, tier2={self.tier2_threshold}"
            )
        if not 1 <= self.school_year_rollover_month <= 12:
            raise ConfigurationError("school_year_rollover_month must be a month number")
        for name in ("school_year_start", "school_year_end"):
            _parse_month_day(getattr(self, name), name)

    @property
    def start_month_day(self) -> Tuple[int, int]:
        return _parse_month_day(self.school_year_start, "school_year_start")

    @property
    def end_month_day(self) -> Tuple[int, int]:
        return _parse_month_day(self.school_year_end, "school_year_end")


def _parse_month_day(value: str, name: str) -> Tuple[int, int]:
    try:
        month, day = (int(part) for part in str(value).split("-"))
        date(2000, month, day)  # leap year, so 02-29 is accepted
    except ValueError as e:
        raise ConfigurationError(f"{name} must be MM-DD, got {value!r}") from e
    return month, day


def _parse_holidays(raw) -> Tuple[date, ...]:
    holidays = []
    for item in raw or []:
        if isinstance(item, date):
            holidays.append(item)
            continue
        try:
            holidays.append(date.fromisoformat(str(item)))
        except ValueError as e:
            raise ConfigurationError(f"Invalid holiday date: {item!r}") from e
    return tuple(sorted(holidays))


def load_settings(config_path: Optional[Union[str, Path]] = None) -> TimelineSettings:
    """
    Load timeline settings from YAML.

    Priority:
    1. Explicit config_path argument
    2. ATTENDANCE_TIMELINE_CONFIG environment variable
    3. config/timeline.yaml in the project root (skipped if missing)

    Unknown keys are ignored; missing keys take the dataclass defaults.
    """
    path = config_path or os.getenv(CONFIG_ENV_VAR)
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return TimelineSettings()
        path = DEFAULT_CONFIG_PATH

    try:
        raw = load_yaml_config(path)
    except (FileNotFoundError, yaml.YAMLError) as e:
        raise ConfigurationError(str(e), {"path": str(path)}) from e

    section = raw.get("timeline", raw) if isinstance(raw, dict) else raw
    if not isinstance(section, dict):
        raise ConfigurationError(
            "Timeline settings must be a mapping", {"path": str(path)}
        )
    known = {f.name for f in fields(TimelineSettings)}
    values = {key: value for key, value in section.items() if key in known}
    if "holidays" in values:
        values["holidays"] = _parse_holidays(values["holidays"])

    try:
        return TimelineSettings(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid timeline settings: {e}", {"path": str(path)}) from e
