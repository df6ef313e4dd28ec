"""Worker configuration: YAML file merged over defaults, plus environment credentials."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from ouncetracker.errors import ConfigurationFault
from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/worker.yml")

DEFAULT_CONFIG: dict[str, Any] = {
    "loop": {
        "cycle_delay_seconds": 300,
        "dealer_pause_seconds": 5,
        "product_delay_ms": [1000, 3000],
    },
    "retry": {"max_attempts": 3, "delay_ms": 2000},
    "browser": {
        "launch_timeout_seconds": 60,
        "page_timeout_seconds": 15,
        "page_close_timeout_seconds": 1,
        "session_close_timeout_seconds": 3,
        "blocked_resource_types": ["image", "media", "font"],
    },
    "recycle": {
        "storage_every": 3,
        "page_every": 10,
        "context_every": 30,
        "max_pages_per_context": 3,
    },
    "diagnostics": {
        "snapshot_every": 1,
        "analyze_every": 10,
        "max_retained": 100,
        "trend_window": 10,
        "trace_python_heap": False,
    },
    "health": {"escalate_after": 3},
    "jobs": {
        "healthcheck_minutes": 5,
        "stale_listing_minutes": 60,
        "stale_after_hours": 6,
    },
    "healthcheck_url": "",
    "catalog_path": None,
}


def _deep_merge(default: Any, override: Any) -> Any:
    if not isinstance(default, dict) or not isinstance(override, dict):
        return deepcopy(override)

    merged: dict[str, Any] = deepcopy(default)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def load_config(path: Path) -> dict[str, Any]:
    """Read *path* (if present) and merge it over DEFAULT_CONFIG."""

    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    else:
        LOGGER.warning("Configuration file %s not found; using defaults", path)
        data = {}

    if not isinstance(data, dict):
        raise ConfigurationFault(f"Configuration root must be a mapping: {path}")
    return _deep_merge(DEFAULT_CONFIG, data) if data else deepcopy(DEFAULT_CONFIG)


def _positive_int(section: Mapping[str, Any], key: str) -> int:
    try:
        value = int(section[key])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationFault(f"{key} must be an integer") from exc
    if value <= 0:
        raise ConfigurationFault(f"{key} must be positive (got {value})")
    return value


def _float(section: Mapping[str, Any], key: str) -> float:
    try:
        value = float(section[key])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationFault(f"{key} must be a number") from exc
    if value < 0:
        raise ConfigurationFault(f"{key} must not be negative (got {value})")
    return value


@dataclass(frozen=True)
class BrowserSettings:
    launch_timeout_s: float = 60.0
    page_timeout_s: float = 15.0
    page_close_timeout_s: float = 1.0
    session_close_timeout_s: float = 3.0
    blocked_resource_types: frozenset[str] = frozenset({"image", "media", "font"})


@dataclass(frozen=True)
class RecycleSettings:
    storage_every: int = 3
    page_every: int = 10
    context_every: int = 30
    max_pages_per_context: int = 3


@dataclass(frozen=True)
class DiagnosticsSettings:
    snapshot_every: int = 1
    analyze_every: int = 10
    max_retained: int = 100
    trend_window: int = 10
    trace_python_heap: bool = False


@dataclass(frozen=True)
class WorkerSettings:
    cycle_delay_s: float
    dealer_pause_s: float
    product_delay_ms: tuple[int, int]
    retry_attempts: int
    retry_delay_ms: int
    browser: BrowserSettings
    recycle: RecycleSettings
    diagnostics: DiagnosticsSettings
    escalate_after: int
    healthcheck_url: str
    healthcheck_minutes: int
    stale_listing_minutes: int
    stale_after_hours: int
    catalog_path: Path | None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "WorkerSettings":
        loop = config.get("loop") or {}
        retry = config.get("retry") or {}
        browser = config.get("browser") or {}
        recycle = config.get("recycle") or {}
        diagnostics = config.get("diagnostics") or {}
        health = config.get("health") or {}
        jobs = config.get("jobs") or {}

        delay_bounds = loop.get("product_delay_ms") or [1000, 3000]
        try:
            low, high = (int(value) for value in delay_bounds)
        except (TypeError, ValueError) as exc:
            raise ConfigurationFault("product_delay_ms must be a [min, max] pair") from exc
        if low < 0 or high < low:
            raise ConfigurationFault(f"Invalid product_delay_ms bounds: {delay_bounds}")

        recycle_settings = RecycleSettings(
            storage_every=_positive_int(recycle, "storage_every"),
            page_every=_positive_int(recycle, "page_every"),
            context_every=_positive_int(recycle, "context_every"),
            max_pages_per_context=_positive_int(recycle, "max_pages_per_context"),
        )
        if recycle_settings.page_every % recycle_settings.storage_every:
            raise ConfigurationFault("recycle.page_every must be a multiple of storage_every")
        if recycle_settings.context_every % recycle_settings.page_every:
            raise ConfigurationFault("recycle.context_every must be a multiple of page_every")

        blocked = browser.get("blocked_resource_types") or []
        catalog_value = config.get("catalog_path")

        try:
            escalate_after = int(health.get("escalate_after", 3))
        except (TypeError, ValueError) as exc:
            raise ConfigurationFault("health.escalate_after must be an integer") from exc

        return cls(
            cycle_delay_s=_float(loop, "cycle_delay_seconds"),
            dealer_pause_s=_float(loop, "dealer_pause_seconds"),
            product_delay_ms=(low, high),
            retry_attempts=_positive_int(retry, "max_attempts"),
            retry_delay_ms=int(_float(retry, "delay_ms")),
            browser=BrowserSettings(
                launch_timeout_s=_float(browser, "launch_timeout_seconds"),
                page_timeout_s=_float(browser, "page_timeout_seconds"),
                page_close_timeout_s=_float(browser, "page_close_timeout_seconds"),
                session_close_timeout_s=_float(browser, "session_close_timeout_seconds"),
                blocked_resource_types=frozenset(str(item) for item in blocked),
            ),
            recycle=recycle_settings,
            diagnostics=DiagnosticsSettings(
                snapshot_every=_positive_int(diagnostics, "snapshot_every"),
                analyze_every=_positive_int(diagnostics, "analyze_every"),
                max_retained=_positive_int(diagnostics, "max_retained"),
                trend_window=_positive_int(diagnostics, "trend_window"),
                trace_python_heap=bool(diagnostics.get("trace_python_heap", False)),
            ),
            escalate_after=max(0, escalate_after),
            healthcheck_url=str(config.get("healthcheck_url") or "").strip(),
            healthcheck_minutes=_positive_int(jobs, "healthcheck_minutes"),
            stale_listing_minutes=_positive_int(jobs, "stale_listing_minutes"),
            stale_after_hours=_positive_int(jobs, "stale_after_hours"),
            catalog_path=Path(catalog_value) if catalog_value else None,
        )


def require_database_url(env: Mapping[str, str] | None = None) -> str:
    """Return the persistence URL or raise ConfigurationFault when it is missing."""

    source = os.environ if env is None else env
    value = (source.get("DATABASE_URL") or "").strip()
    if not value:
        raise ConfigurationFault("Missing DATABASE_URL environment variable")
    return value
