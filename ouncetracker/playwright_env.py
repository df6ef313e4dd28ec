"""Centralised helpers for Playwright launch + anti-bot configuration."""

from __future__ import annotations

import os
import random
import shlex
from functools import lru_cache
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import Playwright

from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)

_FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def headless_enabled() -> bool:
    """Return True if Playwright should run in headless mode."""

    return _as_bool(os.getenv("OUNCETRACKER_HEADLESS"), True)


def stealth_enabled() -> bool:
    """Return True when stealth evasion scripts should be applied."""

    return _as_bool(os.getenv("OUNCETRACKER_STEALTH"), True)


def user_agent() -> str:
    value = (os.getenv("USER_AGENT") or "").strip()
    return value or DEFAULT_USER_AGENT


def extra_http_headers() -> dict[str, str]:
    """Headers applied to every page so requests resemble a desktop browser."""

    return {
        "User-Agent": user_agent(),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        "Cache-Control": "max-age=0",
    }


@lru_cache(maxsize=1)
def _stealth_instance():
    if not stealth_enabled():
        return None
    from playwright_stealth import Stealth

    return Stealth(
        navigator_languages_override=("en-US", "en"),
        navigator_platform_override=os.getenv("OUNCETRACKER_PLATFORM", "Win32"),
        navigator_user_agent_override=user_agent(),
        navigator_vendor_override="Google Inc.",
    )


def apply_stealth(playwright: Playwright) -> None:
    """Hook the provided Playwright object with stealth evasions when enabled."""

    instance = _stealth_instance()
    if instance is None:
        return
    try:
        instance.hook_playwright_context(playwright)
    except Exception as exc:
        LOGGER.warning("Stealth hook failed; continuing without it: %s", exc)


def _proxy_config() -> dict[str, str] | None:
    raw = os.getenv("OUNCETRACKER_PROXY")
    if not raw:
        return None
    parsed = urlparse(raw)
    if not parsed.scheme:
        return {"server": f"http://{raw}"}
    return {"server": raw}


def slow_mo_ms() -> int | None:
    value = _env_int("OUNCETRACKER_SLOW_MO_MS", 0)
    return value if value > 0 else None


def launch_kwargs() -> dict[str, Any]:
    """Return kwargs passed to chromium.launch."""

    args = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--disable-infobars",
        "--lang=en-US",
        "--no-default-browser-check",
    ]
    extra_args = os.getenv("OUNCETRACKER_CHROMIUM_ARGS")
    if extra_args:
        args.extend(shlex.split(extra_args))

    kwargs: dict[str, Any] = {
        "headless": headless_enabled(),
        "args": args,
    }

    channel = os.getenv("OUNCETRACKER_BROWSER_CHANNEL")
    if channel:
        kwargs["channel"] = channel

    proxy = _proxy_config()
    if proxy:
        kwargs["proxy"] = proxy

    slow_mo = slow_mo_ms()
    if slow_mo:
        kwargs["slow_mo"] = slow_mo

    return kwargs


def pacing_delay_ms(bounds: tuple[int, int], rng: random.Random | None = None) -> int:
    """Pick a uniformly distributed delay inside *bounds* (inclusive)."""

    min_ms, max_ms = bounds
    if min_ms < 0:
        min_ms = 0
    if max_ms < min_ms:
        max_ms = min_ms
    source = rng or random
    return source.randint(min_ms, max_ms)
