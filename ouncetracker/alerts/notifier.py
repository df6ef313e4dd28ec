"""Notification sink: Discord webhook, or the log when no webhook is configured."""

from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping, Protocol

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from ouncetracker.logging_config import get_logger
from ouncetracker.models import CycleSummary

LOGGER = get_logger(__name__)

CONTENT_LIMIT = 2000
FIELD_LIMIT = 1024
MAX_FIELDS = 25

GREEN = 0x2ECC71
ORANGE = 0xE67E22
RED = 0xE74C3C


class Notifier(Protocol):
    def send_text(self, message: str) -> None: ...

    def send_structured(self, summary: CycleSummary | Mapping[str, Any]) -> None: ...


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _as_payload(summary: CycleSummary | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(summary, CycleSummary):
        return summary.as_payload()
    return dict(summary)


def _cycle_embed(payload: Mapping[str, Any]) -> dict[str, Any]:
    successes = payload.get("successes") or []
    failures = payload.get("failures") or []
    total = len(successes) + len(failures)
    if not failures:
        color = GREEN
    elif successes:
        color = ORANGE
    else:
        color = RED

    fields: list[dict[str, Any]] = []
    if successes:
        lines = [f"{s['dealer']} | {s['product']}: ${s['price']}" for s in successes]
        fields.append({"name": "Updated", "value": _truncate("\n".join(lines), FIELD_LIMIT)})
    if failures:
        lines = [f"{f['dealer']} | {f['product']}: {f['error']}" for f in failures]
        fields.append({"name": "Failed", "value": _truncate("\n".join(lines), FIELD_LIMIT)})

    return {
        "title": f"Scrape cycle #{payload.get('cycle', '?')}",
        "description": (
            f"{len(successes)}/{total} listings updated in {payload.get('duration_s', 0)}s"
        ),
        "color": color,
        "fields": fields[:MAX_FIELDS],
    }


def _memory_embed(payload: Mapping[str, Any]) -> dict[str, Any]:
    issues = payload.get("issues") or []
    trend = payload.get("trend") or {}
    fields = [
        {"name": key.replace("_", " "), "value": str(value), "inline": True}
        for key, value in trend.items()
        if key != "cycle"
    ]
    snapshots = payload.get("snapshots") or []
    if snapshots:
        lines = [
            f"#{snap['cycle']}: rss={snap['resident']}MB heap={snap['heap_used']}MB "
            f"pages={snap.get('pages', '-')}"
            for snap in snapshots
        ]
        fields.append({"name": "Recent snapshots", "value": _truncate("\n".join(lines), FIELD_LIMIT)})
    return {
        "title": "Memory analysis",
        "description": _truncate("\n".join(issues) or "No issues detected", CONTENT_LIMIT),
        "color": RED if issues else GREEN,
        "fields": fields[:MAX_FIELDS],
    }


def build_embed(summary: CycleSummary | Mapping[str, Any]) -> dict[str, Any]:
    payload = _as_payload(summary)
    if payload.get("kind") == "memory_analysis":
        return _memory_embed(payload)
    return _cycle_embed(payload)


class LoggingNotifier:
    """Fallback sink that only writes to the log."""

    def send_text(self, message: str) -> None:
        LOGGER.debug("Notification (noop): %s", message)

    def send_structured(self, summary: CycleSummary | Mapping[str, Any]) -> None:
        LOGGER.debug("Notification (noop): %s", _as_payload(summary))

    def close(self) -> None:
        pass


class DiscordNotifier:
    """Post messages to a Discord webhook. Delivery failures are logged, never raised.

    Posts run on a single background thread in submission order, so callers on
    the event loop return immediately even while the webhook is slow or down.
    """

    def __init__(self, webhook_url: str | None = None, *, timeout: float = 8.0) -> None:
        self._webhook_url = webhook_url if webhook_url is not None else os.getenv("DISCORD_WEBHOOK_URL")
        self._timeout = timeout
        self._last_send = 0.0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="discord-notifier")

    @property
    def configured(self) -> bool:
        return bool(self._webhook_url)

    def send_text(self, message: str) -> None:
        self._dispatch({"content": _truncate(message, CONTENT_LIMIT)})

    def send_structured(self, summary: CycleSummary | Mapping[str, Any]) -> None:
        try:
            embed = build_embed(summary)
        except Exception as exc:
            LOGGER.warning("Unable to build notification embed: %s", exc)
            return
        self._dispatch({"embeds": [embed]})

    def flush(self, timeout: float | None = None) -> None:
        """Block until every message queued so far has been attempted."""

        try:
            self._executor.submit(lambda: None).result(timeout)
        except Exception as exc:
            LOGGER.warning("Notification queue did not drain: %s", exc)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _dispatch(self, payload: dict[str, Any]) -> None:
        if not self.configured:
            LOGGER.debug("Notification (noop): %s", payload)
            return
        try:
            self._executor.submit(self._deliver, payload)
        except RuntimeError as exc:
            LOGGER.warning("Notification dropped after shutdown: %s", exc)

    def _deliver(self, payload: dict[str, Any]) -> None:
        try:
            self._post(payload)
        except Exception as exc:
            LOGGER.warning("Notification delivery failed via discord: %s", exc)

    def _throttle(self) -> None:
        elapsed = time.monotonic() - self._last_send
        if elapsed < 1:
            time.sleep(1 - elapsed)
        self._last_send = time.monotonic()

    @retry(wait=wait_exponential(multiplier=0.5, max=10), stop=stop_after_attempt(3), reraise=True)
    def _post(self, payload: dict[str, Any]) -> None:
        self._throttle()
        response = requests.post(self._webhook_url, json=payload, timeout=self._timeout)
        if response.status_code >= 400:
            raise RuntimeError(f"HTTP {response.status_code}")


def build_notifier(webhook_url: str | None = None) -> DiscordNotifier | LoggingNotifier:
    url = webhook_url if webhook_url is not None else os.getenv("DISCORD_WEBHOOK_URL")
    if url:
        return DiscordNotifier(url)
    LOGGER.info("DISCORD_WEBHOOK_URL not set; notifications go to the log only")
    return LoggingNotifier()
