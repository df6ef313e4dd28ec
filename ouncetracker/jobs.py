"""Auxiliary jobs registered with the background scheduler."""

from __future__ import annotations

import asyncio
import os
from datetime import timedelta
from typing import Awaitable, Callable
from urllib.parse import urlparse

import requests
from sqlalchemy.orm import Session, sessionmaker

from ouncetracker.alerts.notifier import Notifier
from ouncetracker.logging_config import get_logger
from ouncetracker.storage import repo

LOGGER = get_logger(__name__)

HEALTHCHECK_JOB = "healthcheck-ping"
STALE_LISTINGS_JOB = "stale-listings"


def ping_healthcheck(url: str | None) -> bool:
    """GET *url*; returns False on transport errors or HTTP >= 400."""

    if not url:
        LOGGER.info("healthcheck: disabled")
        return True
    host = urlparse(str(url)).netloc or urlparse(str(url)).path
    verify_env = os.getenv("HEALTHCHECK_VERIFY")
    verify = True if verify_env is None else verify_env.strip().lower() not in {"0", "false", "no"}
    try:
        response = requests.get(url, timeout=5, verify=verify)
    except requests.RequestException as exc:
        LOGGER.warning("Healthcheck ping failed for host=%s: %s", host, exc)
        return False
    if response.status_code >= 400:
        LOGGER.warning("Healthcheck returned status %s for host=%s", response.status_code, host)
        return False
    LOGGER.info("healthcheck ok | host=%s status=%s", host, response.status_code)
    return True


def healthcheck_job(url: str) -> Callable[[], Awaitable[None]]:
    async def _run() -> None:
        if not await asyncio.to_thread(ping_healthcheck, url):
            raise RuntimeError("healthcheck ping failed")

    return _run


def report_stale_listings(
    session_factory: sessionmaker[Session],
    notifier: Notifier,
    older_than: timedelta,
) -> int:
    """Notify about listings that have not been refreshed within *older_than*."""

    with session_factory() as session:
        stale = repo.list_stale_listings(session, older_than)
        lines = [
            f"{listing.dealer.slug} | {listing.product.name}: last updated "
            f"{listing.last_updated:%Y-%m-%d %H:%M} UTC"
            for listing in stale
        ]
    if not lines:
        LOGGER.info("No stale listings | older_than=%s", older_than)
        return 0
    hours = older_than.total_seconds() / 3600
    LOGGER.warning("Stale listings found | count=%d | older_than_hours=%.0f", len(lines), hours)
    notifier.send_text(
        f"{len(lines)} listing(s) not updated in {hours:.0f}h:\n" + "\n".join(lines)
    )
    return len(lines)


def stale_listings_job(
    session_factory: sessionmaker[Session],
    notifier: Notifier,
    older_than: timedelta,
) -> Callable[[], Awaitable[int]]:
    async def _run() -> int:
        return await asyncio.to_thread(report_stale_listings, session_factory, notifier, older_than)

    return _run
