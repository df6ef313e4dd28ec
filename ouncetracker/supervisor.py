"""Periodic reclamation of browser state between cycles."""

from __future__ import annotations

import asyncio
from enum import Enum

from playwright.async_api import Page

from ouncetracker.browser import BrowserResourceManager, BrowserSession, CleanupStep
from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)


class RecycleAction(str, Enum):
    NONE = "none"
    STORAGE = "storage"
    PAGE = "page"
    CONTEXT = "context"


class ResourceLifecycleSupervisor:
    """Runs the tiered cleanup schedule after every completed cycle.

    Every ``storage_every`` cycles the shared page's storage and caches are
    cleared. Every ``context_every`` cycles the default context is rebuilt;
    otherwise every ``page_every`` cycles only the shared page is replaced.
    The caller must rebind its page reference to the value returned by
    :meth:`after_cycle`.
    """

    def __init__(
        self,
        manager: BrowserResourceManager,
        *,
        storage_every: int = 3,
        page_every: int = 10,
        context_every: int = 30,
        max_pages_per_context: int = 3,
    ) -> None:
        for name, value in (
            ("storage_every", storage_every),
            ("page_every", page_every),
            ("context_every", context_every),
            ("max_pages_per_context", max_pages_per_context),
        ):
            if value < 1:
                raise ValueError(f"{name} must be >= 1")
        self._manager = manager
        self._storage_every = storage_every
        self._page_every = page_every
        self._context_every = context_every
        self._max_pages = max_pages_per_context
        self._cycle_count = 0
        self._last_action = RecycleAction.NONE

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_action(self) -> RecycleAction:
        return self._last_action

    async def after_cycle(self, session: BrowserSession, page: Page) -> Page:
        self._cycle_count += 1
        count = self._cycle_count
        self.check_counts(session)

        action = RecycleAction.NONE
        if count % self._storage_every == 0:
            await self._soft_cleanup(page)
            action = RecycleAction.STORAGE

        if count % self._context_every == 0:
            LOGGER.info("Recreating browser context | cycle=%d", count)
            page = await self._recycle(self._manager.recreate_context, session, page)
            action = RecycleAction.CONTEXT
        elif count % self._page_every == 0:
            LOGGER.info("Recreating shared page | cycle=%d", count)
            page = await self._recycle(self._manager.recreate_default_page, session, page)
            action = RecycleAction.PAGE

        self._last_action = action
        return page

    async def _recycle(self, recreate, session: BrowserSession, page: Page) -> Page:
        try:
            return await recreate(session, page)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # the old page may already be closed; never hand it back
            LOGGER.warning("Recycle failed, opening a replacement page | error=%s", exc)
        replacement = await self._manager.new_page(session)
        await self._manager.install_resource_filter(replacement)
        return replacement

    async def _soft_cleanup(self, page: Page) -> list[CleanupStep]:
        LOGGER.info("Clearing session storage and caches | cycle=%d", self._cycle_count)
        steps = await self._manager.clear_session_storage(page)
        steps += await self._manager.clear_caches_via_debug_protocol(page)
        # clear_session_storage drops route handlers along with the rest
        if not await self._manager.install_resource_filter(page):
            steps.append(CleanupStep("resource_filter", False, "reinstall failed"))
        return steps

    def check_counts(self, session: BrowserSession) -> list[str]:
        """Warn about leaked contexts or pages; never reclaims anything."""

        contexts, pages = self._manager.count_resources(session)
        warnings: list[str] = []
        if contexts > 1:
            warnings.append(f"{contexts} browser contexts open (expected 1)")
        for index, count in enumerate(pages):
            if count > self._max_pages:
                warnings.append(
                    f"context {index} holds {count} pages (limit {self._max_pages})"
                )
        for message in warnings:
            LOGGER.warning("Possible resource leak: %s", message)
        return warnings
