"""Ownership of the single long-lived Playwright session.

Every browser operation here is bounded by a timer so that one stuck page
cannot hang the worker. Cleanup helpers are best-effort: each sub-step
returns a ``CleanupStep`` and failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from ouncetracker.config import BrowserSettings
from ouncetracker.errors import ResourceTimeout
from ouncetracker.logging_config import get_logger
from ouncetracker.playwright_env import apply_stealth, extra_http_headers, launch_kwargs

LOGGER = get_logger(__name__)

BLANK_URL = "about:blank"

_CLEAR_WEB_STORAGE_JS = """
() => {
  try { window.localStorage.clear(); } catch (e) {}
  try { window.sessionStorage.clear(); } catch (e) {}
  return true;
}
"""

_UNREGISTER_SERVICE_WORKERS_JS = """
async () => {
  if (!('serviceWorker' in navigator)) { return 0; }
  const registrations = await navigator.serviceWorker.getRegistrations();
  await Promise.all(registrations.map((r) => r.unregister()));
  return registrations.length;
}
"""

_DELETE_INDEXED_DB_JS = """
async () => {
  if (!window.indexedDB || !indexedDB.databases) { return 0; }
  const databases = await indexedDB.databases();
  for (const db of databases) {
    if (db.name) { indexedDB.deleteDatabase(db.name); }
  }
  return databases.length;
}
"""


@dataclass
class BrowserSession:
    """Handle for the launched browser and its default browsing context."""

    playwright: Playwright
    browser: Browser
    context: BrowserContext | None = None


@dataclass(frozen=True)
class CleanupStep:
    name: str
    ok: bool
    error: str | None = None


def _is_closed_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "closed" in message or "target page" in message


def _log_close_error(what: str, exc: BaseException) -> None:
    if _is_closed_error(exc):
        LOGGER.debug("%s already closed: %s", what, exc)
    else:
        LOGGER.warning("Unexpected error closing %s: %s", what, exc)


def _log_failed_steps(kind: str, steps: list[CleanupStep]) -> None:
    failed = [step for step in steps if not step.ok]
    if failed:
        LOGGER.warning(
            "%s cleanup: %d/%d steps failed | %s",
            kind,
            len(failed),
            len(steps),
            "; ".join(f"{step.name}={step.error}" for step in failed),
        )
    else:
        LOGGER.debug("%s cleanup: %d steps ok", kind, len(steps))


def _http_origin(url: str | None) -> str | None:
    parsed = urlparse(url or "")
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


class BrowserResourceManager:
    """Launches, hands out, cleans and tears down browser pages and contexts."""

    def __init__(
        self,
        settings: BrowserSettings | None = None,
        *,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self._settings = settings or BrowserSettings()
        self._playwright_factory = playwright_factory
        self._disposable_contexts: set[Any] = set()

    @property
    def settings(self) -> BrowserSettings:
        return self._settings

    async def _bounded(self, awaitable: Awaitable[Any], timeout_s: float, operation: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout_s)
        except asyncio.TimeoutError as exc:
            raise ResourceTimeout(operation, timeout_s) from exc

    async def _attempt(
        self, name: str, action: Callable[[], Awaitable[Any]], timeout_s: float | None = None
    ) -> CleanupStep:
        try:
            await self._bounded(action(), timeout_s or self._settings.page_timeout_s, name)
        except Exception as exc:
            return CleanupStep(name, False, str(exc).splitlines()[0] if str(exc) else type(exc).__name__)
        return CleanupStep(name, True)

    async def launch(self) -> BrowserSession:
        """Start Playwright + Chromium; any failure here is fatal for the caller."""

        timeout = self._settings.launch_timeout_s
        playwright = await self._bounded(
            self._playwright_factory().start(), timeout, "playwright_start"
        )
        apply_stealth(playwright)
        try:
            browser = await self._bounded(
                playwright.chromium.launch(**launch_kwargs()), timeout, "browser_launch"
            )
        except BaseException:
            try:
                await playwright.stop()
            except Exception as exc:
                LOGGER.debug("Playwright stop after failed launch: %s", exc)
            raise

        session = BrowserSession(playwright=playwright, browser=browser)
        LOGGER.info("Browser launched | version=%s", getattr(browser, "version", "unknown"))
        return session

    async def _new_context(self, browser: Browser) -> BrowserContext:
        return await self._bounded(
            browser.new_context(
                extra_http_headers=extra_http_headers(),
                viewport={"width": 1440, "height": 960},
                locale="en-US",
            ),
            self._settings.page_timeout_s,
            "new_context",
        )

    async def new_page(self, session: BrowserSession) -> Page:
        """Create a page in the session's default context."""

        if session.context is None:
            session.context = await self._new_context(session.browser)
        return await self._bounded(
            session.context.new_page(), self._settings.page_timeout_s, "new_page"
        )

    async def isolated_page(self, session: BrowserSession) -> Page:
        """Create a page inside a fresh, disposable context with no shared history."""

        context = await self._new_context(session.browser)
        self._disposable_contexts.add(context)
        try:
            return await self._bounded(
                context.new_page(), self._settings.page_timeout_s, "isolated_page"
            )
        except BaseException:
            self._disposable_contexts.discard(context)
            try:
                await context.close()
            except Exception as exc:
                _log_close_error("isolated context", exc)
            raise

    async def close_page(self, page: Page | None) -> None:
        """Close *page* (and its disposable context) without raising."""

        if page is None:
            return
        context = None
        try:
            context = page.context
        except Exception as exc:
            LOGGER.debug("Page context unavailable: %s", exc)

        try:
            if not page.is_closed():
                await self._bounded(page.close(), self._settings.page_close_timeout_s, "close_page")
        except Exception as exc:
            _log_close_error("page", exc)

        if context is not None and context in self._disposable_contexts:
            self._disposable_contexts.discard(context)
            try:
                await self._bounded(
                    context.close(), self._settings.session_close_timeout_s, "close_context"
                )
            except Exception as exc:
                _log_close_error("isolated context", exc)

    async def install_resource_filter(self, page: Page) -> bool:
        """Abort requests for heavy resource types on *page*."""

        blocked = self._settings.blocked_resource_types
        if not blocked:
            return True

        async def _filter(route: Any) -> None:
            try:
                if route.request.resource_type in blocked:
                    await route.abort()
                else:
                    await route.continue_()
            except Exception as exc:
                LOGGER.debug("Route handling failed: %s", exc)

        try:
            await page.route("**/*", _filter)
        except Exception as exc:
            LOGGER.warning("Unable to install resource filter: %s", exc)
            return False
        return True

    async def navigate_blank(self, page: Page) -> bool:
        """Point *page* at about:blank to drop the previous site's document."""

        try:
            await self._bounded(
                page.goto(BLANK_URL), self._settings.page_timeout_s, "navigate_blank"
            )
        except Exception as exc:
            LOGGER.warning("Unable to reset page to %s: %s", BLANK_URL, exc)
            return False
        return True

    async def clear_session_storage(self, page: Page) -> list[CleanupStep]:
        """Clear cookies, web storage, service workers, IndexedDB and routes for *page*'s context."""

        steps: list[CleanupStep] = []
        try:
            context = page.context
            pages = list(context.pages)
        except Exception as exc:
            steps.append(CleanupStep("context", False, str(exc)))
            _log_failed_steps("Session storage", steps)
            return steps

        for index, each in enumerate(pages):
            steps.append(
                await self._attempt(
                    f"routes[{index}]", lambda: each.unroute_all(behavior="ignoreErrors")
                )
            )
            steps.append(
                await self._attempt(f"web_storage[{index}]", lambda: each.evaluate(_CLEAR_WEB_STORAGE_JS))
            )
            steps.append(
                await self._attempt(
                    f"service_workers[{index}]",
                    lambda: each.evaluate(_UNREGISTER_SERVICE_WORKERS_JS),
                )
            )
            steps.append(
                await self._attempt(f"indexed_db[{index}]", lambda: each.evaluate(_DELETE_INDEXED_DB_JS))
            )
        steps.append(await self._attempt("cookies", context.clear_cookies))
        _log_failed_steps("Session storage", steps)
        return steps

    async def clear_caches_via_debug_protocol(self, page: Page) -> list[CleanupStep]:
        """Issue CDP cache/storage clears; browsers without CDP just yield a failed step."""

        try:
            cdp = await self._bounded(
                page.context.new_cdp_session(page), self._settings.page_timeout_s, "cdp_session"
            )
        except Exception as exc:
            LOGGER.debug("Debug protocol unavailable: %s", exc)
            return [CleanupStep("cdp_session", False, str(exc))]

        steps: list[CleanupStep] = []
        try:
            steps.append(
                await self._attempt(
                    "Network.clearBrowserCache", lambda: cdp.send("Network.clearBrowserCache")
                )
            )
            steps.append(
                await self._attempt(
                    "Network.clearBrowserCookies", lambda: cdp.send("Network.clearBrowserCookies")
                )
            )
            origin = _http_origin(page.url)
            if origin:
                steps.append(
                    await self._attempt(
                        "Storage.clearDataForOrigin",
                        lambda: cdp.send(
                            "Storage.clearDataForOrigin",
                            {"origin": origin, "storageTypes": "all"},
                        ),
                    )
                )
        finally:
            try:
                await cdp.detach()
            except Exception as exc:
                LOGGER.debug("CDP detach failed: %s", exc)
        _log_failed_steps("Debug protocol", steps)
        return steps

    async def recreate_default_page(self, session: BrowserSession, old_page: Page | None) -> Page:
        """Soft reset: replace the shared page inside the same context."""

        await self.close_page(old_page)
        page = await self.new_page(session)
        await self.install_resource_filter(page)
        LOGGER.info("Recreated default page")
        return page

    async def recreate_context(self, session: BrowserSession, old_page: Page | None) -> Page:
        """Hard reset: drop the whole default context and start a new one."""

        context = None
        if old_page is not None:
            try:
                context = old_page.context
            except Exception as exc:
                LOGGER.debug("Old page context unavailable: %s", exc)
        if context is None:
            context = session.context

        if context is not None:
            for each in list(context.pages):
                await self.close_page(each)
            try:
                await self._bounded(
                    context.close(), self._settings.session_close_timeout_s, "close_context"
                )
            except Exception as exc:
                _log_close_error("context", exc)
            self._disposable_contexts.discard(context)
        if session.context is context:
            session.context = None

        page = await self.new_page(session)
        await self.install_resource_filter(page)
        LOGGER.info("Recreated browsing context")
        return page

    def count_resources(self, session: BrowserSession) -> tuple[int, list[int]]:
        """Return (context count, page count per context)."""

        contexts = list(session.browser.contexts)
        return len(contexts), [len(context.pages) for context in contexts]

    async def _close_page_quietly(self, page: Page) -> None:
        try:
            await self._bounded(page.close(), self._settings.page_close_timeout_s, "close_page")
        except Exception as exc:
            _log_close_error("page", exc)

    async def close_session(self, session: BrowserSession | None) -> None:
        """Close every page, then the browser and Playwright; never raises."""

        if session is None:
            return

        pages: list[Page] = []
        try:
            for context in session.browser.contexts:
                pages.extend(context.pages)
        except Exception as exc:
            _log_close_error("browser contexts", exc)

        await asyncio.gather(*(self._close_page_quietly(page) for page in pages))

        try:
            await self._bounded(
                session.browser.close(), self._settings.session_close_timeout_s, "close_browser"
            )
        except ResourceTimeout:
            LOGGER.warning("Browser close timeout, continuing anyway")
        except Exception as exc:
            _log_close_error("browser", exc)

        try:
            await self._bounded(
                session.playwright.stop(), self._settings.session_close_timeout_s, "playwright_stop"
            )
        except Exception as exc:
            LOGGER.warning("Playwright stop failed: %s", exc)

        session.context = None
        self._disposable_contexts.clear()
        LOGGER.info("Browser session closed | pages_closed=%d", len(pages))
