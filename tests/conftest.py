from __future__ import annotations

import pytest

from ouncetracker.browser import BrowserResourceManager
from ouncetracker.config import BrowserSettings
from tests.fakes import FakePlaywright, fake_factory


@pytest.fixture()
def fake_playwright() -> FakePlaywright:
    return FakePlaywright()


@pytest.fixture()
def manager(monkeypatch: pytest.MonkeyPatch, fake_playwright: FakePlaywright) -> BrowserResourceManager:
    monkeypatch.setattr("ouncetracker.browser.apply_stealth", lambda playwright: None)
    settings = BrowserSettings(
        launch_timeout_s=1.0,
        page_timeout_s=1.0,
        page_close_timeout_s=0.5,
        session_close_timeout_s=0.5,
    )
    return BrowserResourceManager(settings, playwright_factory=fake_factory(fake_playwright))
