from __future__ import annotations

from ouncetracker.catalog import BotMitigationClass, DealerCatalogEntry
from ouncetracker.health import DealerHealthTracker, HealthState


def _entry(dealer_id: str, protected: bool = False) -> DealerCatalogEntry:
    return DealerCatalogEntry(
        dealer_id,
        dealer_id,
        "https://example.com",
        BotMitigationClass.PROTECTED if protected else BotMitigationClass.NONE,
        (),
    )


def test_escalates_after_consecutive_failed_visits_and_recovers() -> None:
    tracker = DealerHealthTracker(escalate_after=3)
    dealer = _entry("bgasc")

    for _ in range(2):
        tracker.record_visit("bgasc", successes=0, failures=2)
    assert tracker.needs_isolation(dealer) is False
    assert tracker.streak("bgasc") == 2

    tracker.record_visit("bgasc", successes=0, failures=2)
    assert tracker.needs_isolation(dealer) is True
    assert tracker.state("bgasc") is HealthState.ESCALATED
    assert tracker.escalated() == ("bgasc",)

    tracker.record_visit("bgasc", successes=1, failures=1)
    assert tracker.needs_isolation(dealer) is False
    assert tracker.streak("bgasc") == 0


def test_partial_success_resets_streak() -> None:
    tracker = DealerHealthTracker(escalate_after=2)
    tracker.record_visit("a", successes=0, failures=1)
    tracker.record_visit("a", successes=1, failures=3)
    tracker.record_visit("a", successes=0, failures=1)

    assert tracker.state("a") is HealthState.HEALTHY


def test_zero_threshold_disables_escalation() -> None:
    tracker = DealerHealthTracker(escalate_after=0)
    for _ in range(10):
        tracker.record_visit("a", successes=0, failures=1)

    assert tracker.needs_isolation(_entry("a")) is False


def test_protected_dealers_always_isolated() -> None:
    tracker = DealerHealthTracker()
    tracker.record_visit("jm-bullion", successes=4, failures=0)

    assert tracker.needs_isolation(_entry("jm-bullion", protected=True)) is True
