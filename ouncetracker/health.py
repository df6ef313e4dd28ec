"""Per-dealer failure tracking used to escalate page isolation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ouncetracker.catalog import DealerCatalogEntry
from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    ESCALATED = "escalated"


@dataclass
class DealerHealthTracker:
    """Counts consecutive failed visits per dealer.

    A dealer whose streak reaches ``escalate_after`` is visited on isolated
    pages until it records a successful visit. ``escalate_after=0`` disables
    escalation.
    """

    escalate_after: int = 3
    _streaks: dict[str, int] = field(init=False, default_factory=dict)
    _escalated: set[str] = field(init=False, default_factory=set)

    def state(self, dealer_id: str) -> HealthState:
        return HealthState.ESCALATED if dealer_id in self._escalated else HealthState.HEALTHY

    def streak(self, dealer_id: str) -> int:
        return self._streaks.get(dealer_id, 0)

    def needs_isolation(self, dealer: DealerCatalogEntry) -> bool:
        return dealer.is_protected or dealer.dealer_id in self._escalated

    def record_visit(self, dealer_id: str, *, successes: int, failures: int) -> None:
        """Record the outcome of one dealer visit within a cycle."""

        if successes > 0:
            self._streaks[dealer_id] = 0
            if dealer_id in self._escalated:
                self._escalated.discard(dealer_id)
                LOGGER.info("Dealer recovered; back on the shared page | dealer=%s", dealer_id)
            return
        if failures == 0:
            return

        streak = self._streaks.get(dealer_id, 0) + 1
        self._streaks[dealer_id] = streak
        if (
            self.escalate_after > 0
            and streak >= self.escalate_after
            and dealer_id not in self._escalated
        ):
            self._escalated.add(dealer_id)
            LOGGER.warning(
                "Dealer failing repeatedly; switching to isolated pages | dealer=%s | streak=%d",
                dealer_id,
                streak,
            )

    def escalated(self) -> tuple[str, ...]:
        return tuple(sorted(self._escalated))
