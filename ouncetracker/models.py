"""Value types passed between the orchestrator, diagnostics and sinks."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from ouncetracker.errors import ExtractionFailure


@dataclass(frozen=True)
class ExtractionResult:
    """What a dealer strategy returns for one product page."""

    price: Decimal
    canonical_url: str
    in_stock: bool = True


def _coerce_price(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def validate_result(dealer_id: str, product_name: str, result: Any) -> ExtractionResult:
    """Return a normalised result or raise ExtractionFailure."""

    if not isinstance(result, ExtractionResult):
        raise ExtractionFailure(
            dealer_id, product_name, f"strategy returned {type(result).__name__}"
        )
    price = _coerce_price(result.price)
    if price is None or not price.is_finite():
        raise ExtractionFailure(dealer_id, product_name, f"non-numeric price {result.price!r}")
    if price < 0:
        raise ExtractionFailure(dealer_id, product_name, f"negative price {price}")
    url = (result.canonical_url or "").strip()
    if not url:
        raise ExtractionFailure(dealer_id, product_name, "empty canonical url")
    return ExtractionResult(price=price, canonical_url=url, in_stock=bool(result.in_stock))


@dataclass(frozen=True)
class SuccessEntry:
    dealer_id: str
    product_name: str
    price: Decimal


@dataclass(frozen=True)
class FailureEntry:
    dealer_id: str
    product_name: str
    error_summary: str


@dataclass(frozen=True)
class CycleSummary:
    """Immutable copy of a finished cycle's report."""

    cycle_index: int
    successes: tuple[SuccessEntry, ...]
    failures: tuple[FailureEntry, ...]
    duration_s: float

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures)

    def as_payload(self) -> dict[str, Any]:
        return {
            "kind": "cycle_report",
            "cycle": self.cycle_index,
            "duration_s": round(self.duration_s, 1),
            "successes": [
                {"dealer": s.dealer_id, "product": s.product_name, "price": f"{s.price:.2f}"}
                for s in self.successes
            ],
            "failures": [
                {"dealer": f.dealer_id, "product": f.product_name, "error": f.error_summary}
                for f in self.failures
            ],
        }


@dataclass
class CycleReport:
    """Mutable per-cycle accumulator; reset at cycle start and cleared after emission."""

    successes: list[SuccessEntry] = field(default_factory=list)
    failures: list[FailureEntry] = field(default_factory=list)

    def record_success(self, dealer_id: str, product_name: str, price: Decimal) -> None:
        self.successes.append(SuccessEntry(dealer_id, product_name, price))

    def record_failure(self, dealer_id: str, product_name: str, error_summary: str) -> None:
        self.failures.append(FailureEntry(dealer_id, product_name, error_summary))

    def freeze(self, cycle_index: int, duration_s: float) -> CycleSummary:
        return CycleSummary(
            cycle_index=cycle_index,
            successes=tuple(self.successes),
            failures=tuple(self.failures),
            duration_s=duration_s,
        )

    def clear(self) -> None:
        self.successes.clear()
        self.failures.clear()


@dataclass(frozen=True)
class ProcessMemory:
    """Process memory counters in megabytes."""

    heap_used: float
    heap_total: float
    resident: float
    external: float


@dataclass(frozen=True)
class SessionMemory:
    page_count: int
    context_count: int


@dataclass(frozen=True)
class ResourceSnapshot:
    cycle_index: int
    timestamp: float
    process: ProcessMemory
    session: SessionMemory | None = None
    label: str | None = None


@dataclass(frozen=True)
class MemoryTrend:
    cycle_index: int
    heap_used_delta: float
    heap_total_delta: float
    external_delta: float
    resident_delta: float
    page_count_delta: int
    context_count_delta: int
    trend: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle_index,
            "trend": self.trend,
            "heap_used_delta": round(self.heap_used_delta, 2),
            "heap_total_delta": round(self.heap_total_delta, 2),
            "external_delta": round(self.external_delta, 2),
            "resident_delta": round(self.resident_delta, 2),
            "page_count_delta": self.page_count_delta,
            "context_count_delta": self.context_count_delta,
        }


def first_line(exc: BaseException) -> str:
    """Short one-line summary of an exception for reports."""

    message = str(exc).strip().splitlines()
    text = message[0] if message else ""
    name = type(exc).__name__
    return f"{name}: {text}" if text else name
