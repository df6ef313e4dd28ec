"""Rolling memory and browser-resource snapshots with leak heuristics.

Python heap figures come from :mod:`tracemalloc`, which slows every allocation
once started. Tracing is therefore off unless ``trace_heap`` is requested; while
off, heap figures read as zero and only the resident and browser (child process)
figures drive the leak heuristics.
"""

from __future__ import annotations

import time
import tracemalloc
from functools import partial
from typing import Any, Callable

import psutil

from ouncetracker.alerts.notifier import Notifier
from ouncetracker.logging_config import get_logger
from ouncetracker.models import MemoryTrend, ProcessMemory, ResourceSnapshot, SessionMemory

LOGGER = get_logger(__name__)

_MB = 1024 * 1024

INSUFFICIENT_DATA = "Insufficient data for memory analysis (need at least 3 snapshots)"
NO_OBVIOUS_LEAK = "No obvious leak detected"

MemoryProbe = Callable[[], ProcessMemory]
ResourceCounter = Callable[[Any], "tuple[int, list[int]]"]


def _mb(value: float) -> float:
    return round(value / _MB, 2)


def read_process_memory(trace_heap: bool = False) -> ProcessMemory:
    """Traced Python heap (tracemalloc), worker RSS and browser RSS (child processes)."""

    if trace_heap and not tracemalloc.is_tracing():
        tracemalloc.start(1)
    current, peak = tracemalloc.get_traced_memory()

    process = psutil.Process()
    resident = process.memory_info().rss
    external = 0
    for child in process.children(recursive=True):
        try:
            external += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return ProcessMemory(
        heap_used=_mb(current),
        heap_total=_mb(peak),
        resident=_mb(resident),
        external=_mb(external),
    )


class ResourceDiagnosticsCollector:
    def __init__(
        self,
        notifier: Notifier,
        *,
        max_retained: int = 100,
        trend_window: int = 10,
        increase_threshold_mb: float = 10.0,
        decrease_threshold_mb: float = -5.0,
        heap_issue_mb: float = 20.0,
        external_issue_mb: float = 20.0,
        resident_issue_mb: float = 50.0,
        snapshot_every: int = 1,
        analyze_every: int = 10,
        memory_probe: MemoryProbe | None = None,
        trace_heap: bool = False,
        resource_counter: ResourceCounter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_retained < 1:
            raise ValueError("max_retained must be >= 1")
        self._notifier = notifier
        self._max_retained = max_retained
        self._trend_window = trend_window
        self._increase_threshold = increase_threshold_mb
        self._decrease_threshold = decrease_threshold_mb
        self._heap_issue = heap_issue_mb
        self._external_issue = external_issue_mb
        self._resident_issue = resident_issue_mb
        self._snapshot_every = max(1, snapshot_every)
        self._analyze_every = max(1, analyze_every)
        self._memory_probe = memory_probe or partial(read_process_memory, trace_heap)
        self._resource_counter = resource_counter
        self._clock = clock
        self._snapshots: list[ResourceSnapshot] = []
        self._cycle_index = 0

    @property
    def snapshots(self) -> tuple[ResourceSnapshot, ...]:
        return tuple(self._snapshots)

    def _session_memory(self, session: Any) -> SessionMemory | None:
        if session is None or self._resource_counter is None:
            return None
        try:
            contexts, pages = self._resource_counter(session)
        except Exception as exc:
            LOGGER.debug("Unable to count browser resources: %s", exc)
            return None
        return SessionMemory(page_count=sum(pages), context_count=contexts)

    def take_snapshot(
        self, session: Any = None, label: str | None = None, *, cycle_index: int | None = None
    ) -> ResourceSnapshot:
        if cycle_index is not None:
            self._cycle_index = cycle_index
        snapshot = ResourceSnapshot(
            cycle_index=self._cycle_index,
            timestamp=self._clock(),
            process=self._memory_probe(),
            session=self._session_memory(session),
            label=label,
        )
        self._snapshots.append(snapshot)
        if len(self._snapshots) > self._max_retained:
            del self._snapshots[: len(self._snapshots) - self._max_retained]
        LOGGER.debug(
            "Memory snapshot | cycle=%d | heap=%.2fMB | rss=%.2fMB | browser=%.2fMB",
            snapshot.cycle_index,
            snapshot.process.heap_used,
            snapshot.process.resident,
            snapshot.process.external,
        )
        return snapshot

    def trend(self, window: int | None = None) -> MemoryTrend | None:
        """Compare the first and last of the latest *window* snapshots; None below 2."""

        size = max(2, window or self._trend_window)
        recent = self._snapshots[-size:]
        if len(recent) < 2:
            return None
        first, last = recent[0], recent[-1]
        heap_delta = last.process.heap_used - first.process.heap_used
        if heap_delta > self._increase_threshold:
            label = "increasing"
        elif heap_delta < self._decrease_threshold:
            label = "decreasing"
        else:
            label = "stable"

        first_session = first.session or SessionMemory(0, 0)
        last_session = last.session or SessionMemory(0, 0)
        return MemoryTrend(
            cycle_index=last.cycle_index,
            heap_used_delta=round(heap_delta, 2),
            heap_total_delta=round(last.process.heap_total - first.process.heap_total, 2),
            external_delta=round(last.process.external - first.process.external, 2),
            resident_delta=round(last.process.resident - first.process.resident, 2),
            page_count_delta=last_session.page_count - first_session.page_count,
            context_count_delta=last_session.context_count - first_session.context_count,
            trend=label,
        )

    def issues(self, trend: MemoryTrend) -> list[str]:
        found: list[str] = []
        if trend.heap_used_delta > self._heap_issue:
            found.append(f"Heap grew {trend.heap_used_delta:.2f}MB over the window")
        if trend.external_delta > self._external_issue:
            found.append(f"Browser memory grew {trend.external_delta:.2f}MB over the window")
        if trend.resident_delta > self._resident_issue:
            found.append(f"Resident memory grew {trend.resident_delta:.2f}MB over the window")
        if trend.page_count_delta > 0:
            found.append(f"Open pages increased by {trend.page_count_delta}")
        if trend.context_count_delta > 0:
            found.append(f"Browser contexts increased by {trend.context_count_delta}")
        return found

    def analysis(self) -> str:
        if len(self._snapshots) < 3:
            return INSUFFICIENT_DATA
        trend = self.trend()
        if trend is None:  # pragma: no cover - guarded by the length check
            return INSUFFICIENT_DATA
        found = self.issues(trend)
        lines = [f"Memory trend: {trend.trend} (heap {trend.heap_used_delta:+.2f}MB)"]
        if found:
            lines.extend(f"- {issue}" for issue in found)
        else:
            lines.append(NO_OBVIOUS_LEAK)
        text = "\n".join(lines)

        self._notifier.send_structured(
            {
                "kind": "memory_analysis",
                "issues": found,
                "trend": trend.as_payload(),
                "snapshots": [self._snapshot_payload(snap) for snap in self._snapshots[-10:]],
            }
        )
        return text

    @staticmethod
    def _snapshot_payload(snapshot: ResourceSnapshot) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "cycle": snapshot.cycle_index,
            "heap_used": snapshot.process.heap_used,
            "resident": snapshot.process.resident,
            "external": snapshot.process.external,
        }
        if snapshot.session is not None:
            payload["pages"] = snapshot.session.page_count
            payload["contexts"] = snapshot.session.context_count
        return payload

    def maybe_snapshot(self, session: Any, cycle_index: int) -> ResourceSnapshot | None:
        if cycle_index % self._snapshot_every:
            return None
        return self.take_snapshot(session, label=f"cycle-{cycle_index}", cycle_index=cycle_index)

    def maybe_analyze(self, cycle_index: int) -> str | None:
        if cycle_index % self._analyze_every:
            return None
        text = self.analysis()
        LOGGER.info("Memory analysis | cycle=%d\n%s", cycle_index, text)
        return text
