from __future__ import annotations

import tracemalloc

import pytest

from ouncetracker.diagnostics import (
    INSUFFICIENT_DATA,
    NO_OBVIOUS_LEAK,
    ResourceDiagnosticsCollector,
    read_process_memory,
)
from ouncetracker.models import ProcessMemory


class ScriptedProbe:
    def __init__(self, heaps: list[float], resident: list[float] | None = None) -> None:
        self._heaps = list(heaps)
        self._resident = list(resident or [200.0] * len(heaps))

    def __call__(self) -> ProcessMemory:
        heap = self._heaps.pop(0)
        resident = self._resident.pop(0)
        return ProcessMemory(heap_used=heap, heap_total=heap * 2, resident=resident, external=50.0)


class CollectingNotifier:
    def __init__(self) -> None:
        self.structured: list[dict] = []

    def send_text(self, message: str) -> None:
        pass

    def send_structured(self, summary) -> None:
        self.structured.append(summary)


def _collector(probe, **kwargs) -> tuple[ResourceDiagnosticsCollector, CollectingNotifier]:
    notifier = CollectingNotifier()
    return ResourceDiagnosticsCollector(notifier, memory_probe=probe, **kwargs), notifier


def test_trend_requires_two_snapshots() -> None:
    collector, _ = _collector(ScriptedProbe([100.0]))
    assert collector.trend() is None

    collector.take_snapshot()
    assert collector.trend() is None


def test_heap_growth_over_threshold_is_increasing() -> None:
    collector, _ = _collector(ScriptedProbe([100.0, 125.0]), increase_threshold_mb=10)
    collector.take_snapshot()
    collector.take_snapshot()

    trend = collector.trend(2)

    assert trend is not None
    assert trend.trend == "increasing"
    assert trend.heap_used_delta == pytest.approx(25.0)


def test_small_drop_is_stable_and_large_drop_decreasing() -> None:
    collector, _ = _collector(ScriptedProbe([100.0, 97.0, 80.0]))
    for _ in range(3):
        collector.take_snapshot()

    assert collector.trend(2).trend == "decreasing"
    assert collector.trend(10).trend == "decreasing"

    stable, _ = _collector(ScriptedProbe([100.0, 97.0]))
    stable.take_snapshot()
    stable.take_snapshot()
    assert stable.trend().trend == "stable"


def test_buffer_never_exceeds_retained_maximum() -> None:
    collector, _ = _collector(ScriptedProbe([float(i) for i in range(25)]), max_retained=5)
    for index in range(25):
        collector.take_snapshot(cycle_index=index)
        assert len(collector.snapshots) <= 5

    assert [snap.cycle_index for snap in collector.snapshots] == [20, 21, 22, 23, 24]


def test_analysis_with_too_little_history() -> None:
    collector, notifier = _collector(ScriptedProbe([1.0, 2.0]))
    collector.take_snapshot()
    collector.take_snapshot()

    assert collector.analysis() == INSUFFICIENT_DATA
    assert notifier.structured == []


def test_analysis_reports_issues_and_notifies() -> None:
    def counter(session):
        counter.calls += 1
        return (1, [counter.calls])

    counter.calls = 0
    collector, notifier = _collector(
        ScriptedProbe([100.0, 110.0, 140.0], resident=[200.0, 230.0, 300.0]),
        resource_counter=counter,
    )
    for index in range(3):
        collector.take_snapshot(session=object(), cycle_index=index)

    text = collector.analysis()

    assert "Heap grew 40.00MB" in text
    assert "Resident memory grew 100.00MB" in text
    assert "Open pages increased by 2" in text
    payload = notifier.structured[0]
    assert payload["kind"] == "memory_analysis"
    assert payload["trend"]["trend"] == "increasing"
    assert len(payload["snapshots"]) == 3


def test_analysis_without_issues() -> None:
    collector, notifier = _collector(ScriptedProbe([100.0, 101.0, 102.0]))
    for _ in range(3):
        collector.take_snapshot()

    assert NO_OBVIOUS_LEAK in collector.analysis()
    assert notifier.structured[0]["issues"] == []


def test_maybe_helpers_follow_their_intervals() -> None:
    collector, _ = _collector(
        ScriptedProbe([1.0] * 10), snapshot_every=2, analyze_every=4
    )
    taken = [collector.maybe_snapshot(None, cycle) for cycle in range(1, 9)]

    assert sum(snapshot is not None for snapshot in taken) == 4
    assert collector.maybe_analyze(3) is None
    assert collector.maybe_analyze(4) is not None


def test_real_probe_reports_megabytes() -> None:
    memory = read_process_memory()

    assert memory.resident > 0
    assert memory.heap_used >= 0
    assert memory.external >= 0


def test_heap_tracing_is_opt_in() -> None:
    was_tracing = tracemalloc.is_tracing()
    tracemalloc.stop()
    try:
        untraced = read_process_memory()
        assert not tracemalloc.is_tracing()
        assert untraced.heap_used == 0

        traced = read_process_memory(trace_heap=True)
        assert tracemalloc.is_tracing()
        assert traced.heap_total >= traced.heap_used >= 0
    finally:
        tracemalloc.stop()
        if was_tracing:
            tracemalloc.start()
