"""Lightweight metrics registry for the margin watcher."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, MutableMapping, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


@dataclass
class MetricRegistry:
    """A minimal Prometheus-style collector used for in-process accounting."""

    counters: MutableMapping[Tuple[str, LabelKey], float] = field(default_factory=lambda: defaultdict(float))
    histograms: MutableMapping[Tuple[str, LabelKey], list] = field(default_factory=lambda: defaultdict(list))

    def inc(self, name: str, *, labels: Mapping[str, str] | None = None, amount: float = 1.0) -> None:
        key = self._key(name, labels)
        self.counters[key] += amount

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._key(name, labels)
        self.histograms[key].append(value)

    def counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        return self.counters.get(self._key(name, labels), 0.0)

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON friendly view of every recorded series."""

        counters = [
            {"name": name, "labels": dict(labels), "value": value} for (name, labels), value in self.counters.items()
        ]
        histograms = []
        for (name, labels), values in self.histograms.items():
            histograms.append(
                {
                    "name": name,
                    "labels": dict(labels),
                    "count": len(values),
                    "sum": sum(values),
                    "max": max(values) if values else None,
                }
            )
        return {"counters": counters, "histograms": histograms}

    def _key(self, name: str, labels: Mapping[str, str] | None) -> Tuple[str, LabelKey]:
        sorted_labels = tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))
        return name, sorted_labels


class Timer:
    """Context manager to record elapsed time into a histogram."""

    def __init__(self, registry: MetricRegistry, name: str, *, labels: Mapping[str, str] | None = None) -> None:
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start: float | None = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._start is None:
            return
        duration = time.perf_counter() - self._start
        self._registry.observe(self._name, duration, labels=self._labels)
