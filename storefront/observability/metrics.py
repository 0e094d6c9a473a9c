"""
Process-local metrics registry.

Counters, gauges and latency histograms are keyed by name plus a sorted label
tuple. Workflow events (order placed, payment confirmed, oversell blocked)
are kept in a bounded ring so the admin dashboard can show recent activity.
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

from storefront.config import Config

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]
MAX_EVENTS = 100


def _key(name: str, labels: Optional[Dict[str, str]]) -> MetricKey:
    if not labels:
        return name, ()
    return name, tuple(sorted((str(k), str(v)) for k, v in labels.items()))


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = value if self.min_value is None else min(self.min_value, value)
        self.max_value = value if self.max_value is None else max(self.max_value, value)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg": self.total / self.count if self.count else 0.0,
            "min": self.min_value,
            "max": self.max_value,
        }


_lock = threading.Lock()
_counters: Dict[MetricKey, float] = defaultdict(float)
_gauges: Dict[MetricKey, float] = {}
_histograms: Dict[MetricKey, Histogram] = {}
_events: Deque[Dict[str, Any]] = deque(maxlen=MAX_EVENTS)


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _lock:
        _counters[_key(name, labels)] += amount


def set_gauge(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _lock:
        _gauges[_key(name, labels)] = value


def observe_latency(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _lock:
        _histograms.setdefault(_key(name, labels), Histogram()).observe(value)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    if not Config.OBSERVABILITY_ENABLED:
        return
    with _lock:
        _events.append({"name": name, "timestamp": time.time(), "payload": payload})


def get_counter_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    with _lock:
        return _counters.get(_key(name, labels), 0.0)


def _group(items: Dict[MetricKey, Any], render) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for (name, labels), value in items.items():
        grouped.setdefault(name, []).append({"labels": dict(labels), **render(value)})
    return grouped


def get_metrics_snapshot() -> Dict[str, Any]:
    with _lock:
        return {
            "counters": _group(_counters, lambda value: {"value": value}),
            "gauges": _group(_gauges, lambda value: {"value": value}),
            "histograms": _group(_histograms, lambda hist: {"stats": hist.snapshot()}),
            "events": list(_events),
        }


def reset_metrics() -> None:
    """Testing helper."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _events.clear()
