# src/metrics_store.py
"""
In-memory metrics store

Counters, per-metric time series and a bounded log of recent envelopes. State
lives for the process lifetime only. All access goes through one lock so
increments from several consumers never lose updates and readers see whole
values.
"""

import bisect
import datetime
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Mapping, Optional, Tuple

from src.models import Counter, Envelope, TimeSeriesPoint

logger = logging.getLogger(__name__)

CounterKey = Tuple[str, Tuple[Tuple[str, str], ...]]


def counter_key(name: str, labels: Optional[Mapping[str, str]] = None) -> CounterKey:
    return name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class MetricsStore:
    def __init__(self, max_events: int = 10000, max_points: int = 1000, retention_days: int = 30):
        self.max_points = max_points
        self.retention = datetime.timedelta(days=retention_days)
        self._lock = threading.Lock()
        self._counters: Dict[CounterKey, int] = {}
        self._series: Dict[str, List[TimeSeriesPoint]] = {}
        self._events: Deque[Envelope] = deque(maxlen=max_events)

    # --- writes ---

    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, value: int = 1) -> int:
        key = counter_key(name, labels)
        with self._lock:
            count = self._counters.get(key, 0) + value
            self._counters[key] = count
        logger.debug(f"Counter {name}{dict(key[1])} -> {count}")
        return count

    def record(self, metric: str, value: float = 1, timestamp: Optional[datetime.datetime] = None) -> None:
        point = TimeSeriesPoint(metric=metric, timestamp=as_utc(timestamp or _utcnow()), value=value)
        cutoff = _utcnow() - self.retention
        with self._lock:
            points = self._series.setdefault(metric, [])
            # Partitions interleave, so a point can arrive behind newer ones.
            if points and point.timestamp < points[-1].timestamp:
                bisect.insort(points, point, key=lambda p: p.timestamp)
            else:
                points.append(point)
            drop = bisect.bisect_left(points, cutoff, key=lambda p: p.timestamp)
            drop = max(drop, len(points) - self.max_points)
            if drop > 0:
                del points[:drop]

    def log_event(self, envelope: Envelope) -> None:
        with self._lock:
            self._events.append(envelope)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._series.clear()
            self._events.clear()
        logger.info("Metrics reset")

    # --- reads ---

    def get_counter(self, name: str, labels: Optional[Mapping[str, str]] = None) -> Counter:
        key = counter_key(name, labels)
        with self._lock:
            count = self._counters.get(key, 0)
        return Counter(name=name, labels=dict(key[1]), count=count)

    def count(self, name: str, labels: Optional[Mapping[str, str]] = None) -> int:
        return self.get_counter(name, labels).count

    def list_counters(self, prefix: Optional[str] = None) -> List[Counter]:
        """Counters whose name contains `prefix`, case-insensitively."""
        needle = (prefix or "").lower()
        with self._lock:
            items = list(self._counters.items())
        return [
            Counter(name=name, labels=dict(labels), count=count)
            for (name, labels), count in sorted(items)
            if needle in name.lower()
        ]

    def get_time_series(
        self,
        metric: str,
        start_time: Optional[datetime.datetime] = None,
        end_time: Optional[datetime.datetime] = None,
        limit: Optional[int] = None,
    ) -> List[TimeSeriesPoint]:
        """Points in chronological order; `limit` keeps the newest ones."""
        with self._lock:
            points = list(self._series.get(metric, ()))
        if start_time is not None:
            start_time = as_utc(start_time)
            points = [p for p in points if p.timestamp >= start_time]
        if end_time is not None:
            end_time = as_utc(end_time)
            points = [p for p in points if p.timestamp <= end_time]
        if limit is not None:
            points = points[-limit:] if limit > 0 else []
        return points

    def recent_events(self, limit: int = 100) -> List[Envelope]:
        """Most recent first."""
        with self._lock:
            events = list(self._events)
        events.reverse()
        return events[:max(limit, 0)]

    @property
    def total_counters(self) -> int:
        with self._lock:
            return len(self._counters)

    @property
    def total_time_series(self) -> int:
        with self._lock:
            return len(self._series)

    @property
    def total_events(self) -> int:
        with self._lock:
            return len(self._events)
