from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Iterable

from .interfaces import MetricsSource
from .models import Aggregate, MetricSample


class MetricsAggregator:
    """Keeps a short ring buffer of samples per instance and reduces them per cycle.

    Only the newest sample of each Ready instance counts; instances whose newest
    sample is older than `staleness_s` are dropped for the cycle.
    """

    def __init__(self, staleness_s: float = 60.0, buffer_size: int = 10):
        self.staleness_s = float(staleness_s)
        self.buffer_size = max(1, int(buffer_size))
        self._lock = Lock()
        self._buffers: dict[str, deque[MetricSample]] = {}

    def ingest(self, sample: MetricSample) -> None:
        with self._lock:
            buf = self._buffers.get(sample.instance_id)
            if buf is None:
                buf = deque(maxlen=self.buffer_size)
                self._buffers[sample.instance_id] = buf
            buf.append(sample)

    def forget(self, instance_id: str) -> None:
        with self._lock:
            self._buffers.pop(instance_id, None)

    def latest(self, instance_id: str) -> MetricSample | None:
        with self._lock:
            buf = self._buffers.get(instance_id)
            if not buf:
                return None
            return max(buf, key=lambda s: s.timestamp)

    def collect(self, source: MetricsSource, instance_ids: Iterable[str], now: float) -> int:
        """Poll the source once per instance. Returns how many samples were ingested."""
        n = 0
        for instance_id in instance_ids:
            try:
                values = source.sample(instance_id)
            except Exception:
                # Unavailable this cycle; staleness handles the rest.
                continue
            if values is None:
                continue
            cpu, mem = values
            self.ingest(MetricSample(instance_id, now, float(cpu), float(mem)))
            n += 1
        return n

    def aggregate(self, ready_ids: Iterable[str], now: float) -> Aggregate | None:
        """Mean of the freshest sample per Ready instance, or None when nothing qualifies."""
        fresh: list[MetricSample] = []
        for instance_id in ready_ids:
            s = self.latest(instance_id)
            if s is None or now - s.timestamp > self.staleness_s:
                continue
            fresh.append(s)
        if not fresh:
            return None
        return Aggregate(
            cpu=sum(s.cpu_utilization for s in fresh) / len(fresh),
            mem=sum(s.mem_utilization for s in fresh) / len(fresh),
            instance_count=len(fresh),
        )
