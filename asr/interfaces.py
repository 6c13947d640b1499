from __future__ import annotations

from typing import Protocol

from .models import Outcome, ProbeKind


class ProbeExecutor(Protocol):
    async def check(self, instance_id: str, kind: ProbeKind) -> Outcome:
        """Run one health check. May hang; the caller enforces the timeout."""
        ...


class MetricsSource(Protocol):
    def sample(self, instance_id: str) -> tuple[float, float] | None:
        """Return (cpu %, mem %) or None when unavailable."""
        ...


class InstanceLifecycle(Protocol):
    def create(self, instance_id: str) -> None:
        ...

    def terminate(self, instance_id: str) -> None:
        ...
