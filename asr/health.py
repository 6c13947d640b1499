from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

import httpx

from .config import ProbeSet
from .interfaces import ProbeExecutor
from .models import Outcome, ProbeKind


class HttpProbeExecutor:
    """Call an instance's probe endpoint over HTTP.

    Expected: HTTP 200, optionally with JSON {"status": "healthy"}.
    Anything else (non-200, unhealthy payload, connection error) is a Failure.
    The caller enforces the per-check timeout; httpx's own timeout is a backstop.
    """

    def __init__(
        self,
        probes: ProbeSet,
        base_url: Callable[[str], str],
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.probes = probes
        self.base_url = base_url
        self.transport = transport

    async def check(self, instance_id: str, kind: ProbeKind) -> Outcome:
        cfg = self.probes.for_kind(kind)
        url = f"{self.base_url(instance_id)}{cfg.path}"
        try:
            async with httpx.AsyncClient(timeout=cfg.timeout, follow_redirects=False, transport=self.transport) as client:
                resp = await client.get(url)
        except httpx.TimeoutException:
            return Outcome.TIMEOUT
        except httpx.HTTPError:
            return Outcome.FAILURE
        if resp.status_code != 200:
            return Outcome.FAILURE
        try:
            data = resp.json()
        except ValueError:
            return Outcome.SUCCESS
        if isinstance(data, dict) and data.get("status") not in (None, "healthy", "ok"):
            return Outcome.FAILURE
        return Outcome.SUCCESS


@dataclass(frozen=True)
class ProbeResult:
    instance_id: str
    kind: ProbeKind
    outcome: Outcome
    detail: str = ""


class ProbeRunner:
    """Run many probe checks concurrently with a bounded number in flight.

    Each check is bounded by its probe kind's timeout; a check still running at
    the deadline is cancelled and reported as Timeout, so it never keeps a slot.
    """

    def __init__(self, executor: ProbeExecutor, probes: ProbeSet, max_workers: int = 8):
        self.executor = executor
        self.probes = probes
        self.max_workers = max(1, int(max_workers))

    async def run(self, checks: list[tuple[str, ProbeKind]]) -> list[ProbeResult]:
        if not checks:
            return []
        sem = asyncio.Semaphore(self.max_workers)

        async def one(instance_id: str, kind: ProbeKind) -> ProbeResult:
            async with sem:
                timeout = self.probes.for_kind(kind).timeout
                try:
                    outcome = await asyncio.wait_for(self.executor.check(instance_id, kind), timeout)
                except asyncio.TimeoutError:
                    return ProbeResult(instance_id, kind, Outcome.TIMEOUT, f"no answer within {timeout:g}s")
                except Exception as e:
                    return ProbeResult(instance_id, kind, Outcome.FAILURE, f"Error: {type(e).__name__}: {e}")
                return ProbeResult(instance_id, kind, Outcome(outcome))

        return list(await asyncio.gather(*(one(i, k) for i, k in checks)))

    def run_sync(self, checks: list[tuple[str, ProbeKind]]) -> list[ProbeResult]:
        """Blocking entry point for the reconciler thread."""
        if not checks:
            return []
        return asyncio.run(self.run(checks))
