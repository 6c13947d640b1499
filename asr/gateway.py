from __future__ import annotations

from .runtime import RouteTarget, RuntimeState


class NoReadyBackends(Exception):
    pass


def select_backend(runtime: RuntimeState) -> RouteTarget:
    """Round-robin across Ready instances.

    The target list is rebuilt by the reconciler from the Ready set each cycle,
    so Starting, Unhealthy and Failed instances never receive traffic.
    """
    targets = runtime.get_targets()
    if not targets:
        raise NoReadyBackends("No Ready instances.")
    return targets[runtime.next_index(len(targets))]
