from __future__ import annotations

import re
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .config import Target
from .db import log_event
from .settings import settings


SET_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def validate_set_name(name: str) -> None:
    if not SET_NAME_RE.match(name):
        raise ValueError(
            "Invalid replica set name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def container_name(set_name: str, instance_id: str) -> str:
    return f"asr-{set_name}-{instance_id}"


def container_http_base(name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{name}:{int(internal_port)}"


class DockerLifecycle:
    """InstanceLifecycle backed by the local Docker daemon.

    Containers are labeled with the replica set and instance id so they can be
    found again after a restart. Errors propagate; the controller retries.
    """

    def __init__(self, set_name: str, target: Target):
        validate_set_name(set_name)
        self.set_name = set_name
        self.target = target

    def create(self, instance_id: str) -> None:
        ensure_network()
        name = container_name(self.set_name, instance_id)
        labels: dict[str, str] = {
            "asr.set": self.set_name,
            "asr.instance": instance_id,
        }
        _client().containers.run(
            self.target.image,
            detach=True,
            name=name,
            environment=dict(self.target.env),
            network=settings.docker_network,
            labels=labels,
            # Replacement is the controller's job; keep Docker's restart policy off.
            restart_policy={"Name": "no"},
        )
        log_event("INFO", f"Started container {name} from image {self.target.image}", instance=instance_id)

    def terminate(self, instance_id: str) -> None:
        name = container_name(self.set_name, instance_id)
        try:
            _client().containers.get(name).remove(force=True)
        except NotFound:
            return
        log_event("INFO", f"Removed container {name}", instance=instance_id)

    def base_url(self, instance_id: str) -> str:
        return container_http_base(container_name(self.set_name, instance_id), self.target.port)

    def list_instance_ids(self) -> list[str]:
        filters: dict[str, Any] = {"label": [f"asr.set={self.set_name}"]}
        containers = _client().containers.list(all=True, filters=filters)
        return [x.labels.get("asr.instance", "") for x in containers if x.labels.get("asr.instance")]


def cpu_percent(stats: dict[str, Any]) -> float | None:
    """CPU utilization from one `docker stats` snapshot, as a percent of one core per online CPU."""
    try:
        cpu = stats["cpu_stats"]
        pre = stats["precpu_stats"]
        cpu_delta = cpu["cpu_usage"]["total_usage"] - pre["cpu_usage"]["total_usage"]
        sys_delta = cpu["system_cpu_usage"] - pre["system_cpu_usage"]
        online = cpu.get("online_cpus") or len(cpu["cpu_usage"].get("percpu_usage") or [1])
    except (KeyError, TypeError):
        return None
    if sys_delta <= 0 or cpu_delta < 0:
        return None
    return cpu_delta / sys_delta * online * 100.0


def mem_percent(stats: dict[str, Any]) -> float | None:
    try:
        mem = stats["memory_stats"]
        usage = mem["usage"] - (mem.get("stats") or {}).get("inactive_file", 0)
        limit = mem["limit"]
    except (KeyError, TypeError):
        return None
    if not limit:
        return None
    return usage / limit * 100.0


class DockerMetricsSource:
    """MetricsSource reading one-shot container stats."""

    def __init__(self, set_name: str):
        self.set_name = set_name

    def sample(self, instance_id: str) -> tuple[float, float] | None:
        try:
            cont = _client().containers.get(container_name(self.set_name, instance_id))
            stats = cont.stats(stream=False)
        except (NotFound, DockerException):
            return None
        cpu, mem = cpu_percent(stats), mem_percent(stats)
        if cpu is None or mem is None:
            return None
        return cpu, mem
