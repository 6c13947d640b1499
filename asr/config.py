"""Manifest-style configuration for the controller.

A single YAML document declares the scaling policy, the three probe
configurations and how to reach an instance::

    policy:
      min_replicas: 2
      max_replicas: 10
      target_cpu_utilization: 70
      scale_down_stabilization_window: 300
    probes:
      startup: {initial_delay: 10, interval: 10, failure_threshold: 10}
      readiness: {interval: 5, failure_threshold: 3}
      liveness: {interval: 10, failure_threshold: 3}
    target:
      image: example-service:latest
      port: 8000

It is loaded once into frozen models; keys are never re-interpreted at runtime.
"""
from __future__ import annotations

from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .models import ProbeKind


class ConfigError(ValueError):
    pass


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ProbeConfig(_Frozen):
    initial_delay: float = Field(0.0, ge=0, description="Seconds after start before the first check")
    interval: float = Field(10.0, gt=0, description="Seconds between checks")
    timeout: float = Field(1.0, gt=0, description="Per-check timeout in seconds")
    failure_threshold: int = Field(3, ge=1)
    success_threshold: int = Field(1, ge=1)
    path: str = Field("/health", description="HTTP path for the reference executor")

    @property
    def startup_window(self) -> float:
        """Longest time a startup probe may keep failing before the instance is Failed."""
        return self.initial_delay + self.interval * self.failure_threshold


class ProbeSet(_Frozen):
    startup: ProbeConfig = ProbeConfig(path="/startup")
    readiness: ProbeConfig = ProbeConfig(path="/ready")
    liveness: ProbeConfig = ProbeConfig(path="/live")

    def for_kind(self, kind: ProbeKind) -> ProbeConfig:
        return getattr(self, kind.value)


class ScalingPolicy(_Frozen):
    min_replicas: int = Field(1, ge=1)
    max_replicas: int = Field(10, ge=1)
    target_cpu_utilization: float | None = Field(80.0, description="Percent; None disables")
    target_mem_utilization: float | None = Field(None, description="Percent; None disables")
    scale_up_stabilization_window: float = Field(0.0, ge=0)
    scale_down_stabilization_window: float = Field(300.0, ge=0)
    max_change_fraction: float = Field(1.0, gt=0)
    tolerance: float = Field(0.0, ge=0, lt=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ScalingPolicy":
        if self.min_replicas > self.max_replicas:
            raise ValueError("min_replicas must not exceed max_replicas")
        for name in ("target_cpu_utilization", "target_mem_utilization"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive")
        return self

    def clamp(self, n: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, int(n)))

    @property
    def longest_window(self) -> float:
        return max(self.scale_up_stabilization_window, self.scale_down_stabilization_window)


class Target(_Frozen):
    """How the Docker adapters create and reach an instance."""

    image: str = "example-service:latest"
    port: int = Field(8000, ge=1, le=65535)
    env: dict[str, str] = Field(default_factory=dict)


class ControllerConfig(_Frozen):
    name: str = Field("default", pattern=r"^[a-z][a-z0-9\-]{0,62}$")
    policy: ScalingPolicy = ScalingPolicy()
    probes: ProbeSet = ProbeSet()
    target: Target = Target()
    initial_replicas: int | None = Field(None, ge=0)

    @property
    def starting_desired(self) -> int:
        if self.initial_replicas is None:
            return self.policy.min_replicas
        return self.policy.clamp(self.initial_replicas)


def parse_config(data: dict[str, Any] | None) -> ControllerConfig:
    try:
        return ControllerConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def load_config(path: str) -> ControllerConfig:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path!r}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path!r}: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"Config {path!r} must be a mapping at the top level.")
    return parse_config(data)
