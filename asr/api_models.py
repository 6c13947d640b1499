from __future__ import annotations

from pydantic import BaseModel, Field


class InstanceOut(BaseModel):
    id: str
    phase: str
    last_transition_time: float
    ready_since: float | None = None
    startup_failures: int = 0
    readiness_failures: int = 0
    liveness_failures: int = 0
    terminating: bool = False


class AggregateOut(BaseModel):
    cpu: float = Field(..., description="Mean CPU utilization (%) over Ready instances")
    mem: float = Field(..., description="Mean memory utilization (%) over Ready instances")
    instance_count: int


class ScalingIntentOut(BaseModel):
    target_replicas: int
    previous: int
    reason: str
    timestamp: float


class DegradedIntentOut(BaseModel):
    action: str
    instance_id: str
    failures: int
    last_error: str


class StatusOut(BaseModel):
    name: str
    desired_count: int
    min_replicas: int
    max_replicas: int
    instances: list[InstanceOut]
    ready: list[str]
    last_aggregate: AggregateOut | None = None
    last_decision_reason: str = ""
    last_scaling_intent: ScalingIntentOut | None = None
    degraded: list[DegradedIntentOut] = Field(default_factory=list)
    ticks: int = 0
    last_error: str = ""


class RouteOut(BaseModel):
    instance_id: str
    base_url: str
