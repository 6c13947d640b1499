"""Autoscaling Service Reconciler (ASR).

Decision engine for a replica set of service instances:
 - startup / readiness / liveness probe state machine per instance
 - utilization aggregation over Ready instances
 - stabilized replica-count decisions
 - idempotent reconciliation into create/terminate intents

External capabilities (probing, metrics, instance lifecycle) are injected,
so the loop can run against Docker or against fakes.
"""
