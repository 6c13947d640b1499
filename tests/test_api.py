from fastapi.testclient import TestClient

from asr.api import create_app
from asr.config import parse_config
from asr.reconciler import Reconciler

from fakes import FakeClock, FakeLifecycle, FakeMetrics, ScriptedExecutor


def _client():
    clock = FakeClock()
    rec = Reconciler(
        parse_config({"name": "web", "policy": {"min_replicas": 2, "max_replicas": 5}}),
        executor=ScriptedExecutor(),
        metrics_source=FakeMetrics(),
        lifecycle=FakeLifecycle(),
        base_url=lambda i: f"http://{i}:8000",
        clock=clock,
        lifecycle_workers=0,
        probe_in_background=False,
    )
    app = create_app(lambda: rec, start_loop=False)
    return TestClient(app), rec, clock


def test_health():
    client, _, _ = _client()
    with client:
        assert client.get("/health").json() == {"status": "healthy"}


def test_status_reports_instances_and_bounds():
    client, rec, clock = _client()
    with client:
        rec.tick()
        clock.advance(1)
        rec.tick()

        body = client.get("/status").json()
        assert body["name"] == "web"
        assert body["desired_count"] == 2
        assert (body["min_replicas"], body["max_replicas"]) == (2, 5)
        assert [i["phase"] for i in body["instances"]] == ["Ready", "Ready"]
        assert sorted(body["ready"]) == sorted(rec.machine.ready_ids())
        assert body["degraded"] == []

        instances = client.get("/instances").json()
        assert len(instances) == 2


def test_route_round_robins_ready_instances():
    client, rec, clock = _client()
    with client:
        r = client.get("/route")
        assert r.status_code == 503

        rec.tick()
        clock.advance(1)
        rec.tick()
        picked = {client.get("/route").json()["instance_id"] for _ in range(4)}
        assert picked == set(rec.machine.ready_ids())


def test_events_and_intents_are_exposed():
    client, rec, clock = _client()
    with client:
        rec.tick()
        clock.advance(1)
        rec.tick()
        instance_id = sorted(rec.machine.ready_ids())[0]

        events = client.get("/events", params={"limit": 10, "instance": instance_id}).json()
        assert [e["message"] for e in events] == [
            "Starting -> Ready: startup probe succeeded",
            "Unknown -> Starting: created",
        ]

        intents = client.get("/intents").json()
        assert {i["action"] for i in intents} == {"create"}
        assert {i["status"] for i in intents} == {"issued", "succeeded"}
        assert client.get("/events", params={"limit": 0}).status_code == 422
