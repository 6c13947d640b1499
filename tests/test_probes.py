import pytest

from asr.config import ProbeConfig, ProbeSet
from asr.models import Outcome, Phase, ProbeKind
from asr.probes import ProbeStateMachine, UnknownInstance

S, F, T = Outcome.SUCCESS, Outcome.FAILURE, Outcome.TIMEOUT


def _machine(**startup) -> ProbeStateMachine:
    probes = ProbeSet(
        startup=ProbeConfig(**{"initial_delay": 0, "interval": 1, "failure_threshold": 3, "success_threshold": 2, **startup}),
        readiness=ProbeConfig(interval=1, failure_threshold=3, success_threshold=2),
        liveness=ProbeConfig(interval=1, failure_threshold=3),
    )
    return ProbeStateMachine(probes, clock=lambda: 0.0)


def _ready(m: ProbeStateMachine, instance_id: str = "a") -> None:
    m.add_instance(instance_id, now=0)
    m.mark_started(instance_id, now=0)
    m.record_outcome(instance_id, ProbeKind.STARTUP, S, now=1)
    m.record_outcome(instance_id, ProbeKind.STARTUP, S, now=2)
    assert m.get(instance_id).phase is Phase.READY


def test_new_instance_is_unknown_until_started():
    m = _machine()
    m.add_instance("a", now=0)
    assert m.get("a").phase is Phase.UNKNOWN
    assert m.record_outcome("a", ProbeKind.STARTUP, S, now=1) is None

    ev = m.mark_started("a", now=1)
    assert ev.from_phase is Phase.UNKNOWN and ev.to_phase is Phase.STARTING
    assert m.get("a").phase is Phase.STARTING


def test_not_ready_before_success_threshold_startup_successes():
    m = _machine()
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)

    m.record_outcome("a", ProbeKind.STARTUP, S, now=1)
    assert "a" not in m.ready_ids()
    # A failure in between wipes the streak.
    m.record_outcome("a", ProbeKind.STARTUP, F, now=2)
    m.record_outcome("a", ProbeKind.STARTUP, S, now=3)
    assert "a" not in m.ready_ids()

    ev = m.record_outcome("a", ProbeKind.STARTUP, S, now=4)
    assert ev.to_phase is Phase.READY
    assert m.ready_ids() == frozenset({"a"})


def test_readiness_and_liveness_suppressed_while_starting():
    m = _machine()
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)
    for t in range(1, 10):
        assert m.record_outcome("a", ProbeKind.LIVENESS, F, now=t) is None
        assert m.record_outcome("a", ProbeKind.READINESS, F, now=t) is None
    assert m.get("a").phase is Phase.STARTING


def test_startup_failures_reach_failed_and_timeout_counts_as_failure():
    m = _machine()
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)
    m.record_outcome("a", ProbeKind.STARTUP, F, now=1)
    m.record_outcome("a", ProbeKind.STARTUP, T, now=2)
    ev = m.record_outcome("a", ProbeKind.STARTUP, F, now=3)
    assert ev.to_phase is Phase.FAILED
    assert m.get("a").phase is Phase.FAILED


def test_startup_never_succeeding_fails_between_100_and_110_seconds():
    probes = ProbeSet(startup=ProbeConfig(initial_delay=10, interval=10, failure_threshold=10))
    m = ProbeStateMachine(probes, clock=lambda: 0.0)
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)

    failed_at = None
    t = 0.0
    while t <= 120 and failed_at is None:
        for instance_id, kind in m.due_checks(now=t):
            m.record_outcome(instance_id, kind, F, now=t)
        m.expire_startups(now=t)
        if m.get("a").phase is Phase.FAILED:
            failed_at = t
        t += 1

    assert failed_at is not None
    assert 100 <= failed_at <= 110


def test_startup_window_expires_even_without_probe_results():
    probes = ProbeSet(startup=ProbeConfig(initial_delay=10, interval=10, failure_threshold=10))
    m = ProbeStateMachine(probes, clock=lambda: 0.0)
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)

    assert m.expire_startups(now=109) == []
    events = m.expire_startups(now=110)
    assert [e.to_phase for e in events] == [Phase.FAILED]


def test_readiness_failures_move_ready_to_unhealthy_and_back():
    m = _machine()
    _ready(m)

    m.record_outcome("a", ProbeKind.READINESS, F, now=3)
    m.record_outcome("a", ProbeKind.READINESS, F, now=4)
    assert m.get("a").phase is Phase.READY
    ev = m.record_outcome("a", ProbeKind.READINESS, F, now=5)
    assert ev.to_phase is Phase.UNHEALTHY
    assert "a" not in m.ready_ids()

    m.record_outcome("a", ProbeKind.READINESS, S, now=6)
    assert m.get("a").phase is Phase.UNHEALTHY
    ev = m.record_outcome("a", ProbeKind.READINESS, S, now=7)
    assert ev.to_phase is Phase.READY
    assert m.get("a").ready_since == 7


def test_readiness_success_resets_failure_streak():
    m = _machine()
    _ready(m)
    for t, outcome in enumerate([F, F, S, F, F], start=3):
        m.record_outcome("a", ProbeKind.READINESS, outcome, now=t)
    assert m.get("a").phase is Phase.READY


@pytest.mark.parametrize("make_unhealthy", [False, True])
def test_liveness_failures_fail_ready_or_unhealthy_instance(make_unhealthy):
    m = _machine()
    _ready(m)
    if make_unhealthy:
        for t in (3, 4, 5):
            m.record_outcome("a", ProbeKind.READINESS, F, now=t)
        assert m.get("a").phase is Phase.UNHEALTHY

    m.record_outcome("a", ProbeKind.LIVENESS, F, now=6)
    m.record_outcome("a", ProbeKind.LIVENESS, T, now=7)
    ev = m.record_outcome("a", ProbeKind.LIVENESS, F, now=8)
    assert ev.to_phase is Phase.FAILED


def test_liveness_streak_survives_readiness_flip():
    m = _machine()
    _ready(m)
    m.record_outcome("a", ProbeKind.LIVENESS, F, now=3)
    m.record_outcome("a", ProbeKind.LIVENESS, F, now=3)
    for t in (4, 5, 6):
        m.record_outcome("a", ProbeKind.READINESS, F, now=t)
    assert m.get("a").phase is Phase.UNHEALTHY
    ev = m.record_outcome("a", ProbeKind.LIVENESS, F, now=7)
    assert ev.to_phase is Phase.FAILED


def test_failed_is_terminal():
    m = _machine()
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)
    for t in (1, 2, 3):
        m.record_outcome("a", ProbeKind.STARTUP, F, now=t)
    assert m.get("a").phase is Phase.FAILED

    for t in (4, 5, 6):
        assert m.record_outcome("a", ProbeKind.STARTUP, S, now=t) is None
        assert m.record_outcome("a", ProbeKind.READINESS, S, now=t) is None
    assert m.get("a").phase is Phase.FAILED
    assert m.due_checks(now=100) == []


def test_due_checks_follow_initial_delay_and_interval():
    m = _machine(initial_delay=5, interval=2)
    m.add_instance("a", now=0)
    m.mark_started("a", now=0)

    assert m.due_checks(now=4) == []
    assert m.due_checks(now=5) == [("a", ProbeKind.STARTUP)]
    # Already dispatched; not due again until one interval later.
    assert m.due_checks(now=6) == []
    assert m.due_checks(now=7) == [("a", ProbeKind.STARTUP)]


def test_ready_instance_schedules_readiness_and_liveness():
    m = _machine()
    _ready(m)
    kinds = {k for _, k in m.due_checks(now=2)}
    assert kinds == {ProbeKind.READINESS, ProbeKind.LIVENESS}


def test_events_are_drained_and_listeners_notified():
    m = _machine()
    seen = []
    m.add_listener(seen.append)
    _ready(m)

    events = m.drain_events()
    assert [(e.from_phase, e.to_phase) for e in events] == [
        (Phase.UNKNOWN, Phase.STARTING),
        (Phase.STARTING, Phase.READY),
    ]
    assert seen == events
    assert m.drain_events() == []


def test_listener_can_read_the_instance_it_is_notified_about():
    m = _machine()
    phases = []
    # get() takes the instance lock; this would deadlock if listeners ran under it.
    m.add_listener(lambda ev: phases.append(m.get(ev.instance_id).phase))
    _ready(m)

    for t in range(3, 6):
        m.record_outcome("a", ProbeKind.LIVENESS, F, now=t)
    assert phases == [Phase.STARTING, Phase.READY, Phase.FAILED]


def test_unknown_instance_raises():
    m = _machine()
    with pytest.raises(UnknownInstance):
        m.record_outcome("ghost", ProbeKind.STARTUP, S, now=0)


def test_snapshot_is_detached():
    m = _machine()
    _ready(m)
    snap = m.snapshot()
    snap["a"].phase = Phase.FAILED
    assert m.get("a").phase is Phase.READY
