import pytest

from asr.metrics import MetricsAggregator
from asr.models import MetricSample

from fakes import FakeMetrics


def test_mean_of_latest_sample_per_ready_instance():
    agg = MetricsAggregator(staleness_s=30)
    agg.ingest(MetricSample("a", 1, 10, 20))
    agg.ingest(MetricSample("a", 5, 40, 60))  # newest for a
    agg.ingest(MetricSample("b", 4, 80, 20))

    out = agg.aggregate({"a", "b"}, now=10)
    assert out.cpu == pytest.approx(60)
    assert out.mem == pytest.approx(40)
    assert out.instance_count == 2


def test_non_ready_instances_are_excluded():
    agg = MetricsAggregator(staleness_s=30)
    agg.ingest(MetricSample("a", 1, 50, 50))
    agg.ingest(MetricSample("unhealthy", 1, 100, 100))

    out = agg.aggregate({"a"}, now=2)
    assert out.cpu == 50
    assert out.instance_count == 1


def test_stale_samples_are_dropped():
    agg = MetricsAggregator(staleness_s=10)
    agg.ingest(MetricSample("a", 0, 90, 90))
    agg.ingest(MetricSample("b", 15, 30, 30))

    out = agg.aggregate({"a", "b"}, now=20)
    assert out.cpu == 30
    assert out.instance_count == 1


def test_no_qualifying_instances_means_no_data():
    agg = MetricsAggregator(staleness_s=10)
    assert agg.aggregate(set(), now=0) is None
    agg.ingest(MetricSample("a", 0, 90, 90))
    assert agg.aggregate({"a"}, now=100) is None
    assert agg.aggregate({"b"}, now=0) is None


def test_ring_buffer_is_bounded():
    agg = MetricsAggregator(buffer_size=3)
    for t in range(10):
        agg.ingest(MetricSample("a", t, t, t))
    assert len(agg._buffers["a"]) == 3
    assert agg.latest("a").timestamp == 9


def test_collect_skips_errors_and_unavailable():
    source = FakeMetrics(cpu=40, mem=10)
    source.broken.add("b")
    source.values["c"] = None
    agg = MetricsAggregator(staleness_s=10)

    n = agg.collect(source, ["a", "b", "c"], now=5)
    assert n == 1
    assert agg.latest("a").cpu_utilization == 40
    assert agg.latest("b") is None
    assert agg.latest("c") is None


def test_forget_drops_buffer():
    agg = MetricsAggregator()
    agg.ingest(MetricSample("a", 0, 1, 1))
    agg.forget("a")
    assert agg.latest("a") is None
