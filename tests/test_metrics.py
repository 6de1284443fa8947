import socket
import urllib.request

import pytest

from chainindex.errors import ElectrsError
from chainindex.metrics import (
    Counter,
    Gauge,
    Histogram,
    Metrics,
    _stats_from_fields,
    parse_stats,
)


@pytest.fixture
def metrics():
    return Metrics(("127.0.0.1", 0))


def test_counter_increments(metrics):
    c = metrics.counter("requests", "Requests served")
    c.inc(5)
    assert c.value == 5
    assert "requests 5" in metrics.render().splitlines()


def test_counter_rejects_negative():
    c = Counter("c", "help")
    with pytest.raises(ValueError):
        c.inc(-1)


def test_gauge_set_and_inc():
    g = Gauge("g", "help")
    g.set(7)
    assert g.value == 7
    g.inc(-7)
    assert g.value == 0


def test_histogram_buckets_are_cumulative(metrics):
    h = metrics.histogram("latency", "Latency")
    h.observe(0.3)
    lines = metrics.render().splitlines()
    assert 'latency_bucket{le="0.25"} 0' in lines
    assert 'latency_bucket{le="0.5"} 1' in lines
    assert 'latency_bucket{le="+Inf"} 1' in lines
    assert "latency_count 1" in lines
    assert h.sum == pytest.approx(0.3)


def test_histogram_time_records_observation():
    h = Histogram("t", "help")
    with h.time():
        pass
    assert h.count == 1
    assert h.sum >= 0


def test_vec_labels_returns_same_child(metrics):
    vec = metrics.gauge_vec("mempool_count", "# of elements", ["type"])
    vec.labels("txs").set(4)
    assert vec.labels("txs").value == 4
    assert 'mempool_count{type="txs"} 4' in metrics.render().splitlines()


def test_vec_rejects_wrong_label_count(metrics):
    vec = metrics.counter_vec("c", "help", ["a", "b"])
    with pytest.raises(ValueError):
        vec.labels("only-one")


def test_histogram_vec_renders_labels(metrics):
    vec = metrics.histogram_vec("index_duration", "Index update duration", ["step"])
    vec.labels("add_write").observe(1.0)
    text = metrics.render()
    assert 'index_duration_count{step="add_write"} 1' in text
    assert "# TYPE index_duration histogram" in text


def test_render_help_and_type(metrics):
    metrics.gauge("tip_height", "Current chain tip height")
    lines = metrics.render().splitlines()
    assert lines[0] == "# HELP tip_height Current chain tip height"
    assert lines[1] == "# TYPE tip_height gauge"


def test_duplicate_registration_fails(metrics):
    metrics.counter("dup", "help")
    with pytest.raises(ValueError):
        metrics.gauge("dup", "help")


def test_stats_from_fields():
    parts = [str(i) for i in range(30)]
    stats = _stats_from_fields(parts, page_size=4096, ticks_per_second=100.0, fds=9)
    assert stats.utime * 100.0 == pytest.approx(13)
    assert stats.rss == 23 * 4096
    assert stats.fds == 9


def test_stats_from_fields_missing():
    with pytest.raises(ElectrsError, match="missing utime"):
        _stats_from_fields(["1", "2"], 4096, 100.0, 0)


def test_stats_from_fields_invalid():
    parts = ["x"] * 30
    with pytest.raises(ElectrsError, match="invalid utime"):
        _stats_from_fields(parts, 4096, 100.0, 0)


def test_parse_stats_invariants():
    stats = parse_stats()
    assert stats.utime >= 0
    assert stats.rss >= 0
    assert stats.fds >= 0


def test_start_serves_metrics(metrics):
    metrics.counter("served_total", "Served")
    server = metrics.start()
    try:
        host, port = server.server_address[:2]
        with urllib.request.urlopen(f"http://{host}:{port}/") as resp:
            body = resp.read().decode()
        assert "served_total 0" in body
        assert "# TYPE process_memory_rss gauge" in body
    finally:
        server.shutdown()
        server.server_close()


def test_start_fails_on_busy_port():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        m = Metrics(blocker.getsockname())
        with pytest.raises(ElectrsError, match="failed to start monitoring"):
            m.start()
    finally:
        blocker.close()