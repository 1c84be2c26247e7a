import collections
import json
import threading
from unittest import mock

import pytest

from rpcfilters import tvar
from rpcfilters.context import Message
from rpcfilters.errors import ErrorType, RpcError
from rpcfilters.metrics import AggregationKind, Buckets, ExportRecord, RecordNotFoundError
from rpcfilters.tvar import RpcStats, TvarPlugin, is_business_error, parse_percentile

FakeConn = collections.namedtuple("FakeConn", "laddr pid")


def _sum(stats, name, method):
    stats.exporter.collect()
    return stats.exporter.get_by_name_and_attributes(name, {"method": method}).sum


def test_handle_stats_renders_snapshot():
    stats = RpcStats()
    stats.snapshot = [ExportRecord(aggregation_kind=AggregationKind.SUM, sum=1)]
    body = stats.handle_stats()
    assert body == b'["instrument server:, metric name:, aggregation:Sum, unit:, value:1"]'


def test_handle_stats_empty_is_null():
    assert RpcStats().handle_stats() == b"null"


def test_dump_rpc_metrics():
    stats = RpcStats(percentiles=[])
    assert stats.dump_rpc_metrics() == []

    stats.snapshot = [
        ExportRecord(
            aggregation_kind=AggregationKind.HISTOGRAM,
            histogram=Buckets(list(range(10)), list(range(10))),
        ),
        ExportRecord(aggregation_kind=AggregationKind.SUM, sum=1),
    ]
    assert stats.dump_rpc_metrics() == [
        "instrument server:, metric name:, aggregation:Histogram, unit:, "
        "value:[~0]:0 [~1]:1 [~2]:2 [~3]:3 [~4]:4 [~5]:5 [~6]:6 [~7]:7 [~8]:8 [~9]:9 ",
        "instrument server:, metric name:, aggregation:Sum, unit:, value:1",
    ]

    stats.percentiles = list(tvar.DEFAULT_LATENCY_PERCENTILES)
    assert stats.dump_rpc_metrics() == [
        "instrument server:, metric name:, aggregation:Histogram, unit:, "
        "value:[~0]:0 [~1]:1 [~2]:2 [~3]:3 [~4]:4 [~5]:5 [~6]:6 [~7]:7 [~8]:8 [~9]:9 "
        "p50:7.29 p99:15.60 p999:15.96 ",
        "instrument server:, metric name:, aggregation:Sum, unit:, value:1",
    ]


def test_dump_invalid_percentile_raises():
    stats = RpcStats(percentiles=["pxx"])
    stats.snapshot = [
        ExportRecord(aggregation_kind=AggregationKind.HISTOGRAM, histogram=Buckets([1, 2], [1, 1]))
    ]
    with pytest.raises(ValueError):
        stats.dump_rpc_metrics()


@pytest.mark.parametrize("text,expected", [("p50", 0.5), ("P99", 0.99), ("p999", 0.999), ("p9999", 0.9999)])
def test_parse_percentile(text, expected):
    assert parse_percentile(text) == pytest.approx(expected)


def test_parse_percentile_invalid():
    with pytest.raises(ValueError):
        parse_percentile("median")


def test_dump_collects_live_records():
    stats = RpcStats(app="app", server="srv")
    stats.client_filter(Message(client_rpc_name="/a/b"), None, None, lambda m, q, r: None)
    lines = stats.dump_rpc_metrics()
    assert "instrument server:trpc.app.srv, metric name:rpc_client_req_total, "
    assert any("metric name:rpc_client_req_total" in line and "value:1" in line for line in lines)
    assert json.loads(stats.handle_stats()) == lines


def test_server_filter_counts():
    stats = RpcStats()
    msg = Message(server_rpc_name="/svc/Hello")
    rsp = object()
    assert stats.server_filter(msg, {}, lambda m, q: rsp) is rsp

    with pytest.raises(ValueError):
        stats.server_filter(msg, {}, lambda m, q: (_ for _ in ()).throw(ValueError("fake error")))

    def framework_fail(m, q):
        raise RpcError(0, "fake error", ErrorType.FRAMEWORK)

    with pytest.raises(RpcError):
        stats.server_filter(msg, {}, framework_fail)

    assert _sum(stats, "rpc_service_req_total", "/svc/Hello") == 3
    assert _sum(stats, "rpc_service_rsp_total", "/svc/Hello") == 3
    assert _sum(stats, "rpc_service_req_active", "/svc/Hello") == 0
    assert _sum(stats, "rpc_service_error_total", "/svc/Hello") == 2
    assert _sum(stats, "rpc_service_business_error_total", "/svc/Hello") == 1
    assert stats.exporter.get_by_name("rpc_service_latency").count == 3


def test_client_filter_counts():
    stats = RpcStats()
    msg = Message(client_rpc_name="/svc/Call")
    assert stats.client_filter(msg, {}, {}, lambda m, q, r: "ok") == "ok"

    def fail(m, q, r):
        raise RuntimeError("fake error")

    with pytest.raises(RuntimeError):
        stats.client_filter(msg, {}, {}, fail)

    assert _sum(stats, "rpc_client_req_total", "/svc/Call") == 2
    assert _sum(stats, "rpc_client_rsp_total", "/svc/Call") == 2
    assert _sum(stats, "rpc_client_error_total", "/svc/Call") == 1
    assert _sum(stats, "rpc_client_req_active", "/svc/Call") == 0


def test_is_business_error():
    assert is_business_error(ValueError("x")) is True
    assert is_business_error(RpcError(1, "x")) is True
    assert is_business_error(RpcError(1, "x", ErrorType.FRAMEWORK)) is False


def test_update_service_qps():
    stats = RpcStats()
    stats.update_service_qps()
    stats.exporter.collect()
    assert stats.exporter.get_by_name("rpc_service_qps").last_value == 0

    msg = Message(server_rpc_name="m")
    for _ in range(120):
        stats.server_filter(msg, None, lambda m, q: None)
    stats.update_service_qps()
    stats.exporter.collect()
    assert stats.exporter.get_by_name("rpc_service_qps").last_value in (1, 2)


def test_update_tcp_connections():
    stats = RpcStats(service_ports=[8000])
    pid = tvar.os.getpid()
    conns = [
        FakeConn(("127.0.0.1", 8000), pid),
        FakeConn(("127.0.0.1", 40000), pid),
        FakeConn(("127.0.0.1", 8000), pid + 1),
    ]
    with mock.patch.object(tvar, "_IS_LINUX", True), mock.patch.object(
        tvar.psutil, "net_connections", return_value=conns
    ):
        stats.update_tcp_connections()
    stats.exporter.collect()
    assert stats.exporter.get_by_name("rpc_service_connection_count").last_value == 1
    assert stats.exporter.get_by_name("rpc_client_connection_count").last_value == 1


def test_update_tcp_connections_without_connections():
    stats = RpcStats()
    with mock.patch.object(tvar, "_IS_LINUX", True), mock.patch.object(
        tvar.psutil, "net_connections", return_value=[]
    ):
        stats.update_tcp_connections()
    stats.exporter.collect()
    with pytest.raises(RecordNotFoundError):
        stats.exporter.get_by_name("rpc_client_connection_count")


def test_tick_observes_qps():
    stats = RpcStats()
    with mock.patch.object(tvar, "_IS_LINUX", False):
        stats.tick()
    stats.exporter.collect()
    assert stats.exporter.get_by_name("rpc_service_qps").last_value == 0


def test_run_ticker_stops_when_event_set():
    stats = RpcStats()
    stop = threading.Event()
    stop.set()
    stats.run_ticker(stop, 0.01)
    stats.exporter.collect()
    with pytest.raises(RecordNotFoundError):
        stats.exporter.get_by_name("rpc_service_qps")


def test_plugin_type():
    assert TvarPlugin().type() == "apm"


def test_plugin_setup():
    plugin = TvarPlugin(interval=3600)
    plugin.setup("tvar", {"percentile": ["p50", "p90", "p99"]})
    plugin.stop_event.set()
    assert plugin.percentiles == ["p50", "p90", "p99"]
    assert plugin.stats.percentiles == ["p50", "p90", "p99"]


def test_plugin_setup_default_percentiles():
    plugin = TvarPlugin(interval=3600)
    plugin.setup("tvar", {})
    plugin.stop_event.set()
    assert plugin.percentiles == ["p50", "p99", "p999"]


def test_plugin_setup_invalid_config():
    plugin = TvarPlugin(interval=3600)
    with pytest.raises(ValueError):
        plugin.setup("tvar", {"percentile": "p50"})
    assert plugin.stats is None