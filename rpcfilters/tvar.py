"""RPC statistics: request, response and error counts, latency
distribution, QPS and latency percentiles."""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import threading
import time
from typing import Any, Callable, Iterable, Mapping

import psutil

from rpcfilters.context import Message
from rpcfilters.errors import ErrorType, RpcError
from rpcfilters.latency import LatencyHistogram
from rpcfilters.metrics import AggregationKind, ExportRecord, Temporality, new_meter_provider
from rpcfilters.slidingwindow import SlidingWindow

PLUGIN_TYPE = "apm"
PLUGIN_NAME = "tvar"
FILTER_NAME = "tvar"

DEFAULT_LATENCY_BOUNDARIES = [10, 20, 30, 50, 100, 200, 300, 500, 1000, 1500, 2000, 3000, 5000]
DEFAULT_LATENCY_PERCENTILES = ("p50", "p99", "p999")
DIMENSIONLESS = "1"
BYTES = "By"
MILLISECONDS = "ms"

_IS_LINUX = sys.platform.startswith("linux")
_PERCENTILE_DIGITS = re.compile(r"[+-]?\d+")

logger = logging.getLogger(__name__)

ServerHandler = Callable[[Message, Any], Any]
ClientHandler = Callable[[Message, Any, Any], Any]


def is_business_error(err: BaseException) -> bool:
    """Errors without an RPC error type count as business errors."""
    if not isinstance(err, RpcError):
        return True
    return err.error_type is ErrorType.BUSINESS


def parse_percentile(text: str) -> float:
    """Turn ``p99`` into 0.99 and ``p999`` into 0.999."""
    digits = text.lower()
    if digits.startswith("p"):
        digits = digits[1:]
    if not _PERCENTILE_DIGITS.fullmatch(digits):
        raise ValueError("invalid percentile value, should be format: pNN")
    return int(digits) / 10 ** len(digits)


class RpcStats:
    """Instruments and exports the statistics of RPC calls."""

    def __init__(
        self,
        app: str = "",
        server: str = "",
        percentiles: Iterable[str] = DEFAULT_LATENCY_PERCENTILES,
        service_ports: Iterable[int] = (),
    ) -> None:
        self.percentiles = list(percentiles)
        self.service_ports = frozenset(int(p) for p in service_ports)
        self.provider, self.exporter = new_meter_provider(
            Temporality.CUMULATIVE, DEFAULT_LATENCY_BOUNDARIES
        )
        self.meter = self.provider.meter(f"trpc.{app}.{server}")
        # Last non-empty collection, reused when no calls happened since.
        self.snapshot: list[ExportRecord] = []

        m = self.meter
        self.service_connection_num = m.gauge(
            "rpc_service_connection_count", "num of connection accepted and inused", DIMENSIONLESS)
        self.service_req_num = m.counter("rpc_service_req_total", "num of req received", DIMENSIONLESS)
        self.service_req_active_num = m.up_down_counter(
            "rpc_service_req_active", "num of req being processed", DIMENSIONLESS)
        self.service_rsp_num = m.counter("rpc_service_rsp_total", "num of rsp sent", DIMENSIONLESS)
        self.service_req_size = m.histogram("rpc_service_req_avg_len", "samples of req size", BYTES)
        self.service_rsp_size = m.histogram("rpc_service_rsp_avg_len", "samples of rsp size", BYTES)
        self.service_err_num = m.counter("rpc_service_error_total", "num of errors", DIMENSIONLESS)
        self.service_busi_err_num = m.counter(
            "rpc_service_business_error_total", "num of business errors", DIMENSIONLESS)
        self.service_latency = m.histogram("rpc_service_latency", "latency of serivce", MILLISECONDS)
        self.service_qps = m.gauge("rpc_service_qps", "qps of service", DIMENSIONLESS)
        self.service_window = SlidingWindow(60.0)

        self.client_conn_num = m.gauge(
            "rpc_client_connection_count", "num of connection dialed and inused", DIMENSIONLESS)
        self.client_req_num = m.counter("rpc_client_req_total", "num of req sent", DIMENSIONLESS)
        self.client_req_active_num = m.up_down_counter(
            "rpc_client_req_active", "num of req waiting rsp", DIMENSIONLESS)
        self.client_rsp_num = m.counter("rpc_client_rsp_total", "num of rsp received", DIMENSIONLESS)
        self.client_err_num = m.counter("rpc_client_error_total", "num of errors", DIMENSIONLESS)
        self.client_latency = m.histogram("rpc_client_latency", "latency of client", MILLISECONDS)

    def server_filter(self, msg: Message, req: Any, handler: ServerHandler) -> Any:
        """Count and time a server-side call."""
        attrs = {"method": msg.server_rpc_name}
        self.service_req_num.add(1, attrs)
        self.service_req_active_num.add(1, attrs)
        self.service_window.record()
        begin = time.monotonic()
        try:
            return handler(msg, req)
        except Exception as exc:
            self.service_err_num.add(1, attrs)
            if is_business_error(exc):
                self.service_busi_err_num.add(1, attrs)
            raise
        finally:
            self.service_req_active_num.add(-1, attrs)
            self.service_rsp_num.add(1, attrs)
            self.service_latency.record(int((time.monotonic() - begin) * 1000), attrs)

    def client_filter(self, msg: Message, req: Any, rsp: Any, handler: ClientHandler) -> Any:
        """Count and time a client-side call."""
        attrs = {"method": msg.client_rpc_name}
        self.client_req_num.add(1, attrs)
        self.client_req_active_num.add(1, attrs)
        begin = time.monotonic()
        try:
            return handler(msg, req, rsp)
        except Exception:
            self.client_err_num.add(1, attrs)
            raise
        finally:
            self.client_req_active_num.add(-1, attrs)
            self.client_rsp_num.add(1, attrs)
            self.client_latency.record(int((time.monotonic() - begin) * 1000), attrs)

    def update_service_qps(self) -> None:
        qps = int(self.service_window.count() / self.service_window.size())
        self.service_qps.observe(qps)

    def update_tcp_connections(self) -> None:
        """Observe TCP connections of this process (Linux only)."""
        if not _IS_LINUX:
            return
        try:
            conns = psutil.net_connections(kind="tcp")
        except (psutil.Error, OSError) as exc:
            logger.error("list tcp connections fail: %s", exc)
            return
        pid = os.getpid()
        for conn in conns:
            if conn.pid != pid:
                continue
            port = conn.laddr[1] if conn.laddr else 0
            if port in self.service_ports:
                self.service_connection_num.observe(1)
            else:
                self.client_conn_num.observe(1)

    def dump_rpc_metrics(self) -> list[str]:
        """Collect and render all records, with percentiles for histograms."""
        try:
            self.exporter.collect()
        except Exception as exc:  # noqa: BLE001 - a failed collection keeps the snapshot
            logger.error("collect fail: %s", exc)
        records = self.exporter.get_records()
        if records:
            self.snapshot = records

        lines = []
        for rec in self.snapshot:
            if rec.aggregation_kind is not AggregationKind.HISTOGRAM:
                lines.append(str(rec))
                continue
            hist = LatencyHistogram(rec.histogram)
            parts = [str(rec)]
            for percentile in self.percentiles:
                value = hist.percentile(parse_percentile(percentile))
                parts.append(f"{percentile}:{value:.2f} ")
            lines.append("".join(parts))
        return lines

    def handle_stats(self) -> bytes:
        """The body of the stats endpoint: a JSON array of rendered records."""
        lines = self.dump_rpc_metrics()
        return json.dumps(lines or None, separators=(",", ":"), ensure_ascii=False).encode()

    def tick(self) -> None:
        self.update_tcp_connections()
        self.update_service_qps()

    def run_ticker(self, stop_event: threading.Event, interval: float = 5.0) -> None:
        """Call ``tick`` every ``interval`` seconds until ``stop_event`` is set."""
        while not stop_event.wait(interval):
            self.tick()


class TvarPlugin:
    """Reads the percentile configuration and starts the statistics."""

    def __init__(
        self,
        app: str = "",
        server: str = "",
        service_ports: Iterable[int] = (),
        interval: float = 5.0,
    ) -> None:
        self.app = app
        self.server = server
        self.service_ports = tuple(service_ports)
        self.interval = interval
        self.percentiles: list[str] = []
        self.stats: RpcStats | None = None
        self.stop_event = threading.Event()

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, config: Mapping[str, Any] | None) -> None:
        """Apply ``config`` and start the ticker; raises ValueError if malformed."""
        percentiles: Any = []
        if config is not None:
            if not isinstance(config, Mapping):
                raise ValueError("tvar config must be a mapping")
            percentiles = config.get("percentile") or []
            if not isinstance(percentiles, list) or not all(isinstance(p, str) for p in percentiles):
                raise ValueError("percentile must be a list of strings")
        self.percentiles = list(percentiles) or list(DEFAULT_LATENCY_PERCENTILES)
        self.stats = RpcStats(self.app, self.server, self.percentiles, self.service_ports)
        thread = threading.Thread(
            target=self.stats.run_ticker, args=(self.stop_event, self.interval), daemon=True
        )
        thread.start()