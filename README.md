# rpcfilters

Client and server filters for RPC calls, and the small metrics toolkit that
the statistics filter is built on.

A filter here is a plain callable. A server filter is called as
`filter(msg, req, handler)`, and the handler as `handler(msg, req)`. A client
filter is called as `filter(msg, req, rsp, handler)`, and the handler as
`handler(msg, req, rsp)`. `msg` is a `rpcfilters.context.Message`. Failures
are raised as exceptions, and `rpcfilters.errors.RpcError` carries a numeric
code.

## Modules

- `rpcfilters.context`
  - `Message` holds `client_rpc_name`, `server_rpc_name`, `client_metadata` and an optional `http_header`.
  - `Message.with_client_metadata()` replaces the outgoing metadata.
  - `HttpHeader` holds the path, the raw query and the headers of an HTTP request.
- `rpcfilters.errors`
  - `RpcError(code, msg, error_type)` has a business error type by default (`ErrorType`).
  - `error_code(err)` returns 0 for `None`, the code of an `RpcError`, and 999 for any other exception.
- `rpcfilters.blocker`: removes metadata before it is sent downstream.
  - `TransinfoBlocker().setup(name, config)` takes a mapping with a `default` list and per-RPC-name lists under `rpc_name_cfg`.
  - Each list has a `mode`: `whitelist`, `blacklist` or `none`. See `ListMode`, `ListConfig` and `BlockerConfig`.
  - An unknown mode raises `ValueError`, and so does a `None` config.
  - `client_filter` filters `msg.client_metadata` through `parse_client_metadata` and then calls the handler.
  - The active configuration is module-wide. Read it with `current_config()` and clear it with `reset_config()`.
- `rpcfilters.validation`: calls `validate()` on objects that have it.
  - The server filter validates the request before the handler runs.
  - The client filter validates the response after the handler has returned without raising.
  - A failed validation raises `RpcError`. Its code is 51 on the server side and 151 on the client side, unless options set other codes.
  - Build a filter with `server_filter_with_options(ValidationOptions(...))` or with option functions, for example `server_filter(with_error_log(True), with_server_validate_err_code(-1))`. The client side has the same pair of functions.
  - When error logging is enabled, failures are logged through the standard `logging` module.
  - `ValidationPlugin.setup` reads `enable_error_log`, `server_validate_err_code`, `client_validate_err_code` and the older `logfile: [true]` form. It then rebuilds the plugin's `server_filter` and `client_filter`.
- `rpcfilters.tvar`: RPC statistics.
  - `RpcStats.server_filter` and `RpcStats.client_filter` count requests, responses and errors, track active requests and record latency in milliseconds.
  - The server side also counts business errors (`is_business_error`).
  - Service QPS comes from a one-minute `SlidingWindow` (`update_service_qps`).
  - On Linux, `update_tcp_connections` reads this process's TCP connections with psutil. A connection on one of `service_ports` counts as a service connection, and any other connection counts as a client connection. On other platforms it does nothing.
  - `dump_rpc_metrics()` returns one line per metric. Histogram lines end with the configured percentiles (`p50`, `p99` and `p999` by default; see `parse_percentile`).
  - `handle_stats()` returns these lines as a JSON array in bytes.
  - `TvarPlugin.setup` reads a `percentile` list. It creates `RpcStats` and starts a daemon thread that calls `tick()` every `interval` seconds until `stop_event` is set.
- `rpcfilters.slidingwindow`: `SlidingWindow(size_seconds)` is an approximate event counter made of a previous window and a current window. It is safe to use from several threads.
- `rpcfilters.metrics`: a small in-process metrics SDK.
  - `new_meter_provider(temporality, boundaries)` returns a `MeterProvider` and an `Exporter`.
  - A meter creates counters, up-down counters, histograms, gauges and asynchronous counters.
  - `Exporter.collect()` gathers records when you call it. Read them with `get_records()`, `get_by_name()` or `get_by_name_and_attributes()`. The lookups raise `RecordNotFoundError` when no record matches.
- `rpcfilters.latency`: `LatencyHistogram(buckets).percentile(p)` estimates a percentile by interpolating inside histogram buckets.

## Examples

```python
from rpcfilters.context import Message
from rpcfilters.blocker import TransinfoBlocker, client_filter

TransinfoBlocker().setup("transinfo-blocker", {
    "default": {"mode": "blacklist", "keys": ["oidb_header"]},
    "rpc_name_cfg": {
        "/pkg.Service/Method": {"mode": "whitelist", "keys": ["trace"]},
    },
})

msg = Message()
msg.with_client_metadata({"oidb_header": b"x", "trace": b"y"})

def handler(msg, req, rsp):
    return dict(msg.client_metadata)

print(client_filter(msg, None, None, handler))  # {'trace': b'y'}
```

```python
from rpcfilters.metrics import new_meter_provider

provider, exporter = new_meter_provider(boundaries=[10, 20])
requests = provider.meter("demo").counter("requests")
requests.add(1, {"method": "Hello"})
exporter.collect()
print(exporter.get_by_name("requests").sum)  # 1
```

```python
from rpcfilters.slidingwindow import SlidingWindow

window = SlidingWindow(60.0)
window.record()
print(window.count())  # 1
```

## What it does not do

- The package does not register its filters with any RPC framework. You chain the callables into your own call path.
- It does not serve the statistics over HTTP. `RpcStats.handle_stats()` only produces the response body, and serving it is up to you.
- It does not read a framework configuration file. Plugins take an already parsed mapping.
- The request and response size histograms (`rpc_service_req_avg_len`, `rpc_service_rsp_avg_len`) are created, but nothing records into them.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```