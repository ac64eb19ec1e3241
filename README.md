# phantom

Building blocks for an encrypted proxy server, using only the standard library:

- **`phantom.protocol`** – the binary request/response wire format
  (Connect, Data and Close messages addressed by IPv4, IPv6 or domain name).
- **`phantom.handler`** – `UnifiedHandler`, which decrypts client packets,
  opens connections to target servers, relays data in both directions and
  cleans up idle connections and sessions.
- **`phantom.switcher`** – link-quality monitoring (`QualityMonitor`),
  probing (`Prober`) and a decision engine (`DecisionEngine`) that chooses
  between transport modes (eBPF, FakeTCP, UDP, TCP, WebSocket) by RTT, loss,
  throughput and stability.
- **`phantom.metrics`** – counters, gauges and histograms rendered in the
  Prometheus text format, collectors for handler and switcher statistics, and
  a small HTTP server with health, liveness and readiness endpoints.

## The wire format

A request is `Type(1) + ReqID(4) + ...`. A Connect request carries
`Network(1) + AddrType(1) + Address + Port(2)` followed by optional initial
data; a Data request carries its payload; a Close request carries nothing
more. Responses are `Type(1) + ReqID(4) + Status(1) + Data`.

```python
from phantom.protocol import parse_request, build_response, ProtocolError

packet = bytes([
    0x01,                    # Connect
    0x00, 0x00, 0x00, 0x01,  # request id 1
    0x01,                    # TCP
    0x01,                    # IPv4
    192, 168, 1, 1,
    0x00, 0x50,              # port 80
])

request = parse_request(packet)
print(request.target_addr())     # 192.168.1.1:80
print(request.network_string())  # tcp

reply = build_response(request.req_id, 0x00)

try:
    parse_request(b"\x01")
except ProtocolError as exc:
    print("rejected:", exc)
```

`is_arq_packet(data)` tells apart packets of at least 18 bytes whose first
byte is not one of the three request types.

## Handling requests

`UnifiedHandler` takes a cipher – any object with `encrypt(bytes)` and
`decrypt(bytes)` methods, `decrypt` raising on bad input – and a `sender`
callable `sender(data, (host, port))` through which encrypted responses for
datagram clients go out.

```python
from phantom.handler import UnifiedHandler

with UnifiedHandler(cipher, log_level="info", sender=send_datagram) as handler:
    handler.handle_packet(encrypted_datagram, ("203.0.113.5", 40000))
    print(handler.stats())   # total_conns, active_conns, total_bytes
```

Invalid or undecryptable packets are dropped silently. A Connect request
dials the target (TCP or UDP) and answers with status `0x00` or `0x01`; data
read from the target comes back as Data responses; a Close request closes
the connection. A background thread closes connections idle for five minutes
and forgets sessions idle for ten; `cleanup()` runs that pass at once and
returns how many of each it removed.

For stream clients, `handle_connection(reader, writer, client_addr)` serves
one client: `reader.read_frame()` yields encrypted frames (raising `EOFError`
at the end) and `writer.write_frame(frame)` sends them. After a Connect
request it relays in both directions until either side closes.

Log output goes through the standard `logging` module under the
`phantom.handler` logger.

## Choosing a transport

`QualityMonitor` keeps a sliding window of RTT samples (`record_rtt`, taking
a `timedelta`) and packet outcomes (`record_packet`) per mode; `quality()`
turns them into a `LinkQuality` with a 0–100 score, and `score_trend()`
reports whether recent scores rise or fall. `DecisionEngine` looks at the
current mode's quality, respects the minimum switch interval, the
switch-rate limit and per-mode cooldowns, and proposes a better mode when
one is available.

```python
from datetime import timedelta
from phantom.switcher.decision import DecisionEngine
from phantom.switcher.types import TransportMode, default_switcher_config

engine = DecisionEngine(default_switcher_config())
engine.update_quality(
    TransportMode.FAKETCP,
    lambda monitor: monitor.record_rtt(timedelta(milliseconds=40)),
)
decision = engine.evaluate(TransportMode.UDP)
if decision.should_switch:
    print("switch to", decision.target_mode, "because", decision.reason)
```

`Prober` probes registered transports – objects following the
`TransportHandler` protocol in `phantom.switcher.types` – against the
addresses given with `add_probe_addr`, and reports availability,
average/min/max RTT, jitter and loss for each mode.

## Metrics

```python
from phantom.metrics.registry import Registry
from phantom.metrics.gauges import PhantomMetrics

registry = Registry()
metrics = PhantomMetrics(registry)
metrics.record_connection("udp", "opened")
metrics.record_bytes("udp", 1200, 800)

print(registry.expose())
```

`SwitcherCollector` and `HandlerCollector` in `phantom.metrics.collectors`
read statistics providers on each collection and can be registered like any
metric.

`MetricsServer(listen, metrics_path, health_path, enable_pprof)` serves the
registry at `metrics_path`, a JSON health report at `health_path` (status
503 unless the report says `healthy`), and `health_path + "/live"` and
`health_path + "/ready"` probes. A health check is set with
`set_health_check`, liveness with `set_healthy`. With `enable_pprof`,
paths under `/debug/pprof/` return a thread dump, and `/debug/pprof/cmdline`
the command line.

```python
from phantom.metrics.server import MetricsServer

server = MetricsServer("127.0.0.1:0", "/metrics", "/health")
server.start()
print(server.address())
server.stop()
```

## What the package does not do

It ships no cipher: the handler needs one supplied by the caller. It has no
listening transports (UDP, TCP, FakeTCP, WebSocket or eBPF servers), no
component that starts them and switches traffic between them, no
configuration loading and no command-line program. The switcher modules
measure and decide; acting on the decision is left to the caller.

## Running the tests

The test suite uses pytest, installed through the `test` extra.