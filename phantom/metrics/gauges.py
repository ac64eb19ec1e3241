"""The server's live metrics: connections, traffic, latency, errors, ARQ and congestion."""

from __future__ import annotations

from .registry import Counter, CounterVec, Gauge, GaugeVec, Histogram, HistogramVec, Registry

PACKET_LATENCY_BUCKETS = (0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1)
ARQ_ACK_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5)


class PhantomMetrics:
    """All metrics the server records, registered on one registry."""

    def __init__(self, registry: Registry):
        ns = "phantom"
        self.active_connections = Gauge(
            "active_connections", "Number of currently active connections", namespace=ns
        )
        self.connections_total = CounterVec(
            "connections_total", "Total number of connections", ["mode", "status"], namespace=ns
        )
        self.bytes_received = CounterVec(
            "bytes_received_total", "Total bytes received", ["mode"], namespace=ns
        )
        self.bytes_sent = CounterVec("bytes_sent_total", "Total bytes sent", ["mode"], namespace=ns)
        self.packets_total = CounterVec(
            "packets_total", "Total packets processed", ["mode", "direction"], namespace=ns
        )
        self.packet_latency = HistogramVec(
            "packet_latency_seconds",
            "Packet processing latency",
            ["mode"],
            namespace=ns,
            buckets=PACKET_LATENCY_BUCKETS,
        )
        self.rtt = GaugeVec("rtt_seconds", "Current RTT to peer", ["mode"], namespace=ns)
        self.errors = CounterVec("errors_total", "Total errors by type", ["type"], namespace=ns)
        self.mode_switches = CounterVec(
            "mode_switches_total",
            "Total mode switches",
            ["from", "to", "reason"],
            namespace=ns,
            subsystem="switcher",
        )
        self.arq_retransmits = Counter(
            "retransmits_total", "Total ARQ retransmissions", namespace=ns, subsystem="arq"
        )
        self.arq_ack_latency = Histogram(
            "ack_latency_seconds",
            "ARQ acknowledgement latency",
            namespace=ns,
            subsystem="arq",
            buckets=ARQ_ACK_LATENCY_BUCKETS,
        )
        self.arq_window_size = Gauge(
            "window_size", "Current ARQ window size", namespace=ns, subsystem="arq"
        )
        self.arq_packet_loss = Gauge(
            "packet_loss_rate", "Current packet loss rate", namespace=ns, subsystem="arq"
        )
        self.congestion_window = Gauge(
            "window_bytes",
            "Current congestion window size in bytes",
            namespace=ns,
            subsystem="congestion",
        )
        self.send_rate = Gauge(
            "send_rate_bytes_per_second", "Current send rate", namespace=ns, subsystem="congestion"
        )

        for metric in (
            self.active_connections,
            self.connections_total,
            self.bytes_received,
            self.bytes_sent,
            self.packets_total,
            self.packet_latency,
            self.rtt,
            self.errors,
            self.mode_switches,
            self.arq_retransmits,
            self.arq_ack_latency,
            self.arq_window_size,
            self.arq_packet_loss,
            self.congestion_window,
            self.send_rate,
        ):
            registry.register(metric)

    def record_connection(self, mode: str, status: str) -> None:
        """Count a connection event; "opened" and "closed" also move the active gauge."""
        self.connections_total.labels(mode, status).inc()
        if status == "opened":
            self.active_connections.inc()
        elif status == "closed":
            self.active_connections.dec()

    def record_bytes(self, mode: str, received: int, sent: int) -> None:
        self.bytes_received.labels(mode).inc(float(received))
        self.bytes_sent.labels(mode).inc(float(sent))

    def record_packet(self, mode: str, direction: str) -> None:
        self.packets_total.labels(mode, direction).inc()

    def record_latency(self, mode: str, latency_seconds: float) -> None:
        self.packet_latency.labels(mode).observe(latency_seconds)

    def record_rtt(self, mode: str, rtt_seconds: float) -> None:
        self.rtt.labels(mode).set(rtt_seconds)

    def record_error(self, error_type: str) -> None:
        self.errors.labels(error_type).inc()

    def record_mode_switch(self, from_mode: str, to_mode: str, reason: str) -> None:
        self.mode_switches.labels(from_mode, to_mode, reason).inc()

    def record_arq_retransmit(self) -> None:
        self.arq_retransmits.inc()

    def record_arq_ack(self, latency_seconds: float) -> None:
        self.arq_ack_latency.observe(latency_seconds)

    def update_arq_stats(self, window_size: int, loss_rate: float) -> None:
        self.arq_window_size.set(float(window_size))
        self.arq_packet_loss.set(loss_rate)

    def update_congestion_stats(self, cwnd: int, send_rate: float) -> None:
        self.congestion_window.set(float(cwnd))
        self.send_rate.set(send_rate)