"""Collectors that expose switcher and handler statistics as metric families."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Protocol, Sequence, runtime_checkable

from .registry import Desc, Sample, build_fq_name

NAMESPACE = "phantom"

REPORTED_MODES = ("udp", "faketcp", "websocket", "ebpf")
REPORTED_STATES = ("idle", "running", "switching", "degraded", "failed")


@dataclass
class ModeStatData:
    """Statistics of one transport mode as reported to the collector."""

    state: str = ""
    switch_in_count: int = 0
    switch_out_count: int = 0
    failure_count: int = 0
    total_time_sec: float = 0.0
    rtt_ms: float = 0.0
    loss_rate: float = 0.0
    total_packets: int = 0


@runtime_checkable
class SwitcherStatsProvider(Protocol):
    """Source of switcher statistics."""

    def current_mode(self) -> str: ...

    def current_state(self) -> str: ...

    def total_switches(self) -> int: ...

    def success_switches(self) -> int: ...

    def failed_switches(self) -> int: ...

    def uptime_seconds(self) -> float: ...

    def current_mode_time_seconds(self) -> float: ...

    def arq_enabled(self) -> bool: ...

    def arq_active_conns(self) -> int: ...

    def mode_stats(self) -> Dict[str, ModeStatData]: ...


@runtime_checkable
class HandlerStatsProvider(Protocol):
    """Source of request handler statistics."""

    def active_connections(self) -> int: ...

    def total_connections(self) -> int: ...

    def total_packets_in(self) -> int: ...

    def total_packets_out(self) -> int: ...

    def total_bytes_in(self) -> int: ...

    def total_bytes_out(self) -> int: ...

    def auth_success_count(self) -> int: ...

    def auth_failure_count(self) -> int: ...

    def decrypt_errors(self) -> int: ...

    def replay_attacks(self) -> int: ...


def _desc(subsystem: str, name: str, help: str, kind: str, labels: Sequence[str] = ()) -> Desc:
    return Desc(build_fq_name(NAMESPACE, subsystem, name), help, tuple(labels), kind)


def _sample(desc: Desc, value: float, *label_values: str) -> Sample:
    return Sample(desc.fq_name, dict(zip(desc.variable_labels, label_values)), float(value))


class SwitcherCollector:
    """Reads a switcher statistics provider on every collection."""

    def __init__(self, provider: SwitcherStatsProvider):
        self.provider = provider
        sub = "switcher"
        self.current_mode_desc = _desc(
            sub, "current_mode", "Current transport mode (1 = active)", "gauge", ["mode"]
        )
        self.current_state_desc = _desc(
            sub, "current_state", "Current switcher state (1 = active)", "gauge", ["state"]
        )
        self.total_switches_desc = _desc(
            sub, "switches_total", "Total number of mode switches", "counter"
        )
        self.success_switches_desc = _desc(
            sub, "switches_success_total", "Total successful mode switches", "counter"
        )
        self.failed_switches_desc = _desc(
            sub, "switches_failed_total", "Total failed mode switches", "counter"
        )
        self.uptime_desc = _desc(sub, "uptime_seconds", "Switcher uptime in seconds", "gauge")
        self.mode_time_desc = _desc(
            sub, "current_mode_duration_seconds", "Time spent in current mode", "gauge"
        )
        self.arq_enabled_desc = _desc(
            sub, "arq_enabled", "Whether ARQ is enabled (1 = yes)", "gauge"
        )
        self.arq_active_conns_desc = _desc(
            sub, "arq_active_connections", "Number of active ARQ connections", "gauge"
        )
        self.mode_switch_in_desc = _desc(
            sub, "mode_switch_in_total", "Number of switches into this mode", "counter", ["mode"]
        )
        self.mode_switch_out_desc = _desc(
            sub, "mode_switch_out_total", "Number of switches out of this mode", "counter", ["mode"]
        )
        self.mode_failure_desc = _desc(
            sub, "mode_failures_total", "Number of failures in this mode", "counter", ["mode"]
        )
        self.mode_total_time_desc = _desc(
            sub, "mode_total_time_seconds", "Total time spent in this mode", "counter", ["mode"]
        )
        self.mode_rtt_desc = _desc(
            sub, "mode_rtt_milliseconds", "Current RTT for this mode", "gauge", ["mode"]
        )
        self.mode_loss_rate_desc = _desc(
            sub, "mode_loss_rate", "Current packet loss rate for this mode", "gauge", ["mode"]
        )
        self.mode_total_pkts_desc = _desc(
            sub, "mode_packets_total", "Total packets processed in this mode", "counter", ["mode"]
        )

    def describe(self) -> List[Desc]:
        """Return every family this collector produces."""
        return [
            self.current_mode_desc,
            self.current_state_desc,
            self.total_switches_desc,
            self.success_switches_desc,
            self.failed_switches_desc,
            self.uptime_desc,
            self.mode_time_desc,
            self.arq_enabled_desc,
            self.arq_active_conns_desc,
            self.mode_switch_in_desc,
            self.mode_switch_out_desc,
            self.mode_failure_desc,
            self.mode_total_time_desc,
            self.mode_rtt_desc,
            self.mode_loss_rate_desc,
            self.mode_total_pkts_desc,
        ]

    def collect(self) -> List[Sample]:
        """Read the provider and return the current samples."""
        p = self.provider
        samples: List[Sample] = []

        current_mode = p.current_mode()
        samples.extend(
            _sample(self.current_mode_desc, 1.0 if mode == current_mode else 0.0, mode)
            for mode in REPORTED_MODES
        )
        current_state = p.current_state()
        samples.extend(
            _sample(self.current_state_desc, 1.0 if state == current_state else 0.0, state)
            for state in REPORTED_STATES
        )

        samples.append(_sample(self.total_switches_desc, p.total_switches()))
        samples.append(_sample(self.success_switches_desc, p.success_switches()))
        samples.append(_sample(self.failed_switches_desc, p.failed_switches()))
        samples.append(_sample(self.uptime_desc, p.uptime_seconds()))
        samples.append(_sample(self.mode_time_desc, p.current_mode_time_seconds()))
        samples.append(_sample(self.arq_enabled_desc, 1.0 if p.arq_enabled() else 0.0))
        samples.append(_sample(self.arq_active_conns_desc, p.arq_active_conns()))

        for mode, stats in p.mode_stats().items():
            samples.append(_sample(self.mode_switch_in_desc, stats.switch_in_count, mode))
            samples.append(_sample(self.mode_switch_out_desc, stats.switch_out_count, mode))
            samples.append(_sample(self.mode_failure_desc, stats.failure_count, mode))
            samples.append(_sample(self.mode_total_time_desc, stats.total_time_sec, mode))
            samples.append(_sample(self.mode_rtt_desc, stats.rtt_ms, mode))
            samples.append(_sample(self.mode_loss_rate_desc, stats.loss_rate, mode))
            samples.append(_sample(self.mode_total_pkts_desc, stats.total_packets, mode))
        return samples


class HandlerCollector:
    """Reads a handler statistics provider on every collection."""

    def __init__(self, provider: HandlerStatsProvider):
        self.provider = provider
        sub = "handler"
        self.active_conns_desc = _desc(
            sub, "active_connections", "Number of active connections", "gauge"
        )
        self.total_conns_desc = _desc(
            sub, "connections_total", "Total connections handled", "counter"
        )
        self.packets_in_desc = _desc(
            sub, "packets_received_total", "Total packets received", "counter"
        )
        self.packets_out_desc = _desc(sub, "packets_sent_total", "Total packets sent", "counter")
        self.bytes_in_desc = _desc(sub, "bytes_received_total", "Total bytes received", "counter")
        self.bytes_out_desc = _desc(sub, "bytes_sent_total", "Total bytes sent", "counter")
        self.auth_success_desc = _desc(
            sub, "auth_success_total", "Total successful authentications", "counter"
        )
        self.auth_failure_desc = _desc(
            sub, "auth_failure_total", "Total failed authentications", "counter"
        )
        self.decrypt_errors_desc = _desc(
            sub, "decrypt_errors_total", "Total decryption errors", "counter"
        )
        self.replay_attacks_desc = _desc(
            sub, "replay_attacks_total", "Total replay attacks detected", "counter"
        )

    def describe(self) -> List[Desc]:
        """Return every family this collector produces."""
        return [
            self.active_conns_desc,
            self.total_conns_desc,
            self.packets_in_desc,
            self.packets_out_desc,
            self.bytes_in_desc,
            self.bytes_out_desc,
            self.auth_success_desc,
            self.auth_failure_desc,
            self.decrypt_errors_desc,
            self.replay_attacks_desc,
        ]

    def collect(self) -> List[Sample]:
        """Read the provider and return the current samples."""
        p = self.provider
        return [
            _sample(self.active_conns_desc, p.active_connections()),
            _sample(self.total_conns_desc, p.total_connections()),
            _sample(self.packets_in_desc, p.total_packets_in()),
            _sample(self.packets_out_desc, p.total_packets_out()),
            _sample(self.bytes_in_desc, p.total_bytes_in()),
            _sample(self.bytes_out_desc, p.total_bytes_out()),
            _sample(self.auth_success_desc, p.auth_success_count()),
            _sample(self.auth_failure_desc, p.auth_failure_count()),
            _sample(self.decrypt_errors_desc, p.decrypt_errors()),
            _sample(self.replay_attacks_desc, p.replay_attacks()),
        ]