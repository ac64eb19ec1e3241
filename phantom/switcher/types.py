"""Shared types for link switching: modes, states, quality and configuration."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

Address = Tuple[str, int]

_ZERO = timedelta(0)


class TransportMode(str, Enum):
    """Transport a session can run over."""

    AUTO = "auto"
    UDP = "udp"
    TCP = "tcp"
    FAKETCP = "faketcp"
    WEBSOCKET = "websocket"
    EBPF = "ebpf"

    def __str__(self) -> str:
        return self.value


ALL_MODES: Tuple[TransportMode, ...] = (
    TransportMode.EBPF,
    TransportMode.FAKETCP,
    TransportMode.UDP,
    TransportMode.TCP,
    TransportMode.WEBSOCKET,
)


class TransportState(IntEnum):
    """Lifecycle state of a transport."""

    UNKNOWN = 0
    STARTING = 1
    RUNNING = 2
    DEGRADED = 3
    FAILED = 4
    STOPPED = 5

    def __str__(self) -> str:
        return self.name.lower()


class SwitchReason(IntEnum):
    """Why a mode switch happened."""

    NONE = 0
    INITIAL = 1
    HIGH_RTT = 2
    HIGH_LOSS = 3
    LOW_THROUGHPUT = 4
    CONNECTION_FAILED = 5
    TIMEOUT = 6
    MANUAL = 7
    RECOVERY = 8
    PROBE = 9
    DEGRADED = 10

    def __str__(self) -> str:
        return self.name.lower()


@dataclass
class LinkQuality:
    """Snapshot of a link's measured quality. Timestamps are monotonic seconds."""

    available: bool = False
    state: TransportState = TransportState.UNKNOWN
    last_check: Optional[float] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    rtt: timedelta = _ZERO
    min_rtt: timedelta = _ZERO
    max_rtt: timedelta = _ZERO
    avg_rtt: timedelta = _ZERO
    rtt_jitter: timedelta = _ZERO
    loss_rate: float = 0.0
    recent_losses: int = 0
    total_losses: int = 0
    total_packets: int = 0
    throughput: float = 0.0
    peak_throughput: float = 0.0
    avg_throughput: float = 0.0
    active_conns: int = 0
    total_conns: int = 0
    failed_conns: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    error_count: int = 0
    score: float = 0.0


@dataclass
class SwitchEvent:
    """A recorded mode switch."""

    from_mode: TransportMode
    to_mode: TransportMode
    reason: SwitchReason
    success: bool
    timestamp: float = field(default_factory=time.monotonic)
    quality: Optional[LinkQuality] = None
    duration: timedelta = _ZERO


@dataclass
class SwitchDecision:
    """Outcome of evaluating whether to switch."""

    target_mode: TransportMode
    should_switch: bool = False
    reason: SwitchReason = SwitchReason.NONE
    confidence: float = 0.0
    alternatives: List[TransportMode] = field(default_factory=list)


def _default_priority() -> List[TransportMode]:
    return [
        TransportMode.EBPF,
        TransportMode.FAKETCP,
        TransportMode.UDP,
        TransportMode.WEBSOCKET,
    ]


@dataclass
class SwitcherConfig:
    """Tuning of the link switcher."""

    enabled: bool = True
    check_interval: timedelta = timedelta(seconds=1)
    probe_interval: timedelta = timedelta(seconds=30)
    recovery_interval: timedelta = timedelta(seconds=10)
    rtt_threshold: timedelta = timedelta(milliseconds=300)
    loss_threshold: float = 0.10
    throughput_threshold: float = 100 * 1024
    fail_threshold: int = 3
    recover_threshold: int = 5
    min_switch_interval: timedelta = timedelta(seconds=5)
    max_switch_rate: float = 6
    cooldown_period: timedelta = timedelta(seconds=10)
    priority: List[TransportMode] = field(default_factory=_default_priority)
    enable_fallback: bool = True
    fallback_mode: TransportMode = TransportMode.WEBSOCKET
    fallback_timeout: timedelta = timedelta(seconds=30)
    enable_probe: bool = True
    probe_packet_size: int = 64
    probe_count: int = 3
    probe_timeout: timedelta = timedelta(seconds=5)
    log_level: str = "info"


def default_switcher_config() -> SwitcherConfig:
    """Return a fresh configuration with the default tuning."""
    return SwitcherConfig()


@runtime_checkable
class TransportHandler(Protocol):
    """What the switcher needs from a transport."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def is_running(self) -> bool: ...

    def send(self, data: bytes, addr: Address) -> None: ...

    def state(self) -> TransportState: ...

    def quality(self) -> LinkQuality: ...

    def stats(self) -> Dict[str, Any]: ...

    def probe(self, addr: Address) -> timedelta: ...


@dataclass
class ModeStats:
    """Per-mode switching statistics."""

    mode: TransportMode
    state: TransportState = TransportState.UNKNOWN
    quality: Optional[LinkQuality] = None
    total_time: timedelta = _ZERO
    switch_in_count: int = 0
    switch_out_count: int = 0
    failure_count: int = 0
    last_active: Optional[float] = None


@dataclass
class SwitcherStats:
    """Aggregate statistics of the switcher."""

    current_mode: TransportMode
    current_state: TransportState = TransportState.UNKNOWN
    current_quality: Optional[LinkQuality] = None
    total_switches: int = 0
    success_switches: int = 0
    failed_switches: int = 0
    last_switch: Optional[float] = None
    last_switch_reason: SwitchReason = SwitchReason.NONE
    mode_stats: Dict[TransportMode, ModeStats] = field(default_factory=dict)
    uptime: timedelta = _ZERO
    current_mode_time: timedelta = _ZERO
    arq_enabled: bool = False
    arq_active_conns: int = 0