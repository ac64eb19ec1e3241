"""Decision engine choosing when and where to switch transport modes."""

from __future__ import annotations

import threading
import time
from collections import deque
from datetime import timedelta
from typing import Callable, Deque, Dict, List, NamedTuple, Optional, Tuple

from .quality import QualityMonitor
from .types import (
    ALL_MODES,
    LinkQuality,
    SwitchDecision,
    SwitchEvent,
    SwitchReason,
    SwitcherConfig,
    TransportMode,
    TransportState,
    default_switcher_config,
)

_HISTORY_LIMIT = 100
_RATE_WINDOW = 60.0
_RECENT_SUCCESS_WINDOW = 60.0
_ZERO = timedelta(0)


class _Candidate(NamedTuple):
    mode: TransportMode
    score: float
    quality: LinkQuality
    priority: int


class _ProbeRecord(NamedTuple):
    mode: TransportMode
    rtt: timedelta
    success: bool
    timestamp: float


class DecisionEngine:
    """Tracks per-mode quality and decides whether the current mode should change."""

    def __init__(
        self,
        config: Optional[SwitcherConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config if config is not None else default_switcher_config()
        self._clock = clock
        self._lock = threading.RLock()
        self._qualities: Dict[TransportMode, QualityMonitor] = {
            mode: QualityMonitor(mode, clock=clock) for mode in ALL_MODES
        }
        self._history: Deque[SwitchEvent] = deque(maxlen=_HISTORY_LIMIT)
        self._last_switch: Optional[float] = None
        self._cooldowns: Dict[TransportMode, float] = {}
        self._probe_results: Dict[TransportMode, _ProbeRecord] = {}

    def evaluate(self, current_mode: TransportMode) -> SwitchDecision:
        """Decide whether to leave ``current_mode`` and for which mode."""
        with self._lock:
            decision = SwitchDecision(target_mode=current_mode)

            if not self._can_switch():
                return decision

            current_quality = self._quality_of(current_mode)
            if current_quality is None:
                return decision

            reason = self._check_switch_conditions(current_quality)
            if reason is SwitchReason.NONE:
                reason = self._check_recovery_conditions(current_mode, current_quality)
            if reason is SwitchReason.NONE:
                return decision

            target, confidence, alternatives = self._select_target_mode(current_mode, reason)
            if target == current_mode:
                return decision

            decision.should_switch = True
            decision.target_mode = target
            decision.reason = reason
            decision.confidence = confidence
            decision.alternatives = alternatives
            return decision

    def _check_switch_conditions(self, quality: LinkQuality) -> SwitchReason:
        cfg = self.config
        if quality.consecutive_failures >= cfg.fail_threshold:
            return SwitchReason.CONNECTION_FAILED
        if quality.rtt > cfg.rtt_threshold and quality.rtt > _ZERO:
            return SwitchReason.HIGH_RTT
        if quality.loss_rate > cfg.loss_threshold:
            return SwitchReason.HIGH_LOSS
        if 0 < quality.throughput < cfg.throughput_threshold:
            return SwitchReason.LOW_THROUGHPUT
        if quality.state in (TransportState.DEGRADED, TransportState.FAILED):
            return SwitchReason.DEGRADED
        return SwitchReason.NONE

    def _check_recovery_conditions(
        self, current_mode: TransportMode, quality: LinkQuality
    ) -> SwitchReason:
        current_priority = self._priority_of(current_mode)
        for mode in self.config.priority:
            if self._priority_of(mode) >= current_priority:
                continue
            if self._in_cooldown(mode):
                continue
            mode_quality = self._quality_of(mode)
            if mode_quality is None:
                continue
            if (
                mode_quality.available
                and mode_quality.consecutive_successes >= self.config.recover_threshold
                and mode_quality.score > quality.score + 10
            ):
                return SwitchReason.RECOVERY
        return SwitchReason.NONE

    def _select_target_mode(
        self, current_mode: TransportMode, reason: SwitchReason
    ) -> Tuple[TransportMode, float, List[TransportMode]]:
        priorities = self.config.priority
        current_priority = self._priority_of(current_mode)
        now = self._clock()
        candidates: List[_Candidate] = []

        for mode in priorities:
            if mode == current_mode or self._in_cooldown(mode):
                continue
            quality = self._quality_of(mode)
            if quality is None:
                continue

            priority = self._priority_of(mode)
            score = quality.score + (len(priorities) - priority) * 5
            if reason is SwitchReason.RECOVERY and priority < current_priority:
                score += 20
            if (
                quality.last_success is not None
                and now - quality.last_success < _RECENT_SUCCESS_WINDOW
            ):
                score += 10
            candidates.append(_Candidate(mode, score, quality, priority))

        if not candidates:
            if self.config.enable_fallback:
                return self.config.fallback_mode, 0.5, []
            return current_mode, 0.0, []

        candidates.sort(key=lambda c: c.score, reverse=True)
        best = candidates[0]
        confidence = min(best.score / 100, 1.0)
        alternatives = [c.mode for c in candidates[1:3]]
        return best.mode, confidence, alternatives

    def _priority_of(self, mode: TransportMode) -> int:
        try:
            return self.config.priority.index(mode)
        except ValueError:
            return len(self.config.priority)

    def _quality_of(self, mode: TransportMode) -> Optional[LinkQuality]:
        monitor = self._qualities.get(mode)
        return monitor.quality() if monitor is not None else None

    def _in_cooldown(self, mode: TransportMode) -> bool:
        deadline = self._cooldowns.get(mode)
        return deadline is not None and self._clock() < deadline

    def _can_switch(self) -> bool:
        if self._last_switch is None:
            return True
        now = self._clock()
        if now - self._last_switch < self.config.min_switch_interval.total_seconds():
            return False
        cutoff = now - _RATE_WINDOW
        recent = sum(1 for event in self._history if event.timestamp > cutoff)
        return recent < self.config.max_switch_rate

    def record_switch(self, event: SwitchEvent) -> None:
        """Remember a switch; a failed one puts its target mode into cooldown."""
        with self._lock:
            self._history.append(event)
            self._last_switch = event.timestamp
            if not event.success:
                self._cooldowns[event.to_mode] = (
                    self._clock() + self.config.cooldown_period.total_seconds()
                )

    def update_quality(
        self, mode: TransportMode, update: Callable[[QualityMonitor], None]
    ) -> None:
        """Apply ``update`` to the monitor of ``mode`` under the engine lock."""
        with self._lock:
            monitor = self._qualities.get(mode)
            if monitor is not None:
                update(monitor)

    def quality_monitor(self, mode: TransportMode) -> Optional[QualityMonitor]:
        """Return the monitor of ``mode``, or None for an untracked mode."""
        with self._lock:
            return self._qualities.get(mode)

    def all_qualities(self) -> Dict[TransportMode, LinkQuality]:
        """Return a fresh quality snapshot of every tracked mode."""
        with self._lock:
            return {mode: monitor.quality() for mode, monitor in self._qualities.items()}

    def switch_history(self, limit: int = 0) -> List[SwitchEvent]:
        """Return the latest ``limit`` switches, oldest first; all when ``limit`` <= 0."""
        with self._lock:
            history = list(self._history)
        if limit <= 0 or limit > len(history):
            limit = len(history)
        return history[len(history) - limit:]

    def record_probe_result(self, mode: TransportMode, rtt: timedelta, success: bool) -> None:
        """Feed a probe outcome into the quality monitor of ``mode``."""
        with self._lock:
            self._probe_results[mode] = _ProbeRecord(mode, rtt, success, self._clock())
            monitor = self._qualities.get(mode)
            if monitor is None:
                return
            if success:
                monitor.record_rtt(rtt)
                monitor.record_packet(True)
            else:
                monitor.record_packet(False)

    def clear_cooldown(self, mode: TransportMode) -> None:
        """Lift the cooldown of ``mode``."""
        with self._lock:
            self._cooldowns.pop(mode, None)

    def reset(self) -> None:
        """Reset all monitors, history, cooldowns and probe records."""
        with self._lock:
            for monitor in self._qualities.values():
                monitor.reset()
            self._history.clear()
            self._last_switch = None
            self._cooldowns = {}
            self._probe_results = {}