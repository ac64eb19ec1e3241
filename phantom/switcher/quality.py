"""Link quality measurement and scoring."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Callable, Deque, List, NamedTuple, Optional

from .types import LinkQuality, TransportMode, TransportState

RTT_SAMPLE_WINDOW = 20
LOSS_SAMPLE_WINDOW = 100
THROUGHPUT_WINDOW = 10.0

RTT_WEIGHT = 0.35
LOSS_WEIGHT = 0.35
THROUGHPUT_WEIGHT = 0.20
STABILITY_WEIGHT = 0.10

_SCORE_HISTORY_LIMIT = 100
_AVAILABILITY_WINDOW = 30.0
_FULL_SCORE_THROUGHPUT = 10 * 1024 * 1024
_ZERO = timedelta(0)
_MS = timedelta(milliseconds=1)
_US = timedelta(microseconds=1)


class _ThroughputSample(NamedTuple):
    nbytes: int
    duration: float
    timestamp: float


class QualityMonitor:
    """Collects RTT, loss and throughput samples for one mode and scores them."""

    def __init__(self, mode: TransportMode, clock: Callable[[], float] = time.monotonic):
        self.mode = mode
        self._clock = clock
        self._lock = threading.Lock()

        self._total_conns = 0
        self._failed_conns = 0
        self._last_success: Optional[float] = None
        self._last_failure: Optional[float] = None

        self._rtt_samples: Deque[timedelta] = deque(maxlen=RTT_SAMPLE_WINDOW)
        self._loss_window: Deque[bool] = deque(maxlen=LOSS_SAMPLE_WINDOW)
        self._throughput_samples: List[_ThroughputSample] = []
        self._score_history: Deque[float] = deque(maxlen=_SCORE_HISTORY_LIMIT)
        self._clear()

    def _clear(self) -> None:
        self._rtt_samples.clear()
        self._min_rtt = _ZERO
        self._max_rtt = _ZERO

        self._loss_window.clear()
        self._recent_losses = 0

        self._throughput_samples.clear()
        self._last_bytes = 0
        self._last_bytes_time: Optional[float] = None

        self._active_conns = 0
        self._consecutive_successes = 0
        self._consecutive_failures = 0

        self._current_score = 0.0
        self._score_history.clear()
        self._last_update = self._clock()

    def record_rtt(self, rtt: timedelta) -> None:
        """Record a round-trip sample; non-positive samples are ignored."""
        with self._lock:
            if rtt <= _ZERO:
                return
            self._rtt_samples.append(rtt)
            if self._min_rtt == _ZERO or rtt < self._min_rtt:
                self._min_rtt = rtt
            if rtt > self._max_rtt:
                self._max_rtt = rtt

            now = self._clock()
            self._last_success = now
            self._consecutive_successes += 1
            self._consecutive_failures = 0
            self._last_update = now

    def record_packet(self, success: bool) -> None:
        """Record whether a packet got through."""
        with self._lock:
            evicted_loss = (
                len(self._loss_window) == LOSS_SAMPLE_WINDOW and self._loss_window[0]
            )
            self._loss_window.append(not success)
            if not success:
                self._recent_losses += 1
            elif evicted_loss:
                self._recent_losses -= 1

            now = self._clock()
            if success:
                self._consecutive_successes += 1
                self._consecutive_failures = 0
                self._last_success = now
            else:
                self._consecutive_failures += 1
                self._consecutive_successes = 0
                self._last_failure = now
            self._last_update = now

    def record_bytes(self, total_bytes: int) -> None:
        """Record a cumulative byte counter; throughput comes from its deltas."""
        with self._lock:
            now = self._clock()
            if self._last_bytes_time is not None:
                duration = now - self._last_bytes_time
                if duration > 0:
                    self._throughput_samples.append(
                        _ThroughputSample(total_bytes - self._last_bytes, duration, now)
                    )
                    cutoff = now - THROUGHPUT_WINDOW
                    self._throughput_samples = [
                        s for s in self._throughput_samples if s.timestamp > cutoff
                    ]
            self._last_bytes = total_bytes
            self._last_bytes_time = now
            self._last_update = now

    def record_connection(self, success: bool) -> None:
        """Record a connection attempt."""
        with self._lock:
            now = self._clock()
            self._total_conns += 1
            if success:
                self._active_conns += 1
            else:
                self._failed_conns += 1
                self._consecutive_failures += 1
                self._consecutive_successes = 0
                self._last_failure = now
            self._last_update = now

    def record_disconnection(self) -> None:
        """Record that an active connection went away."""
        with self._lock:
            if self._active_conns > 0:
                self._active_conns -= 1
            self._last_update = self._clock()

    def quality(self) -> LinkQuality:
        """Compute a quality snapshot and score it."""
        with self._lock:
            now = self._clock()
            q = LinkQuality(
                last_check=self._last_update,
                last_success=self._last_success,
                last_failure=self._last_failure,
                min_rtt=self._min_rtt,
                max_rtt=self._max_rtt,
                active_conns=self._active_conns,
                total_conns=self._total_conns,
                failed_conns=self._failed_conns,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
            )

            if self._rtt_samples:
                count = len(self._rtt_samples)
                avg = sum(self._rtt_samples, _ZERO) // count
                q.avg_rtt = avg
                q.rtt = avg
                avg_us = avg / _US
                variance = sum((s / _US - avg_us) ** 2 for s in self._rtt_samples)
                q.rtt_jitter = timedelta(microseconds=math.sqrt(variance / count))

            if self._loss_window:
                q.loss_rate = self._recent_losses / len(self._loss_window)
                q.recent_losses = self._recent_losses
                q.total_losses = self._recent_losses
                q.total_packets = len(self._loss_window)

            if self._throughput_samples:
                total_bytes = sum(s.nbytes for s in self._throughput_samples)
                total_duration = sum(s.duration for s in self._throughput_samples)
                if total_duration > 0:
                    q.throughput = total_bytes / total_duration
                    q.avg_throughput = q.throughput
                for s in self._throughput_samples:
                    if s.duration > 0:
                        q.peak_throughput = max(q.peak_throughput, s.nbytes / s.duration)

            q.available = self._consecutive_failures < 5 and (
                self._last_success is None
                or now - self._last_success < _AVAILABILITY_WINDOW
            )
            if q.available:
                q.state = TransportState.RUNNING
            elif self._consecutive_failures > 0:
                q.state = TransportState.DEGRADED
            else:
                q.state = TransportState.UNKNOWN

            q.score = self._calculate_score(q)
            return q

    def _calculate_score(self, q: LinkQuality) -> float:
        score = 100.0

        if q.avg_rtt > _ZERO:
            rtt_ms = float(q.avg_rtt // _MS)
            rtt_score = 100 - min(rtt_ms / 5, 100)
            score = score * RTT_WEIGHT + rtt_score * (1 - RTT_WEIGHT)

        loss_score = 100 * (1 - min(q.loss_rate * 10, 1))
        score = score * (1 - LOSS_WEIGHT) + loss_score * LOSS_WEIGHT

        if q.throughput > 0:
            tp_score = min(q.throughput / _FULL_SCORE_THROUGHPUT * 100, 100)
            score = score * (1 - THROUGHPUT_WEIGHT) + tp_score * THROUGHPUT_WEIGHT

        stability = 100.0
        if q.consecutive_failures > 0:
            stability -= q.consecutive_failures * 20
        if q.rtt_jitter > 50 * _MS:
            stability -= (q.rtt_jitter // _MS) / 10
        stability = max(stability, 0.0)
        score = score * (1 - STABILITY_WEIGHT) + stability * STABILITY_WEIGHT

        self._current_score = score
        self._score_history.append(score)
        return max(0.0, min(100.0, score))

    def score(self) -> float:
        """Return the score computed by the last quality() call."""
        with self._lock:
            return self._current_score

    def score_trend(self) -> int:
        """Return 1 if the score is rising, -1 if falling, 0 otherwise."""
        with self._lock:
            history = list(self._score_history)
        if len(history) < 10:
            return 0
        recent_avg = sum(history[-5:]) / 5
        older_avg = sum(history[-10:-5]) / 5
        diff = recent_avg - older_avg
        if diff > 5:
            return 1
        if diff < -5:
            return -1
        return 0

    def reset(self) -> None:
        """Drop samples and counters; lifetime totals and last event times are kept."""
        with self._lock:
            self._clear()