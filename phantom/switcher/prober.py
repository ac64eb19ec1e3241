"""Active probing of transports to measure their round-trip times."""

from __future__ import annotations

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from .types import Address, SwitcherConfig, TransportHandler, TransportMode, default_switcher_config

_ZERO = timedelta(0)
_US = timedelta(microseconds=1)


@dataclass
class ProbeResult:
    """Outcome of probing one mode."""

    mode: TransportMode
    available: bool = False
    rtt: timedelta = _ZERO
    min_rtt: timedelta = _ZERO
    max_rtt: timedelta = _ZERO
    avg_rtt: timedelta = _ZERO
    loss_rate: float = 0.0
    jitter: timedelta = _ZERO
    probe_count: int = 0
    success_count: int = 0
    last_probe: Optional[float] = None
    error: Optional[str] = None


class Prober:
    """Probes registered transports against a set of addresses."""

    def __init__(
        self,
        config: Optional[SwitcherConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config if config is not None else default_switcher_config()
        self._clock = clock
        self._transports: Dict[TransportMode, TransportHandler] = {}
        self._results: Dict[TransportMode, ProbeResult] = {}
        self._addrs: List[Address] = []
        self._probing = False
        self._stopped = threading.Event()
        self._lock = threading.RLock()

    def register_transport(self, mode: TransportMode, handler: TransportHandler) -> None:
        """Make ``handler`` the transport probed for ``mode``."""
        with self._lock:
            self._transports[mode] = handler

    def add_probe_addr(self, addr: Address) -> None:
        """Add a ``(host, port)`` target to probe."""
        with self._lock:
            self._addrs.append(addr)

    def probe_all(self) -> Dict[TransportMode, ProbeResult]:
        """Probe every running transport concurrently.

        While another sweep is in progress the stored results are returned instead.
        """
        with self._lock:
            if self._probing:
                return dict(self._results)
            self._probing = True
            targets = [
                (mode, t) for mode, t in self._transports.items() if t.is_running()
            ]

        try:
            results: Dict[TransportMode, ProbeResult] = {}
            if targets:
                with ThreadPoolExecutor(max_workers=len(targets)) as pool:
                    futures = {
                        mode: pool.submit(self._probe, mode, transport)
                        for mode, transport in targets
                    }
                    for mode, future in futures.items():
                        results[mode] = future.result()
            with self._lock:
                self._results.update(results)
            return results
        finally:
            with self._lock:
                self._probing = False

    def probe_mode(self, mode: TransportMode) -> ProbeResult:
        """Probe a single mode and store the result."""
        with self._lock:
            transport = self._transports.get(mode)

        if transport is None or not transport.is_running():
            return ProbeResult(
                mode=mode,
                available=False,
                error="transport not running",
                last_probe=self._clock(),
            )

        result = self._probe(mode, transport)
        with self._lock:
            self._results[mode] = result
        return result

    def _probe(self, mode: TransportMode, transport: TransportHandler) -> ProbeResult:
        result = ProbeResult(mode=mode, last_probe=self._clock())

        with self._lock:
            addrs = list(self._addrs)
        if not addrs:
            result.error = "no probe addresses"
            return result

        rtts: List[timedelta] = []
        for _ in range(self.config.probe_count):
            if self._stopped.is_set():
                break
            for addr in addrs:
                result.probe_count += 1
                try:
                    rtts.append(transport.probe(addr))
                except Exception:
                    continue

        result.success_count = len(rtts)
        if not rtts:
            result.error = "all probes failed"
            return result

        result.min_rtt = min(rtts)
        result.max_rtt = max(rtts)
        result.avg_rtt = sum(rtts, _ZERO) // len(rtts)
        result.rtt = result.avg_rtt

        if len(rtts) > 1:
            avg_us = result.avg_rtt / _US
            variance = sum((r / _US - avg_us) ** 2 for r in rtts) / len(rtts)
            result.jitter = timedelta(microseconds=math.sqrt(variance))

        result.loss_rate = 1 - result.success_count / result.probe_count
        result.available = (
            result.loss_rate < 0.5 and result.avg_rtt < self.config.rtt_threshold * 2
        )
        return result

    def result(self, mode: TransportMode) -> Optional[ProbeResult]:
        """Return the last stored result for ``mode``."""
        with self._lock:
            return self._results.get(mode)

    def all_results(self) -> Dict[TransportMode, ProbeResult]:
        """Return a copy of all stored results."""
        with self._lock:
            return dict(self._results)

    def is_probing(self) -> bool:
        """Tell whether a full sweep is in progress."""
        with self._lock:
            return self._probing

    def stop(self) -> None:
        """Stop probing; later probes send nothing."""
        self._stopped.set()