"""HTTP endpoints for health checks, liveness/readiness probes and metrics."""

from __future__ import annotations

import json
import os
import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .registry import Collector, Desc, Registry, Sample

METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
REQUEST_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0
PPROF_PREFIX = "/debug/pprof/"

HealthCheck = Callable[[], "HealthStatus"]


@dataclass
class ComponentHealth:
    """Health of one component of the server."""

    status: str
    message: str = ""

    def to_dict(self) -> Dict[str, str]:
        data = {"status": self.status}
        if self.message:
            data["message"] = self.message
        return data


@dataclass
class HealthStatus:
    """Overall health as reported on the health endpoint."""

    status: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = ""
    uptime: timedelta = timedelta(0)
    components: Dict[str, ComponentHealth] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        """Return the JSON-ready form; the uptime is given in nanoseconds."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "uptime": self.uptime // timedelta(microseconds=1) * 1000,
            "components": {name: c.to_dict() for name, c in self.components.items()},
        }


class _ProcessCollector:
    """Basic facts about the running process."""

    def __init__(self) -> None:
        self._start = time.time()
        self.start_desc = Desc(
            "process_start_time_seconds",
            "Start time of the process since unix epoch in seconds.",
            (),
            "gauge",
        )
        self.threads_desc = Desc("python_threads", "Number of live threads.", (), "gauge")

    def describe(self) -> List[Desc]:
        return [self.start_desc, self.threads_desc]

    def collect(self) -> List[Sample]:
        return [
            Sample(self.start_desc.fq_name, {}, self._start),
            Sample(self.threads_desc.fq_name, {}, float(threading.active_count())),
        ]


def _parse_listen(listen: str) -> Tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"listen address needs a port: {listen!r}")
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid port in listen address: {listen!r}") from None


def _thread_dump() -> str:
    frames = sys._current_frames()
    parts = []
    for thread in threading.enumerate():
        parts.append(f"thread {thread.name} (ident={thread.ident}, daemon={thread.daemon}):")
        frame = frames.get(thread.ident) if thread.ident is not None else None
        if frame is not None:
            parts.append("".join(traceback.format_stack(frame)))
    return "\n".join(parts)


class _RequestHandler(BaseHTTPRequestHandler):
    server: "_HTTPServer"
    timeout = REQUEST_TIMEOUT

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _reply(self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def do_GET(self) -> None:
        self.server.metrics._dispatch(self, urlsplit(self.path).path)

    do_HEAD = do_GET
    do_POST = do_GET


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], metrics: "MetricsServer"):
        self.metrics = metrics
        super().__init__(address, _RequestHandler)


class MetricsServer:
    """Serves health, liveness, readiness and metrics endpoints over HTTP."""

    def __init__(self, listen: str, metrics_path: str, health_path: str, enable_pprof: bool = False):
        self.listen = listen
        self.metrics_path = metrics_path
        self.health_path = health_path
        self.enable_pprof = enable_pprof
        self.registry = Registry()
        self.registry.register(_ProcessCollector())

        self._healthy = True
        self._health_check: Optional[HealthCheck] = None
        self._lock = threading.RLock()
        self._httpd: Optional[_HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def register_collector(self, collector: Collector) -> None:
        """Add a collector; a family name already taken raises RegistrationError."""
        self.registry.register(collector)

    def set_health_check(self, fn: Optional[HealthCheck]) -> None:
        """Set the function that reports the overall health."""
        with self._lock:
            self._health_check = fn

    def set_healthy(self, healthy: bool) -> None:
        """Set what the liveness probe reports."""
        with self._lock:
            self._healthy = bool(healthy)

    def start(self) -> None:
        """Bind the listen address and serve in a background thread."""
        with self._lock:
            if self._httpd is not None:
                raise RuntimeError("metrics server already started")
            httpd = _HTTPServer(_parse_listen(self.listen), self)
            self._httpd = httpd
            self._thread = threading.Thread(
                target=httpd.serve_forever, name="metrics-server", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        """Stop serving and release the socket."""
        with self._lock:
            httpd, thread = self._httpd, self._thread
            self._httpd = self._thread = None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if thread is not None:
            thread.join(SHUTDOWN_TIMEOUT)

    def address(self) -> Tuple[str, int]:
        """Return the bound host and port; raises RuntimeError when not started."""
        with self._lock:
            httpd = self._httpd
        if httpd is None:
            raise RuntimeError("metrics server not started")
        host, port = httpd.server_address[:2]
        return str(host), int(port)

    # ------------------------------------------------------------------ routing

    def _dispatch(self, req: _RequestHandler, path: str) -> None:
        if path == self.health_path:
            self._handle_health(req)
        elif path == self.health_path + "/live":
            self._handle_liveness(req)
        elif path == self.health_path + "/ready":
            self._handle_readiness(req)
        elif path == self.metrics_path:
            req._reply(HTTPStatus.OK, self.registry.expose().encode("utf-8"), METRICS_CONTENT_TYPE)
        elif self.enable_pprof and path.startswith(PPROF_PREFIX):
            self._handle_debug(req, path)
        else:
            req._reply(HTTPStatus.NOT_FOUND, b"404 page not found\n")

    def _current_check(self) -> Optional[HealthCheck]:
        with self._lock:
            return self._health_check

    def _handle_health(self, req: _RequestHandler) -> None:
        check = self._current_check()
        status = check() if check is not None else HealthStatus(status="healthy")
        code = HTTPStatus.OK if status.status == "healthy" else HTTPStatus.SERVICE_UNAVAILABLE
        body = (json.dumps(status.to_dict()) + "\n").encode("utf-8")
        req._reply(code, body, "application/json")

    def _handle_liveness(self, req: _RequestHandler) -> None:
        with self._lock:
            healthy = self._healthy
        if healthy:
            req._reply(HTTPStatus.OK, b"OK")
        else:
            req._reply(HTTPStatus.SERVICE_UNAVAILABLE, b"NOT OK")

    def _handle_readiness(self, req: _RequestHandler) -> None:
        check = self._current_check()
        if check is not None and check().status in ("healthy", "degraded"):
            req._reply(HTTPStatus.OK, b"READY")
            return
        req._reply(HTTPStatus.SERVICE_UNAVAILABLE, b"NOT READY")

    def _handle_debug(self, req: _RequestHandler, path: str) -> None:
        if path == PPROF_PREFIX + "cmdline":
            req._reply(HTTPStatus.OK, "\x00".join(sys.argv).encode("utf-8"))
            return
        body = f"pid {os.getpid()}\n\n{_thread_dump()}"
        req._reply(HTTPStatus.OK, body.encode("utf-8"))