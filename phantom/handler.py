"""Request handler: decodes client packets and drives the proxied connections."""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .protocol import (
    STATUS_ERROR,
    STATUS_OK,
    TYPE_CLOSE,
    TYPE_CONNECT,
    TYPE_DATA,
    ProtocolError,
    Request,
    build_response,
    parse_request,
)

Address = Tuple[str, int]
Sender = Callable[[bytes, Address], None]

CONNECT_TIMEOUT = 10.0
WRITE_TIMEOUT = 30.0
READ_TIMEOUT = 300.0
CONN_CLEANUP_PERIOD = 30.0
CONN_IDLE_TIMEOUT = 300.0
SESSION_IDLE_TIMEOUT = 600.0
READ_BUFFER_SIZE = 32 * 1024
KEEPALIVE_PERIOD = 30

_logger = logging.getLogger(__name__)


class LogLevel(IntEnum):
    """Verbosity of the handler's log output."""

    ERROR = 0
    INFO = 1
    DEBUG = 2


_LOGGING_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
}


def parse_log_level(level: str) -> LogLevel:
    """Map a configured level name to a LogLevel; unknown names mean INFO."""
    if level == "debug":
        return LogLevel.DEBUG
    if level == "error":
        return LogLevel.ERROR
    return LogLevel.INFO


@runtime_checkable
class Cipher(Protocol):
    """Authenticated encryption used on every packet; decrypt raises on bad input."""

    def encrypt(self, plaintext: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes) -> bytes: ...


@runtime_checkable
class FrameReader(Protocol):
    """Source of framed messages from a stream client; raises EOFError at the end."""

    def read_frame(self) -> bytes: ...


@runtime_checkable
class FrameWriter(Protocol):
    """Sink of framed messages to a stream client."""

    def write_frame(self, frame: bytes) -> None: ...


@dataclass
class ProxyConnection:
    """A proxied connection to a target, keyed by its request id."""

    id: int
    target: socket.socket
    client_addr: Address
    network: str
    target_addr: str
    created_at: float
    last_active: float
    bytes_sent: int = 0
    bytes_recv: int = 0
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)


@dataclass
class ClientSession:
    """Activity of one client address and the request ids it used."""

    addr: Address
    last_active: float
    conn_ids: List[int] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


def _configure_tcp(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE_PERIOD)
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, KEEPALIVE_PERIOD)
    except OSError:
        pass


def _dial(network: str, host: str, port: int) -> socket.socket:
    """Open a connection to the target; raises OSError on failure."""
    if network == "tcp":
        sock = socket.create_connection((host, port), timeout=CONNECT_TIMEOUT)
        _configure_tcp(sock)
    elif network == "udp":
        family, kind, proto, _, sockaddr = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
        sock = socket.socket(family, kind, proto)
        try:
            sock.settimeout(CONNECT_TIMEOUT)
            sock.connect(sockaddr)
        except OSError:
            sock.close()
            raise
    else:
        raise OSError(f"unsupported network: {network}")
    sock.settimeout(READ_TIMEOUT)
    return sock


class UnifiedHandler:
    """Decrypts and parses client requests and proxies them to their targets."""

    def __init__(
        self,
        cipher: Cipher,
        log_level: str = "info",
        sender: Optional[Sender] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cipher = cipher
        self._log_level = parse_log_level(log_level)
        self.sender = sender
        self._clock = clock

        self._connections: Dict[int, ProxyConnection] = {}
        self._conns_lock = threading.Lock()
        self._sessions: Dict[str, ClientSession] = {}
        self._sessions_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._total_conns = 0
        self._active_conns = 0
        self._total_bytes = 0

        self._closed = threading.Event()
        self._cleaner = threading.Thread(target=self._cleanup_loop, name="handler-cleanup", daemon=True)
        self._cleaner.start()

    # ------------------------------------------------------------------ lifecycle

    def close(self) -> None:
        """Stop background work and close every proxied connection."""
        self._closed.set()
        with self._conns_lock:
            ids = list(self._connections)
        for req_id in ids:
            self._close_connection(req_id)

    def __enter__(self) -> "UnifiedHandler":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def stats(self) -> Dict[str, int]:
        """Return connection and traffic counters."""
        with self._stats_lock:
            return {
                "total_conns": self._total_conns,
                "active_conns": self._active_conns,
                "total_bytes": self._total_bytes,
            }

    def active_conns(self) -> int:
        """Return the number of active connections."""
        with self._stats_lock:
            return self._active_conns

    def _add_active(self, delta: int) -> None:
        with self._stats_lock:
            self._active_conns += delta

    def _add_bytes(self, count: int) -> None:
        with self._stats_lock:
            self._total_bytes += count

    # ------------------------------------------------------------------ datagrams

    def handle_packet(self, data: bytes, from_addr: Address) -> None:
        """Handle one encrypted datagram; invalid packets are dropped silently.

        Responses go out through ``sender``.
        """
        try:
            plaintext = self._cipher.decrypt(bytes(data or b""))
        except Exception as exc:
            self._log(LogLevel.DEBUG, "decrypt failed: %s", exc)
            return None

        try:
            req = parse_request(plaintext)
        except ProtocolError as exc:
            self._log(LogLevel.DEBUG, "bad request: %s", exc)
            return None

        self._update_session(from_addr, req.req_id)

        if req.type == TYPE_CONNECT:
            self._handle_udp_connect(req, from_addr)
        elif req.type == TYPE_DATA:
            self._handle_udp_data(req, from_addr)
        elif req.type == TYPE_CLOSE:
            self._log(LogLevel.INFO, "UDP close: ID:%d", req.req_id)
            self._close_connection(req.req_id)
        return None

    def _handle_udp_connect(self, req: Request, from_addr: Address) -> None:
        network = req.network_string()
        target = req.target_addr()
        self._log(LogLevel.INFO, "UDP connect: %s %s (ID:%d) from %s:%s",
                  network, target, req.req_id, *from_addr)

        try:
            target_sock = _dial(network, req.address, req.port)
        except OSError as exc:
            self._log(LogLevel.DEBUG, "dial failed: %s - %s", target, exc)
            self._send_udp_response(req.req_id, STATUS_ERROR, b"", from_addr)
            return

        now = self._clock()
        conn = ProxyConnection(
            id=req.req_id,
            target=target_sock,
            client_addr=from_addr,
            network=network,
            target_addr=target,
            created_at=now,
            last_active=now,
        )
        with self._conns_lock:
            self._connections[req.req_id] = conn
        with self._stats_lock:
            self._total_conns += 1
            self._active_conns += 1

        if req.data:
            try:
                self._write_to_target(conn, req.data)
            except OSError as exc:
                self._log(LogLevel.DEBUG, "initial write failed: %s", exc)

        self._send_udp_response(req.req_id, STATUS_OK, b"", from_addr)
        threading.Thread(target=self._udp_read_loop, args=(conn,), daemon=True).start()

    def _handle_udp_data(self, req: Request, from_addr: Address) -> None:
        with self._conns_lock:
            conn = self._connections.get(req.req_id)
        if conn is None:
            self._log(LogLevel.DEBUG, "no such connection: ID:%d", req.req_id)
            return

        with conn.lock:
            conn.last_active = self._clock()
            conn.client_addr = from_addr

        if req.data:
            try:
                self._write_to_target(conn, req.data)
            except OSError as exc:
                self._log(LogLevel.DEBUG, "write to target failed: ID:%d - %s", req.req_id, exc)
                self._close_connection(req.req_id)

    def _udp_read_loop(self, conn: ProxyConnection) -> None:
        try:
            while not conn.closed:
                try:
                    chunk = conn.target.recv(READ_BUFFER_SIZE)
                except OSError as exc:
                    self._log(LogLevel.DEBUG, "target read ended: ID:%d - %s", conn.id, exc)
                    return
                if not chunk:
                    return
                with conn.lock:
                    conn.last_active = self._clock()
                    conn.bytes_recv += len(chunk)
                    client_addr = conn.client_addr
                self._add_bytes(len(chunk))
                self._send_udp_response(conn.id, TYPE_DATA, chunk, client_addr)
        finally:
            self._close_connection(conn.id, expected=conn)

    def _send_udp_response(self, req_id: int, status: int, data: bytes, to: Address) -> None:
        sender = self.sender
        if sender is None:
            self._log(LogLevel.ERROR, "no sender set, response dropped")
            return
        try:
            encrypted = self._cipher.encrypt(build_response(req_id, status, data))
        except Exception as exc:
            self._log(LogLevel.ERROR, "encrypting response failed: %s", exc)
            return
        try:
            sender(encrypted, to)
        except Exception as exc:
            self._log(LogLevel.DEBUG, "sending response failed: %s", exc)

    # ------------------------------------------------------------------ streams

    def handle_connection(self, reader: FrameReader, writer: FrameWriter, client_addr: Address) -> None:
        """Serve one stream client until it closes or its proxy session ends."""
        label = f"{client_addr[0]}:{client_addr[1]}"
        self._add_active(1)
        self._log(LogLevel.DEBUG, "TCP client: %s", label)
        try:
            self._tcp_main_loop(reader, writer, label)
        finally:
            self._add_active(-1)
            self._log(LogLevel.DEBUG, "TCP client gone: %s", label)

    def _read_request(self, reader: FrameReader, label: str) -> Optional[Request]:
        """Read and decode one frame; None ends the stream, ProtocolError skips it."""
        try:
            frame = reader.read_frame()
        except EOFError:
            return None
        except Exception as exc:
            self._log(LogLevel.DEBUG, "frame read failed: %s - %s", label, exc)
            return None
        try:
            plaintext = self._cipher.decrypt(frame)
        except Exception as exc:
            self._log(LogLevel.DEBUG, "decrypt failed: %s - %s", label, exc)
            return None
        return parse_request(plaintext)

    def _tcp_main_loop(self, reader: FrameReader, writer: FrameWriter, label: str) -> None:
        while not self._closed.is_set():
            try:
                req = self._read_request(reader, label)
            except ProtocolError as exc:
                self._log(LogLevel.DEBUG, "bad request: %s - %s", label, exc)
                continue
            if req is None:
                return
            if req.type == TYPE_CONNECT:
                self._handle_tcp_connect(req, reader, writer)
                return
            if req.type == TYPE_DATA:
                self._log(LogLevel.DEBUG, "stray data request: %s", label)
                continue
            if req.type == TYPE_CLOSE:
                self._log(LogLevel.DEBUG, "close request: %s", label)
                return

    def _handle_tcp_connect(self, req: Request, reader: FrameReader, writer: FrameWriter) -> None:
        network = req.network_string()
        target = req.target_addr()
        self._log(LogLevel.INFO, "TCP connect: %s %s (ID:%d)", network, target, req.req_id)

        try:
            target_sock = _dial(network, req.address, req.port)
        except OSError as exc:
            self._log(LogLevel.DEBUG, "dial failed: %s - %s", target, exc)
            self._try_send_tcp(writer, req.req_id, STATUS_ERROR)
            return

        try:
            if req.data:
                try:
                    target_sock.sendall(req.data)
                except OSError as exc:
                    self._log(LogLevel.DEBUG, "initial write failed: %s", exc)
                    self._try_send_tcp(writer, req.req_id, STATUS_ERROR)
                    return

            if not self._try_send_tcp(writer, req.req_id, STATUS_OK):
                return

            self._log(LogLevel.INFO, "TCP proxy up: %s %s", network, target)
            self._tcp_proxy(req.req_id, target_sock, reader, writer)
        finally:
            _shutdown(target_sock)

    def _tcp_proxy(self, req_id: int, target: socket.socket, reader: FrameReader, writer: FrameWriter) -> None:
        stop = threading.Event()
        pump = threading.Thread(
            target=self._tcp_target_to_client, args=(req_id, target, writer, stop), daemon=True
        )
        pump.start()
        try:
            self._tcp_client_to_target(req_id, target, reader, stop)
        finally:
            stop.set()
            _shutdown(target)
            pump.join()
        self._log(LogLevel.INFO, "TCP proxy ended: ID:%d", req_id)

    def _tcp_client_to_target(
        self, req_id: int, target: socket.socket, reader: FrameReader, stop: threading.Event
    ) -> None:
        label = f"ID:{req_id}"
        while not stop.is_set() and not self._closed.is_set():
            try:
                req = self._read_request(reader, label)
            except ProtocolError as exc:
                self._log(LogLevel.DEBUG, "bad request: %s - %s", label, exc)
                continue
            if req is None:
                return
            if req.type == TYPE_DATA and req.data:
                try:
                    target.sendall(req.data)
                except OSError as exc:
                    self._log(LogLevel.DEBUG, "write to target failed: %s - %s", label, exc)
                    return
            elif req.type == TYPE_CLOSE:
                self._log(LogLevel.DEBUG, "client closed: %s", label)
                return

    def _tcp_target_to_client(
        self, req_id: int, target: socket.socket, writer: FrameWriter, stop: threading.Event
    ) -> None:
        try:
            while not stop.is_set():
                try:
                    chunk = target.recv(READ_BUFFER_SIZE)
                except OSError as exc:
                    self._log(LogLevel.DEBUG, "target read failed: ID:%d - %s", req_id, exc)
                    chunk = b""
                if not chunk:
                    self._try_send_tcp(writer, req_id, TYPE_CLOSE)
                    return
                if not self._try_send_tcp(writer, req_id, TYPE_DATA, chunk):
                    return
        finally:
            stop.set()

    def _try_send_tcp(self, writer: FrameWriter, req_id: int, status: int, data: bytes = b"") -> bool:
        try:
            writer.write_frame(self._cipher.encrypt(build_response(req_id, status, data)))
        except Exception as exc:
            self._log(LogLevel.DEBUG, "sending response failed: ID:%d - %s", req_id, exc)
            return False
        return True

    # ------------------------------------------------------------------ connections

    def _close_connection(self, req_id: int, expected: Optional[ProxyConnection] = None) -> None:
        with self._conns_lock:
            conn = self._connections.get(req_id)
            if conn is None or (expected is not None and conn is not expected):
                return
            del self._connections[req_id]

        with conn.lock:
            if conn.closed:
                return
            conn.closed = True
            sent, recv = conn.bytes_sent, conn.bytes_recv

        _shutdown(conn.target)
        self._add_active(-1)
        self._log(LogLevel.INFO, "connection closed: ID:%d %s (sent:%d recv:%d duration:%ds)",
                  req_id, conn.target_addr, sent, recv, round(self._clock() - conn.created_at))

    def _write_to_target(self, conn: ProxyConnection, data: bytes) -> None:
        conn.target.sendall(data)
        with conn.lock:
            conn.bytes_sent += len(data)
        self._add_bytes(len(data))

    # ------------------------------------------------------------------ sessions

    def _update_session(self, addr: Address, conn_id: int) -> None:
        key = f"{addr[0]}:{addr[1]}"
        now = self._clock()
        with self._sessions_lock:
            session = self._sessions.setdefault(key, ClientSession(addr=addr, last_active=now))
        with session.lock:
            session.last_active = now
            if conn_id not in session.conn_ids:
                session.conn_ids.append(conn_id)

    def cleanup(self) -> Tuple[int, int]:
        """Close idle connections and forget idle sessions.

        Returns the numbers of connections and sessions removed.
        """
        now = self._clock()
        with self._conns_lock:
            conns = list(self._connections.items())
        cleaned_conns = 0
        for req_id, conn in conns:
            with conn.lock:
                idle = now - conn.last_active
            if idle > CONN_IDLE_TIMEOUT:
                self._close_connection(req_id, expected=conn)
                cleaned_conns += 1

        cleaned_sessions = 0
        with self._sessions_lock:
            for key, session in list(self._sessions.items()):
                with session.lock:
                    idle = now - session.last_active
                if idle > SESSION_IDLE_TIMEOUT:
                    del self._sessions[key]
                    cleaned_sessions += 1

        if cleaned_conns or cleaned_sessions:
            self._log(LogLevel.DEBUG, "cleanup: connections=%d sessions=%d", cleaned_conns, cleaned_sessions)
        return cleaned_conns, cleaned_sessions

    def _cleanup_loop(self) -> None:
        while not self._closed.wait(CONN_CLEANUP_PERIOD):
            self.cleanup()

    def _log(self, level: LogLevel, msg: str, *args) -> None:
        if level > self._log_level:
            return
        _logger.log(_LOGGING_LEVELS[level], "[Handler] " + msg, *args)