import hashlib
import hmac
import os
import queue
import socket
import socketserver
import struct
import threading
import time

import pytest

from phantom.handler import LogLevel, UnifiedHandler, parse_log_level
from phantom.protocol import (
    ADDR_IPV4,
    NETWORK_TCP,
    STATUS_ERROR,
    STATUS_OK,
    TYPE_CLOSE,
    TYPE_CONNECT,
    TYPE_DATA,
)

KEY = b"secret"


class XorCipher:
    """Keyed stream xor with an HMAC tag; rejects anything tampered with."""

    @staticmethod
    def _xor(nonce, body):
        if not body:
            return b""
        block = hashlib.sha256(KEY + nonce).digest()
        stream = (block * (len(body) // len(block) + 1))[: len(body)]
        value = int.from_bytes(body, "big") ^ int.from_bytes(stream, "big")
        return value.to_bytes(len(body), "big")

    def encrypt(self, plaintext):
        nonce = os.urandom(8)
        body = self._xor(nonce, bytes(plaintext))
        tag = hmac.new(KEY, nonce + body, hashlib.sha256).digest()[:16]
        return nonce + body + tag

    def decrypt(self, data):
        if len(data) < 24:
            raise ValueError("ciphertext too short")
        nonce, body, tag = data[:8], data[8:-16], data[-16:]
        expected = hmac.new(KEY, nonce + body, hashlib.sha256).digest()[:16]
        if not hmac.compare_digest(tag, expected):
            raise ValueError("authentication failed")
        return self._xor(nonce, body)


class RecordingSender:
    def __init__(self):
        self._items = []
        self._cond = threading.Condition()

    def send(self, data, addr):
        with self._cond:
            self._items.append((bytes(data), addr))
            self._cond.notify_all()

    def write_frame(self, frame):
        self.send(frame, None)

    def packets(self):
        with self._cond:
            return list(self._items)

    def clear(self):
        with self._cond:
            self._items.clear()

    def wait_for(self, count, timeout=3.0):
        with self._cond:
            return self._cond.wait_for(lambda: len(self._items) >= count, timeout)


class QueueFrameReader:
    def __init__(self):
        self._frames = queue.Queue()

    def push(self, frame):
        self._frames.put(frame)

    def finish(self):
        self._frames.put(None)

    def read_frame(self):
        try:
            frame = self._frames.get(timeout=5)
        except queue.Empty:
            raise EOFError from None
        if frame is None:
            raise EOFError
        return frame


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class _Echo(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            try:
                chunk = self.request.recv(65536)
            except OSError:
                return
            if not chunk:
                return
            self.request.sendall(chunk)


@pytest.fixture
def echo_port():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _Echo)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, daemon=True).start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


@pytest.fixture
def env():
    cipher = XorCipher()
    sender = RecordingSender()
    handler = UnifiedHandler(cipher, log_level="error", sender=sender.send)
    yield handler, cipher, sender
    handler.close()


def connect_request(req_id, port, data=b"", host="127.0.0.1"):
    return (
        bytes([TYPE_CONNECT])
        + struct.pack(">I", req_id)
        + bytes([NETWORK_TCP, ADDR_IPV4])
        + socket.inet_aton(host)
        + struct.pack(">H", port)
        + data
    )


def data_request(req_id, data):
    return bytes([TYPE_DATA]) + struct.pack(">I", req_id) + data


def close_request(req_id):
    return bytes([TYPE_CLOSE]) + struct.pack(">I", req_id)


def decode(cipher, data):
    resp = cipher.decrypt(data)
    return struct.unpack(">I", resp[1:5])[0], resp[5], resp[6:]


def unused_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


CLIENT = ("127.0.0.1", 12345)


@pytest.mark.parametrize(
    "name, level",
    [("debug", LogLevel.DEBUG), ("error", LogLevel.ERROR), ("info", LogLevel.INFO), ("other", LogLevel.INFO)],
)
def test_parse_log_level(name, level):
    assert parse_log_level(name) == level


def test_initial_stats(env):
    handler, _, _ = env
    assert handler.stats() == {"total_conns": 0, "active_conns": 0, "total_bytes": 0}
    assert handler.active_conns() == 0


@pytest.mark.parametrize("data", [b"", b"\x01\x02", b"\xff\xfe\xfd\xfc\xfb\xfa", bytes(100), None, b"\xff" * 1000])
def test_invalid_data_is_dropped(env, data):
    handler, _, sender = env
    assert handler.handle_packet(data, CLIENT) is None
    time.sleep(0.05)
    assert sender.packets() == []


@pytest.mark.parametrize(
    "plaintext",
    [b"\xff\x00\x00\x00\x01", b"\x01", b"\x01\x00\x00\x00\x01\x01"],
)
def test_invalid_protocol_is_dropped(env, plaintext):
    handler, cipher, sender = env
    assert handler.handle_packet(cipher.encrypt(plaintext), CLIENT) is None
    time.sleep(0.05)
    assert sender.packets() == []
    assert handler.active_conns() == 0


def test_corrupted_encryption_is_dropped(env):
    handler, cipher, sender = env
    encrypted = cipher.encrypt(connect_request(1, 80))
    middle = len(encrypted) // 2
    corruptions = [
        bytes([encrypted[0] ^ 0xFF]) + encrypted[1:],
        encrypted[:middle] + bytes([encrypted[middle] ^ 0xFF]) + encrypted[middle + 1:],
        encrypted[:-1] + bytes([encrypted[-1] ^ 0xFF]),
        encrypted[:middle],
        encrypted + b"\xab" * 100,
    ]
    for corrupted in corruptions:
        handler.handle_packet(corrupted, CLIENT)
    time.sleep(0.05)
    assert sender.packets() == []
    assert handler.stats()["total_conns"] == 0


def test_connect_success(env, echo_port):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(1001, echo_port)), CLIENT)
    assert sender.wait_for(1)
    data, addr = sender.packets()[0]
    req_id, status, payload = decode(cipher, data)
    assert (req_id, status, payload) == (1001, STATUS_OK, b"")
    assert addr == CLIENT
    assert handler.active_conns() == 1
    assert handler.stats()["total_conns"] == 1


def test_connect_failure(env):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(1002, unused_port())), CLIENT)
    assert sender.wait_for(1, timeout=12)
    req_id, status, _ = decode(cipher, sender.packets()[0][0])
    assert req_id == 1002
    assert status == STATUS_ERROR
    assert handler.active_conns() == 0


def test_data_is_echoed(env, echo_port):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(1003, echo_port)), CLIENT)
    assert sender.wait_for(1)
    sender.clear()

    message = b"Hello, Echo Server!"
    handler.handle_packet(cipher.encrypt(data_request(1003, message)), CLIENT)
    assert sender.wait_for(1)
    req_id, status, payload = decode(cipher, sender.packets()[0][0])
    assert req_id == 1003
    assert status == TYPE_DATA
    assert payload == message
    assert handler.stats()["total_bytes"] == 2 * len(message)


def test_close_releases_connection(env, echo_port):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(1004, echo_port)), CLIENT)
    assert sender.wait_for(1)
    assert handler.active_conns() == 1
    handler.handle_packet(cipher.encrypt(close_request(1004)), CLIENT)
    assert wait_until(lambda: handler.active_conns() == 0)


def test_data_without_connect(env):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(data_request(9999, b"orphan data")), CLIENT)
    time.sleep(0.1)
    assert sender.packets() == []
    assert handler.active_conns() == 0


def test_full_flow(env, echo_port):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(2001, echo_port)), CLIENT)
    assert sender.wait_for(1)
    assert decode(cipher, sender.packets()[0][0])[1] == STATUS_OK
    sender.clear()

    messages = [b"Hello", b"World", b"Test message with more data", b"Final message"]
    for i, msg in enumerate(messages):
        handler.handle_packet(cipher.encrypt(data_request(2001, msg)), CLIENT)
        assert sender.wait_for(i + 1)

    payloads = [decode(cipher, data)[2] for data, _ in sender.packets()]
    assert payloads == messages

    handler.handle_packet(cipher.encrypt(close_request(2001)), CLIENT)
    assert wait_until(lambda: handler.active_conns() == 0)


def test_connect_with_initial_data(env, echo_port):
    handler, cipher, sender = env
    initial = b"Initial payload in connect"
    handler.handle_packet(cipher.encrypt(connect_request(2002, echo_port, initial)), CLIENT)
    assert sender.wait_for(2)
    packets = [decode(cipher, data) for data, _ in sender.packets()]
    assert packets[0] == (2002, STATUS_OK, b"")
    assert packets[1] == (2002, TYPE_DATA, initial)


def test_concurrent_connections(env, echo_port):
    handler, cipher, sender = env

    def client(n):
        addr = ("127.0.0.1", 20000 + n)
        req_id = 3000 + n
        handler.handle_packet(cipher.encrypt(connect_request(req_id, echo_port)), addr)
        for j in range(5):
            handler.handle_packet(cipher.encrypt(data_request(req_id, f"Client {n}, Message {j}".encode())), addr)
            time.sleep(0.01)
        handler.handle_packet(cipher.encrypt(close_request(req_id)), addr)

    threads = [threading.Thread(target=client, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert wait_until(lambda: handler.active_conns() == 0)
    assert len(sender.packets()) >= 10
    assert handler.stats()["total_conns"] == 10


def test_concurrent_same_connection(env, echo_port):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(4001, echo_port)), CLIENT)
    assert sender.wait_for(1)

    def worker(n):
        for j in range(10):
            handler.handle_packet(cipher.encrypt(data_request(4001, f"Worker {n}, Iter {j}".encode())), CLIENT)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert handler.active_conns() == 1


def test_rapid_connect_close(env, echo_port):
    handler, cipher, _ = env
    for i in range(50):
        handler.handle_packet(cipher.encrypt(connect_request(5000 + i, echo_port)), CLIENT)
        handler.handle_packet(cipher.encrypt(close_request(5000 + i)), CLIENT)
    assert wait_until(lambda: handler.active_conns() == 0)
    assert handler.stats()["total_conns"] == 50


def test_multiple_clients(env, echo_port):
    handler, cipher, sender = env
    clients = [("127.0.0.1", 30001), ("127.0.0.1", 30002), ("127.0.0.1", 30003)]
    for i, addr in enumerate(clients):
        handler.handle_packet(cipher.encrypt(connect_request(6000 + i, echo_port)), addr)
    assert sender.wait_for(3)
    assert handler.active_conns() == 3
    assert sorted(addr for _, addr in sender.packets()) == clients


def test_large_data_packet(env, echo_port):
    handler, cipher, sender = env
    handler.handle_packet(cipher.encrypt(connect_request(8001, echo_port)), CLIENT)
    assert sender.wait_for(1)
    sender.clear()

    large = b"X" * (30 * 1024)
    handler.handle_packet(cipher.encrypt(data_request(8001, large)), CLIENT)

    def received():
        return b"".join(decode(cipher, data)[2] for data, _ in sender.packets())

    assert wait_until(lambda: len(received()) >= len(large), timeout=5)
    assert received() == large


def test_replacing_sender(env, echo_port):
    handler, cipher, old_sender = env
    new_sender = RecordingSender()
    handler.sender = new_sender.send
    handler.handle_packet(cipher.encrypt(connect_request(7001, echo_port)), CLIENT)
    assert new_sender.wait_for(1)
    assert old_sender.packets() == []


def test_missing_sender_still_connects(echo_port):
    cipher = XorCipher()
    with UnifiedHandler(cipher, log_level="error") as handler:
        handler.handle_packet(cipher.encrypt(connect_request(7002, echo_port)), CLIENT)
        assert handler.active_conns() == 1
    assert handler.active_conns() == 0


def test_close_shuts_all_connections(env, echo_port):
    handler, cipher, sender = env
    for i in range(3):
        handler.handle_packet(cipher.encrypt(connect_request(7100 + i, echo_port)), CLIENT)
    assert sender.wait_for(3)
    handler.close()
    assert handler.active_conns() == 0


def test_cleanup_removes_idle_connections_and_sessions(echo_port):
    cipher = XorCipher()
    sender = RecordingSender()
    clock = FakeClock()
    with UnifiedHandler(cipher, log_level="error", sender=sender.send, clock=clock) as handler:
        handler.handle_packet(cipher.encrypt(connect_request(7200, echo_port)), CLIENT)
        assert sender.wait_for(1)
        assert handler.cleanup() == (0, 0)

        clock.now += 301
        assert handler.cleanup() == (1, 0)
        assert handler.active_conns() == 0

        clock.now += 300
        assert handler.cleanup() == (0, 1)
        assert handler.cleanup() == (0, 0)


def test_stream_proxy_flow(env, echo_port):
    handler, cipher, _ = env
    reader = QueueFrameReader()
    writer = RecordingSender()
    reader.push(cipher.encrypt(connect_request(11, echo_port)))

    worker = threading.Thread(target=handler.handle_connection, args=(reader, writer, ("127.0.0.1", 40000)))
    worker.start()

    assert writer.wait_for(1)
    assert decode(cipher, writer.packets()[0][0]) == (11, STATUS_OK, b"")
    assert handler.active_conns() == 1

    reader.push(cipher.encrypt(data_request(11, b"ping")))
    assert writer.wait_for(2)
    assert decode(cipher, writer.packets()[1][0]) == (11, TYPE_DATA, b"ping")

    reader.push(cipher.encrypt(close_request(11)))
    worker.join(5)
    assert not worker.is_alive()
    assert decode(cipher, writer.packets()[-1][0])[1] == TYPE_CLOSE
    assert handler.active_conns() == 0


def test_stream_connect_failure(env):
    handler, cipher, _ = env
    reader = QueueFrameReader()
    writer = RecordingSender()
    reader.push(cipher.encrypt(connect_request(12, unused_port())))
    handler.handle_connection(reader, writer, ("127.0.0.1", 40001))
    frames = [decode(cipher, data) for data, _ in writer.packets()]
    assert frames == [(12, STATUS_ERROR, b"")]
    assert handler.active_conns() == 0


def test_stream_close_before_connect(env):
    handler, cipher, _ = env
    reader = QueueFrameReader()
    writer = RecordingSender()
    leftover = cipher.encrypt(connect_request(13, 80))
    reader.push(cipher.encrypt(data_request(13, b"stray")))
    reader.push(cipher.encrypt(b"\xff\x00\x00\x00\x01"))
    reader.push(cipher.encrypt(close_request(13)))
    reader.push(leftover)
    handler.handle_connection(reader, writer, ("127.0.0.1", 40002))
    assert writer.packets() == []
    assert reader.read_frame() == leftover


def test_stream_bad_frame_ends_session(env):
    handler, cipher, _ = env
    reader = QueueFrameReader()
    writer = RecordingSender()
    leftover = cipher.encrypt(connect_request(14, 80))
    reader.push(b"not a valid ciphertext at all")
    reader.push(leftover)
    handler.handle_connection(reader, writer, ("127.0.0.1", 40003))
    assert writer.packets() == []
    assert handler.stats()["active_conns"] == 0
    assert reader.read_frame() == leftover


def test_stream_eof_ends_session(env):
    handler, cipher, _ = env
    reader = QueueFrameReader()
    writer = RecordingSender()
    reader.push(cipher.encrypt(data_request(15, b"orphan")))
    reader.finish()
    handler.handle_connection(reader, writer, ("127.0.0.1", 40004))
    assert writer.packets() == []
    assert handler.active_conns() == 0