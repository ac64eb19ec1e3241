"""Wire format of tunnel requests and responses."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass

TYPE_CONNECT = 0x01
TYPE_DATA = 0x02
TYPE_CLOSE = 0x03

ADDR_IPV4 = 0x01
ADDR_DOMAIN = 0x03
ADDR_IPV6 = 0x04

NETWORK_TCP = 0x01
NETWORK_UDP = 0x02

STATUS_OK = 0x00
STATUS_ERROR = 0x01

_HEADER_LEN = 5
_ARQ_MIN_LEN = 18


class ProtocolError(ValueError):
    """Raised when a request cannot be decoded."""


@dataclass
class Request:
    """A decoded client request."""

    type: int
    req_id: int
    network: int = 0
    address: str = ""
    port: int = 0
    data: bytes = b""

    def target_addr(self) -> str:
        """Return ``address:port``, or an empty string when no address is set."""
        if not self.address:
            return ""
        return f"{self.address}:{self.port}"

    def network_string(self) -> str:
        """Return the network name used to dial the target."""
        if self.network == NETWORK_TCP:
            return "tcp"
        if self.network == NETWORK_UDP:
            return "udp"
        return "unknown"


def parse_request(data: bytes) -> Request:
    """Decode ``Type(1) + ReqID(4) + [connect header] + [payload]``."""
    data = bytes(data)
    if len(data) < _HEADER_LEN:
        raise ProtocolError(f"request too short: {len(data)} bytes")

    kind = data[0]
    req_id = int.from_bytes(data[1:_HEADER_LEN], "big")
    body = data[_HEADER_LEN:]

    if kind == TYPE_CONNECT:
        return _parse_connect(kind, req_id, body)
    if kind == TYPE_DATA:
        return Request(type=kind, req_id=req_id, data=body)
    if kind == TYPE_CLOSE:
        return Request(type=kind, req_id=req_id)
    raise ProtocolError(f"unknown request type: {kind}")


def _format_ip(raw: bytes) -> str:
    if len(raw) == 4:
        return str(ipaddress.IPv4Address(raw))
    addr = ipaddress.IPv6Address(raw)
    mapped = addr.ipv4_mapped
    return str(mapped) if mapped is not None else str(addr)


def _parse_connect(kind: int, req_id: int, body: bytes) -> Request:
    if len(body) < 4:
        raise ProtocolError("connect header too short")

    network = body[0]
    addr_type = body[1]
    offset = 2

    if addr_type == ADDR_IPV4:
        if len(body) < offset + 4 + 2:
            raise ProtocolError("truncated IPv4 address")
        address = _format_ip(body[offset:offset + 4])
        offset += 4
    elif addr_type == ADDR_IPV6:
        if len(body) < offset + 16 + 2:
            raise ProtocolError("truncated IPv6 address")
        address = _format_ip(body[offset:offset + 16])
        offset += 16
    elif addr_type == ADDR_DOMAIN:
        domain_len = body[offset]
        offset += 1
        if len(body) < offset + domain_len + 2:
            raise ProtocolError("truncated domain name")
        address = body[offset:offset + domain_len].decode("utf-8", errors="replace")
        offset += domain_len
    else:
        raise ProtocolError(f"unknown address type: {addr_type}")

    port = int.from_bytes(body[offset:offset + 2], "big")
    offset += 2

    return Request(
        type=kind,
        req_id=req_id,
        network=network,
        address=address,
        port=port,
        data=body[offset:],
    )


def build_response(req_id: int, status: int, data: bytes = b"") -> bytes:
    """Encode ``Type(1) + ReqID(4) + Status(1) + [payload]``."""
    return struct.pack(">BIB", TYPE_DATA, req_id, status) + bytes(data or b"")


def is_arq_packet(data: bytes) -> bool:
    """Tell whether ``data`` looks like an ARQ segment rather than a request."""
    if len(data) < _ARQ_MIN_LEN:
        return False
    return data[0] not in (TYPE_CONNECT, TYPE_DATA, TYPE_CLOSE)