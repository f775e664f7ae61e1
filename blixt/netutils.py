"""Route lookups over rtnetlink: which interface an IPv4 address is reached through."""

from __future__ import annotations

import ipaddress
import os
import socket
import struct

NETLINK_ROUTE = 0
_AF_NETLINK = getattr(socket, "AF_NETLINK", 16)

NLMSG_ERROR = 2
RTM_NEWROUTE = 24
RTM_GETROUTE = 26
NLM_F_REQUEST = 0x1
RT_TABLE_MAIN = 254
RTM_F_LOOKUP_TABLE = 0x1000
RTA_DST = 1
RTA_OIF = 4

_NLMSG_HEADER = struct.Struct("=IHHII")
_RTMSG = struct.Struct("=BBBBBBBBI")
_RTATTR = struct.Struct("=HH")
_NLMSGERR = struct.Struct("=i")

_RECV_BUFFER = 65536

ERR_NO_IFINDEX = "no ifindex found to route"


class RoutingError(OSError):
    """The kernel could not tell which interface routes an address."""


def _align(length: int) -> int:
    return (length + 3) & ~3


def build_route_request(ip_addr, seq=0) -> bytes:
    """Encode an RTM_GETROUTE request for a single IPv4 destination."""
    address = ipaddress.IPv4Address(ip_addr)
    rtmsg = _RTMSG.pack(
        socket.AF_INET, 32, 0, 0, RT_TABLE_MAIN, 0, 0, 0, RTM_F_LOOKUP_TABLE
    )
    dst = address.packed
    attribute = _RTATTR.pack(_RTATTR.size + len(dst), RTA_DST) + dst
    payload = rtmsg + attribute
    length = _NLMSG_HEADER.size + len(payload)
    header = _NLMSG_HEADER.pack(length, RTM_GETROUTE, NLM_F_REQUEST, seq, 0)
    return header + payload


def parse_route_response(data) -> int | None:
    """Return the output interface index from the first message of a reply.

    Returns None when the reply is not a route or carries no output interface.
    Raises RoutingError for malformed replies and kernel error messages.
    """
    data = bytes(data)
    if len(data) < _NLMSG_HEADER.size:
        raise RoutingError("netlink reply is too short")
    length, msg_type, _flags, _seq, _pid = _NLMSG_HEADER.unpack_from(data)
    if length < _NLMSG_HEADER.size or length > len(data):
        raise RoutingError("netlink reply has an invalid length")
    body = data[_NLMSG_HEADER.size:length]

    if msg_type == NLMSG_ERROR:
        if len(body) < _NLMSGERR.size:
            raise RoutingError("truncated netlink error message")
        (error,) = _NLMSGERR.unpack_from(body)
        if error == 0:
            return None
        raise RoutingError(-error, f"netlink error: {os.strerror(-error)}")
    if msg_type != RTM_NEWROUTE:
        return None
    if len(body) < _RTMSG.size:
        raise RoutingError("truncated route message")

    pos = _RTMSG.size
    while pos + _RTATTR.size <= len(body):
        attr_len, attr_type = _RTATTR.unpack_from(body, pos)
        if attr_len < _RTATTR.size or pos + attr_len > len(body):
            raise RoutingError("malformed route attribute")
        value = body[pos + _RTATTR.size:pos + attr_len]
        if attr_type == RTA_OIF:
            if len(value) < 4:
                raise RoutingError("truncated output interface attribute")
            return struct.unpack_from("=I", value)[0]
        pos += _align(attr_len)
    return None


def if_index_for_routing_ip(ip_addr) -> int:
    """Return the index of the interface the kernel routes ``ip_addr`` through.

    Works like ``ip route get to $IP``.
    """
    address = ipaddress.IPv4Address(ip_addr)
    request = build_route_request(address)
    try:
        with socket.socket(_AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE) as sock:
            sock.connect((0, 0))
            sock.send(request)
            reply = sock.recv(_RECV_BUFFER)
    except RoutingError:
        raise
    except OSError as exc:
        raise RoutingError(f"route lookup for {address} failed: {exc}") from exc

    ifindex = parse_route_response(reply)
    if ifindex is None:
        raise RoutingError(f"{ERR_NO_IFINDEX} {address}")
    return ifindex