"""A command-line client that updates or deletes a VIP on the dataplane API."""

from __future__ import annotations

import ipaddress

import grpc

from blixt.backends import BackendsStub, Target, Targets, Vip


def _server_target(server_ip: str, server_port: int) -> str:
    address = ipaddress.ip_address(server_ip)
    port = int(server_port)
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"invalid port number {server_port}")
    host = f"[{address}]" if address.version == 6 else str(address)
    return f"{host}:{port}"


def update(
    server_ip="127.0.0.1",
    server_port=9874,
    vip_ip="127.0.0.1",
    vip_port=8080,
    daddr="127.0.0.1",
    dport=8080,
    ifindex=0,
    delete=False,
) -> str:
    """Send an Update (or Delete) for one VIP and return the server's confirmation.

    Raises ValueError for malformed addresses and grpc.RpcError when the call fails.
    """
    target = _server_target(server_ip, server_port)
    vip = Vip(ip=int(ipaddress.IPv4Address(vip_ip)), port=vip_port)
    backend_addr = int(ipaddress.IPv4Address(daddr))

    with grpc.insecure_channel(target) as channel:
        client = BackendsStub(channel)
        if delete:
            confirmation = client.delete(vip).confirmation
            print(f"grpc server responded to DELETE: {confirmation}")
        else:
            request = Targets(
                vip=vip,
                targets=[Target(daddr=backend_addr, dport=dport, ifindex=ifindex)],
            )
            confirmation = client.update(request).confirmation
            print(f"grpc server responded to UPDATE: {confirmation}")
    return confirmation