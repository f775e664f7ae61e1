"""The ``backends`` gRPC service that programs the dataplane's maps."""

from __future__ import annotations

import threading
from ipaddress import IPv4Address

import grpc

from blixt.backends import (
    BackendsServicer,
    Confirmation,
    InterfaceIndexConfirmation,
)
from blixt.common import BACKENDS_ARRAY_CAPACITY, Backend, BackendKey, BackendList
from blixt.netutils import if_index_for_routing_ip

_IFINDEX_MASK = 0xFFFF


class BackendService(BackendsServicer):
    """Keeps the gateway backend, round-robin index and connection maps in step."""

    def __init__(
        self,
        backends_map,
        gateway_indexes_map,
        tcp_conns_map,
        resolve_ifindex=if_index_for_routing_ip,
    ):
        self.backends_map = backends_map
        self.gateway_indexes_map = gateway_indexes_map
        self.tcp_conns_map = tcp_conns_map
        self._resolve_ifindex = resolve_ifindex
        self._backends_lock = threading.Lock()
        self._indexes_lock = threading.Lock()
        self._conns_lock = threading.Lock()

    def insert(self, key, bks) -> None:
        """Store the backends of a gateway."""
        with self._backends_lock:
            self.backends_map[key] = bks

    def insert_and_reset_index(self, key, bks) -> None:
        """Store the backends of a gateway and restart its round robin."""
        self.insert(key, bks)
        with self._indexes_lock:
            self.gateway_indexes_map[key] = 0

    def remove(self, key) -> None:
        """Forget a gateway and every tracked connection that it served.

        Raises KeyError when the gateway is not known.
        """
        with self._backends_lock:
            del self.backends_map[key]
        with self._indexes_lock:
            del self.gateway_indexes_map[key]
        # Connections may outlive their route; without this they would stay forever.
        with self._conns_lock:
            stale = [
                client_key
                for client_key, mapping in list(self.tcp_conns_map.items())
                if mapping.backend_key == key
            ]
            for client_key in stale:
                del self.tcp_conns_map[client_key]

    def get_interface_index(self, request, context):
        try:
            ifindex = self._resolve_ifindex(IPv4Address(request.ip))
        except Exception as err:
            context.abort(grpc.StatusCode.INTERNAL, str(err))
        return InterfaceIndexConfirmation(ifindex=ifindex)

    def update(self, request, context):
        vip = request.vip
        if vip is None:
            context.abort(grpc.StatusCode.INVALID_ARGUMENT, "missing vip ip and port")
        key = BackendKey(ip=vip.ip, port=vip.port)

        backends = []
        for target in request.targets:
            ifindex = target.ifindex
            if ifindex is None:
                try:
                    ifindex = self._resolve_ifindex(IPv4Address(target.daddr))
                except Exception as err:
                    context.abort(
                        grpc.StatusCode.INTERNAL, f"failed to determine ifindex: {err}"
                    )
            if len(backends) >= BACKENDS_ARRAY_CAPACITY:
                context.abort(
                    grpc.StatusCode.RESOURCE_EXHAUSTED,
                    "BPF map value capacity exceeded, only "
                    f"{BACKENDS_ARRAY_CAPACITY} backends supported per Gateway",
                )
            backends.append(
                Backend(
                    daddr=target.daddr,
                    dport=target.dport,
                    ifindex=ifindex & _IFINDEX_MASK,
                )
            )

        try:
            self.insert_and_reset_index(key, BackendList(backends))
        except Exception as err:
            context.abort(grpc.StatusCode.INTERNAL, f"failure: {err}")
        return Confirmation(
            confirmation=(
                f"success, vip {IPv4Address(vip.ip)}:{vip.port} "
                f"was updated with {len(backends)} backends"
            )
        )

    def delete(self, request, context):
        key = BackendKey(ip=request.ip, port=request.port)
        vip_text = f"{IPv4Address(request.ip)}:{request.port}"
        try:
            self.remove(key)
        except KeyError:
            return Confirmation(confirmation=f"success, vip {vip_text} did not exist")
        except Exception as err:
            context.abort(grpc.StatusCode.INTERNAL, f"failure: {err}")
        return Confirmation(confirmation=f"success, vip {vip_text} was deleted")