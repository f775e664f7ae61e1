"""Reconciliation of the LoadBalancer Service and Endpoints behind a Gateway."""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Any, Iterator

import httpx

from blixt.controlplane import (
    BLIXT_FIELD_MANAGER,
    GATEWAY_SERVICE_LABEL,
    ApiError,
    InvalidConfigError,
    KubeError,
    LoadBalancerError,
    NamespacedName,
)

log = logging.getLogger(__name__)

GATEWAY_API_VERSION = "gateway.networking.k8s.io/v1"
APPLY_PATCH = "application/apply-patch+yaml"
STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"

_TCP_PROTOCOLS = ("TCP", "HTTP", "HTTPS")


@contextmanager
def _kube_errors() -> Iterator[None]:
    """Turn failures of the API client into KubeError."""
    try:
        yield
    except (ApiError, httpx.HTTPError) as exc:
        raise KubeError(exc) from exc


def _services_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/services"


def _service_path(namespace: str, name: str) -> str:
    return f"{_services_path(namespace)}/{name}"


def _endpoints_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/endpoints"


def _gateway_status_path(namespace: str, name: str) -> str:
    return f"/apis/{GATEWAY_API_VERSION}/namespaces/{namespace}/gateways/{name}/status"


def _desired_ports(gateway: dict[str, Any]) -> list[dict[str, Any]]:
    ports = []
    for listener in (gateway.get("spec") or {}).get("listeners") or []:
        protocol = listener.get("protocol")
        if protocol in _TCP_PROTOCOLS:
            service_protocol = "TCP"
        elif protocol == "UDP":
            service_protocol = "UDP"
        else:
            continue
        ports.append(
            {
                "name": listener.get("name"),
                "port": listener.get("port"),
                "protocol": service_protocol,
            }
        )
    return ports


def _port_identity(port: dict[str, Any]) -> tuple[Any, Any, Any]:
    return port.get("name"), port.get("port"), port.get("protocol")


def update_service_for_gateway(gateway, svc) -> bool:
    """Bring ``svc`` in line with what ``gateway`` asks for.

    Returns True when an existing setting of the service had to change.
    """
    ports = _desired_ports(gateway)

    address = None
    addresses = (gateway.get("spec") or {}).get("addresses")
    if addresses:
        first = addresses[0]
        addr_type = first.get("type")
        if addr_type is not None and addr_type != "IPAddress":
            raise InvalidConfigError(
                f"addresses of type {addr_type} are not supported; "
                "only type IPAddress is supported"
            )
        address = copy.deepcopy(first)
        if len(addresses) > 1:
            log.warning("multiple addresses")

    spec = svc.get("spec")
    if spec is None:
        raise LoadBalancerError("Loadbalancer service does not have a spec")

    updated = False
    lb_ip = spec.get("loadBalancerIP")
    if address is not None and lb_ip is not None and lb_ip != address.get("value"):
        spec["loadBalancerIP"] = address.get("value")
        updated = True
    if address is None and lb_ip is not None:
        spec.pop("loadBalancerIP", None)
        updated = True

    if "type" in spec and spec["type"] is not None:
        if spec["type"] != "LoadBalancer":
            spec["type"] = "LoadBalancer"
            updated = True
    else:
        spec["type"] = "LoadBalancer"

    current_ports = spec.get("ports")
    if current_ports is not None:
        differs = len(current_ports) != len(ports) or any(
            _port_identity(have) != _port_identity(want)
            for have, want in zip(current_ports, ports)
        )
        if differs:
            spec["ports"] = ports
            updated = True
    else:
        spec["ports"] = ports

    return updated


def get_service_key(service) -> NamespacedName:
    """The name and namespace of a service; raises LoadBalancerError if unset."""
    metadata = service.get("metadata") or {}
    name = metadata.get("name")
    if name is None:
        raise LoadBalancerError("Loadbalancer service name not found")
    namespace = metadata.get("namespace")
    if namespace is None:
        raise LoadBalancerError("Loadblancer service namespace not found")
    return NamespacedName(name=name, namespace=namespace)


def check_if_not_found_err(error) -> bool:
    """Whether ``error`` is the API server reporting that an object does not exist."""
    if isinstance(error, KubeError):
        error = error.source
    return isinstance(error, ApiError) and error.code == 404


def create_svc_for_gateway(ctx, gateway):
    """Create the LoadBalancer Service for ``gateway`` and return it as stored."""
    metadata = gateway.get("metadata") or {}
    namespace = metadata.get("namespace") or "default"
    gateway_name = metadata.get("name") or ""
    svc = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "namespace": namespace,
            "generateName": f"service-for-gateway-{gateway_name}-",
            "labels": {GATEWAY_SERVICE_LABEL: gateway_name},
        },
        "spec": {},
        "status": {},
    }
    update_service_for_gateway(gateway, svc)
    with _kube_errors():
        return ctx.client.create(_services_path(namespace), svc)


def create_endpoint_if_not_exists(ctx, key, svc_spec, svc_status):
    """Create an Endpoints object pointing at the service's ingress IP.

    The service has no selector, so nothing else creates one, and MetalLB
    does not answer ARP for the address until it exists. Returns the created
    object, or None when it already existed.
    """
    lb_status = (svc_status or {}).get("loadBalancer")
    if lb_status is None:
        raise LoadBalancerError("Load balancer not found in service status")
    ingress = lb_status.get("ingress")
    if ingress is None:
        raise LoadBalancerError("Ingress not found in service status")
    lb_addr = next((entry["ip"] for entry in ingress if entry.get("ip")), None)
    if lb_addr is None:
        raise LoadBalancerError("LoadBalancer ingress ip not found in service status")

    path = _endpoints_path(key.namespace)
    try:
        ctx.client.get(f"{path}/{key.name}")
    except (ApiError, httpx.HTTPError) as exc:
        if not check_if_not_found_err(exc):
            log.debug("could not look up Endpoints %s: %s", key.name, exc)
            return None
    else:
        return None

    ports = []
    for port in (svc_spec or {}).get("ports") or []:
        ep_port: dict[str, Any] = {"port": port.get("port")}
        if port.get("protocol") is not None:
            ep_port["protocol"] = port["protocol"]
        ports.append(ep_port)

    endpoints = {
        "apiVersion": "v1",
        "kind": "Endpoints",
        "metadata": {"name": key.name, "namespace": key.namespace},
        "subsets": [{"addresses": [{"ip": lb_addr}], "ports": ports}],
    }
    with _kube_errors():
        created = ctx.client.create(path, endpoints)
    log.info(
        "created Endpoints object %s", (created.get("metadata") or {}).get("name")
    )
    return created


def patch_status(ctx, namespace, name, status) -> None:
    """Apply the gateway's listeners, conditions and addresses as its status."""
    status = status or {}
    body = {
        "apiVersion": GATEWAY_API_VERSION,
        "kind": "Gateway",
        "status": {
            "listeners": status.get("listeners") or [],
            "conditions": status.get("conditions") or [],
            "addresses": status.get("addresses") or [],
        },
    }
    with _kube_errors():
        ctx.client.patch(
            _gateway_status_path(namespace, name),
            body,
            content_type=APPLY_PATCH,
            params={"fieldManager": BLIXT_FIELD_MANAGER, "force": "true"},
        )