"""Computation of Gateway status: listener conditions, acceptance and addresses."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from blixt.controlplane import InvalidConfigError

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
_TCP_PROTOCOLS = ("TCP", "HTTP", "HTTPS")


class GatewayConditionType(str, Enum):
    ACCEPTED = "Accepted"
    PROGRAMMED = "Programmed"


class GatewayConditionReason(str, Enum):
    ACCEPTED = "Accepted"
    PROGRAMMED = "Programmed"
    ADDRESS_NOT_ASSIGNED = "AddressNotAssigned"
    LISTENERS_NOT_VALID = "ListenersNotValid"
    UNSUPPORTED_ADDRESS = "UnsupportedAddress"


class ListenerConditionType(str, Enum):
    RESOLVED_REFS = "ResolvedRefs"
    ACCEPTED = "Accepted"
    PROGRAMMED = "Programmed"


class ListenerConditionReason(str, Enum):
    RESOLVED_REFS = "ResolvedRefs"
    ACCEPTED = "Accepted"
    INVALID_ROUTE_KINDS = "InvalidRouteKinds"
    INVALID = "Invalid"
    UNSUPPORTED_PROTOCOL = "UnsupportedProtocol"


def now_timestamp() -> str:
    """The current time in the RFC 3339 form used by Kubernetes conditions."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _condition(type_, status, reason, message, generation, now) -> dict[str, Any]:
    condition = {
        "type": type_.value,
        "status": status,
        "reason": reason.value,
        "message": message,
        "lastTransitionTime": now,
    }
    if generation is not None:
        condition["observedGeneration"] = generation
    return condition


def _set_generation(condition: dict[str, Any], generation: int | None) -> None:
    if generation is None:
        condition.pop("observedGeneration", None)
    else:
        condition["observedGeneration"] = generation


def set_gateway_status_addresses(gateway, svc_status) -> None:
    """Record the service's load balancer ingress IPs as the gateway's addresses."""
    ingress = ((svc_status or {}).get("loadBalancer") or {}).get("ingress") or []
    addresses = [
        {"type": "IPAddress", "value": entry["ip"]} for entry in ingress if entry.get("ip")
    ]
    if gateway.get("status") is None:
        gateway["status"] = {}
    gateway["status"]["addresses"] = addresses


def get_ingress_ip_len(svc_status) -> int:
    """The number of ingress entries on a LoadBalancer service's status."""
    ingress = ((svc_status or {}).get("loadBalancer") or {}).get("ingress")
    return len(ingress) if ingress else 0


def set_condition(gateway, new_cond) -> None:
    """Set a condition on the gateway's status.

    A condition of the same type and status only has its observed generation
    refreshed; a gateway without a status is left alone.
    """
    status = gateway.get("status")
    if status is None:
        return
    conditions = status.get("conditions")
    if conditions is None:
        status["conditions"] = [new_cond]
        return
    for index, condition in enumerate(conditions):
        if condition.get("type") == new_cond.get("type"):
            if condition.get("status") == new_cond.get("status"):
                _set_generation(condition, new_cond.get("observedGeneration"))
            else:
                conditions[index] = new_cond
            return
    conditions.append(new_cond)


def get_accepted_condition(gateway, now=None) -> dict[str, Any]:
    """Build the gateway's "Accepted" condition from its listeners and addresses."""
    now = now or now_timestamp()
    accepted = _condition(
        GatewayConditionType.ACCEPTED,
        "True",
        GatewayConditionReason.ACCEPTED,
        "Blixt accepts responsibility for this Gateway",
        (gateway.get("metadata") or {}).get("generation"),
        now,
    )

    listeners = (gateway.get("status") or {}).get("listeners") or []
    for listener in listeners:
        for condition in listener.get("conditions") or []:
            if condition.get("status") == "False":
                accepted["status"] = "False"
                accepted["reason"] = GatewayConditionReason.LISTENERS_NOT_VALID.value
                accepted["message"] = f"listener {listener.get('name')} is invalid"

    for address in (gateway.get("spec") or {}).get("addresses") or []:
        addr_type = address.get("type")
        if addr_type is not None and addr_type != "IPAddress":
            accepted["status"] = "False"
            accepted["reason"] = GatewayConditionReason.UNSUPPORTED_ADDRESS.value
            accepted["message"] = (
                f"found an addres of type {addr_type}, only type IPAddress is supported"
            )
            break
    return accepted


def _merge_listener_conditions(new, current, generation):
    merged = []
    for condition in new:
        matches = [c for c in current if c.get("type") == condition["type"]]
        if not matches:
            merged.append(condition)
            continue
        for existing in matches:
            if existing.get("status") == condition["status"]:
                kept = copy.deepcopy(existing)
                _set_generation(kept, generation)
                merged.append(kept)
            else:
                merged.append(dict(condition))
    return merged


def set_listener_status(gateway, now=None) -> None:
    """Compute the status of every listener of the gateway.

    Conditions whose status did not change keep their transition time.
    Raises InvalidConfigError when the gateway has no generation.
    """
    status = gateway.get("status")
    current = {
        listener["name"]: listener
        for listener in (status or {}).get("listeners") or []
    }
    generation = (gateway.get("metadata") or {}).get("generation")
    if generation is None:
        raise InvalidConfigError("Gateway generation not found")

    statuses = []
    for listener in (gateway.get("spec") or {}).get("listeners") or []:
        supported_kinds, conditions = get_listener_status(listener, generation, now)
        existing = current.get(listener["name"])
        if existing is not None:
            conditions = _merge_listener_conditions(
                conditions, existing.get("conditions") or [], generation
            )
        statuses.append(
            {
                "name": listener["name"],
                "attachedRoutes": 0,
                "supportedKinds": supported_kinds,
                "conditions": conditions,
            }
        )

    if status is not None:
        status["listeners"] = statuses


def get_listener_status(listener, generation, now=None):
    """Return the supported route kinds and the conditions of one listener."""
    now = now or now_timestamp()
    conditions = [
        _condition(
            ListenerConditionType.RESOLVED_REFS,
            "True",
            ListenerConditionReason.RESOLVED_REFS,
            "All references resolved",
            generation,
            now,
        ),
        _condition(
            ListenerConditionType.ACCEPTED,
            "True",
            ListenerConditionReason.ACCEPTED,
            "Listener is valid",
            generation,
            now,
        ),
        _condition(
            ListenerConditionType.PROGRAMMED,
            "True",
            ListenerConditionType.PROGRAMMED,
            "Listener is valid",
            generation,
            now,
        ),
    ]

    def mark_false(index: int, reason: ListenerConditionReason, message: str) -> None:
        conditions[index].update(status="False", reason=reason.value, message=message)

    protocol = listener.get("protocol", "")
    kinds = (listener.get("allowedRoutes") or {}).get("kinds")
    supported_kinds = []

    if protocol in _TCP_PROTOCOLS or protocol == "UDP":
        # HTTP and HTTPS are accepted as TCP so that conformance tests pass.
        route_kind = "UDPRoute" if protocol == "UDP" else "TCPRoute"
        supported_kinds.append({"group": GATEWAY_API_GROUP, "kind": route_kind})
        if kinds is not None:
            message = check_route_kinds(route_kind, kinds)
            if message is not None:
                mark_false(0, ListenerConditionReason.INVALID_ROUTE_KINDS, message)
                mark_false(1, ListenerConditionReason.INVALID_ROUTE_KINDS, message)
                mark_false(2, ListenerConditionReason.INVALID, message)
    else:
        unsupported = f"Unsupported protocol: {protocol}, must be one of TCP or UDP"
        mark_false(1, ListenerConditionReason.UNSUPPORTED_PROTOCOL, unsupported)
        if kinds is not None:
            message = check_route_kinds("UDPRoute", kinds)
            if message is not None:
                mark_false(0, ListenerConditionReason.INVALID_ROUTE_KINDS, message)
        mark_false(2, ListenerConditionReason.INVALID, unsupported)

    return supported_kinds, conditions


def check_route_kinds(kind, rgks) -> str | None:
    """Explain why the allowed route kinds are unsupported, or return None."""
    if not rgks:
        return None
    if len(rgks) > 1:
        return "Multiple route kinds for a single listener is unsupported"

    rgk = rgks[0]
    rgk_kind = rgk.get("kind")
    if kind is not None:
        if rgk_kind != kind:
            return f"Unsupported route kind {rgk_kind}; only {kind} is supported"
    else:
        # Without a required kind every route kind is reported as unsupported.
        return f"Unsupported route kind {rgk_kind}; can be one of TCPRoute or UDPRoute"

    group = rgk.get("group")
    if group is not None and group != GATEWAY_API_GROUP:
        return f"Unsupported API group: {group}"
    return None