"""The Gateway controller: reconciles Gateways into LoadBalancer Services."""

from __future__ import annotations

import argparse
import copy
import json
import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import Any

import httpx

from blixt.controlplane import (
    GATEWAY_CLASS_CONTROLLER_NAME,
    GATEWAY_SERVICE_LABEL,
    ApiError,
    Context,
    ControlPlaneError,
    CRDNotFoundError,
    InvalidConfigError,
    KubeClient,
    LoadBalancerError,
)
from blixt.gateway_service import (
    GATEWAY_API_VERSION,
    STRATEGIC_MERGE_PATCH,
    _kube_errors,
    _service_path,
    _services_path,
    create_endpoint_if_not_exists,
    create_svc_for_gateway,
    get_service_key,
    patch_status,
    update_service_for_gateway,
)
from blixt.gateway_status import (
    GatewayConditionReason,
    GatewayConditionType,
    get_accepted_condition,
    get_ingress_ip_len,
    now_timestamp,
    set_condition,
    set_gateway_status_addresses,
    set_listener_status,
)

log = logging.getLogger(__name__)

_GATEWAYS_PATH = f"/apis/{GATEWAY_API_VERSION}/gateways"
_POLL_INTERVAL = 2.0
_REQUEUE_SUCCESS = 60.0
_REQUEUE_ERROR = 5.0


@dataclass(frozen=True)
class Action:
    """What to do with a gateway after it was reconciled."""

    requeue_after: float | None = None

    @classmethod
    def requeue(cls, seconds: float) -> Action:
        """Reconcile again after ``seconds``."""
        return cls(requeue_after=seconds)

    @classmethod
    def await_change(cls) -> Action:
        """Reconcile again only once the gateway changes."""
        return cls(requeue_after=None)


def _gateway_class_path(name: str) -> str:
    return f"/apis/{GATEWAY_API_VERSION}/gatewayclasses/{name}"


def _programmed(status, reason, message, generation, now) -> dict[str, Any]:
    condition = {
        "type": GatewayConditionType.PROGRAMMED.value,
        "status": status,
        "reason": reason.value,
        "message": message,
        "lastTransitionTime": now,
    }
    if generation is not None:
        condition["observedGeneration"] = generation
    return condition


def reconcile(gateway, ctx) -> Action:
    """Drive one gateway towards its desired state and record its status."""
    start = time.monotonic()
    metadata = gateway.get("metadata") or {}
    name = metadata.get("name")
    if name is None:
        raise InvalidConfigError("invalid name")
    ns = metadata.get("namespace")
    if ns is None:
        raise InvalidConfigError("invalid namespace")
    generation = metadata.get("generation")
    spec = gateway.get("spec") or {}
    gw = copy.deepcopy(gateway)

    with _kube_errors():
        gateway_class = ctx.client.get(
            _gateway_class_path(spec.get("gatewayClassName", ""))
        )
    if (gateway_class.get("spec") or {}).get("controllerName") != (
        GATEWAY_CLASS_CONTROLLER_NAME
    ):
        return Action.await_change()
    log.debug(
        "found a supported GatewayClass: %s",
        (gateway_class.get("metadata") or {}).get("name"),
    )

    def publish() -> None:
        patch_status(ctx, ns, name, gw.get("status") or {})

    set_listener_status(gw)
    accepted = get_accepted_condition(gw)
    set_condition(gw, accepted)

    if accepted["status"] == "False":
        set_condition(
            gw,
            _programmed(
                "False",
                GatewayConditionReason.PROGRAMMED,
                accepted["message"],
                accepted.get("observedGeneration"),
                accepted["lastTransitionTime"],
            ),
        )
        publish()
        raise InvalidConfigError(accepted["message"])

    with _kube_errors():
        services = ctx.client.list(
            _services_path(ns), label_selector=f"{GATEWAY_SERVICE_LABEL}={name}"
        )
    if len(services) > 1:
        names = [
            svc["metadata"]["name"]
            for svc in services
            if (svc.get("metadata") or {}).get("name")
        ]
        log.error("found multiple Services: %s", names)
        raise LoadBalancerError(
            "found more than 1 Service for this Gateway; "
            "multiple services are not supported"
        )

    if services:
        service = copy.deepcopy(services[0])
        if update_service_for_gateway(gateway, service):
            log.info("drift detected; updating loadbalancer service")
            with _kube_errors():
                ctx.client.patch(
                    _service_path(ns, service["metadata"]["name"]),
                    service,
                    content_type=STRATEGIC_MERGE_PATCH,
                )
    else:
        log.info("creating loadbalancer service")
        service = create_svc_for_gateway(ctx, gateway)

    def fail(error: LoadBalancerError, message: str) -> LoadBalancerError:
        set_condition(
            gw,
            _programmed(
                "False",
                GatewayConditionReason.ADDRESS_NOT_ASSIGNED,
                message,
                generation,
                now_timestamp(),
            ),
        )
        publish()
        return error

    svc_spec = service.get("spec")
    if svc_spec is None:
        error = LoadBalancerError("Loadbalancer service spec not found")
        raise fail(error, str(error))
    svc_status = service.get("status")
    if svc_status is None:
        error = LoadBalancerError("Loadbalancer service status not found")
        raise fail(error, str(error))

    svc_key = get_service_key(service)
    if get_ingress_ip_len(svc_status) == 0 or svc_spec.get("clusterIP") is None:
        msg = "LoadBalancer does not have a ingress IP address"
        raise fail(LoadBalancerError(msg), msg)

    create_endpoint_if_not_exists(ctx, svc_key, svc_spec, svc_status)
    set_gateway_status_addresses(gw, svc_status)
    set_condition(
        gw,
        _programmed(
            "True",
            GatewayConditionReason.PROGRAMMED,
            "Dataplane configured for gateway",
            generation,
            now_timestamp(),
        ),
    )
    publish()

    elapsed_ms = int((time.monotonic() - start) * 1000)
    log.info("finished reconciling in %d ms", elapsed_ms)
    return Action.requeue(_REQUEUE_SUCCESS)


def error_policy(gateway, error, ctx) -> Action:
    """Log a failed reconciliation and retry it shortly."""
    log.warning("reconcile failed: %r", error)
    return Action.requeue(_REQUEUE_ERROR)


def _semantic_version(gateway: dict[str, Any]) -> str:
    metadata = gateway.get("metadata") or {}
    return json.dumps(
        [
            metadata.get("generation"),
            metadata.get("labels"),
            metadata.get("annotations"),
        ],
        sort_keys=True,
    )


def _watch(ctx: Context, stop: threading.Event, poll_interval: float) -> None:
    seen: dict[tuple[str, str], str] = {}
    due: dict[tuple[str, str], float | None] = {}
    while not stop.is_set():
        try:
            gateways = ctx.client.list(_GATEWAYS_PATH)
        except (ApiError, httpx.HTTPError) as exc:
            log.warning("failed to list Gateways: %s", exc)
            stop.wait(poll_interval)
            continue

        now = time.monotonic()
        present = set()
        for gateway in gateways:
            metadata = gateway.get("metadata") or {}
            key = (metadata.get("namespace") or "", metadata.get("name") or "")
            present.add(key)
            version = _semantic_version(gateway)
            deadline = due.get(key)
            changed = seen.get(key) != version
            if not changed and (deadline is None or deadline > now):
                continue
            seen[key] = version
            try:
                action = reconcile(gateway, ctx)
            except ControlPlaneError as error:
                action = error_policy(gateway, error, ctx)
            due[key] = (
                None if action.requeue_after is None else now + action.requeue_after
            )

        for key in set(seen) - present:
            seen.pop(key, None)
            due.pop(key, None)
        stop.wait(poll_interval)


def controller(ctx) -> None:
    """Reconcile Gateways until SIGINT or SIGTERM.

    Raises CRDNotFoundError when the Gateway API resources cannot be listed.
    """
    try:
        ctx.client.list(_GATEWAYS_PATH, limit=1)
    except (ApiError, httpx.HTTPError) as exc:
        raise CRDNotFoundError(exc) from exc

    stop = threading.Event()
    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, lambda *_: stop.set())
    try:
        _watch(ctx, stop, _POLL_INTERVAL)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main(argv=None) -> int:
    """Start the Gateway controller with the in-cluster configuration."""
    argparse.ArgumentParser(
        prog="controller", description="Reconcile Gateway API resources."
    ).parse_args(argv)
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        client = KubeClient.from_environment()
    except ControlPlaneError as error:
        log.error("failed to create kube Client: %s", error)
        return 1
    with client:
        try:
            controller(Context(client=client))
        except ControlPlaneError as error:
            log.error("failed to start Gateway controller: %r", error)
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())