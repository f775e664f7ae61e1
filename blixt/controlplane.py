"""Errors, constants and the Kubernetes API client of the control plane."""

from __future__ import annotations

import json
import os
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

GATEWAY_CLASS_CONTROLLER_NAME = "gateway.networking.k8s.io/blixt"
BLIXT_FIELD_MANAGER = "blixt-field-manager"
GATEWAY_SERVICE_LABEL = "blixt.gateway.networking.k8s.io/owned-by-gateway"

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
"""Where a pod finds its service account token and cluster CA."""


class ControlPlaneError(Exception):
    """Base of every error raised while reconciling gateways."""


class KubeError(ControlPlaneError):
    """A call to the Kubernetes API failed."""

    def __init__(self, source: BaseException) -> None:
        super().__init__(f"kube error: {source}")
        self.source = source


class InvalidConfigError(ControlPlaneError):
    """A resource is configured in a way that is not supported."""

    def __init__(self, message: str) -> None:
        super().__init__(f"invalid configuration: `{message}`")
        self.message = message


class LoadBalancerError(ControlPlaneError):
    """The load balancer service of a gateway could not be reconciled."""

    def __init__(self, message: str) -> None:
        super().__init__(f"error reconciling loadbalancer service: `{message}`")
        self.message = message


class CRDNotFoundError(ControlPlaneError):
    """The Gateway API resources could not be queried."""

    def __init__(self, source: BaseException) -> None:
        super().__init__(
            f"error querying Gateway API CRDs: `{source}`; are the CRDs installed?"
        )
        self.source = source


class ApiError(Exception):
    """An error status returned by the Kubernetes API server."""

    def __init__(self, code: int, message: str = "", reason: str = "") -> None:
        super().__init__(f"{code} {reason}: {message}")
        self.code = code
        self.message = message
        self.reason = reason


@dataclass(frozen=True)
class NamespacedName:
    """The name and namespace that identify a namespaced object."""

    name: str
    namespace: str


class KubeClient:
    """A small JSON client of the Kubernetes API server."""

    def __init__(self, base_url, token=None, verify=True, transport=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if isinstance(verify, (str, os.PathLike)):
            verify = ssl.create_default_context(cafile=os.fspath(verify))
        self._http = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_environment(cls):
        """Build a client from the in-cluster service account configuration."""
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
        if not host:
            raise ControlPlaneError(
                "failed to create kube client: KUBERNETES_SERVICE_HOST is not set"
            )
        token_path = SERVICE_ACCOUNT_DIR / "token"
        try:
            token = token_path.read_text().strip()
        except OSError as exc:
            raise ControlPlaneError(
                f"failed to read service account token from {token_path}: {exc}"
            ) from exc
        ca_path = SERVICE_ACCOUNT_DIR / "ca.crt"
        verify = ca_path if ca_path.exists() else True
        if ":" in host:
            host = f"[{host}]"
        return cls(f"https://{host}:{port}", token=token, verify=verify)

    def close(self) -> None:
        """Release the underlying connections."""
        self._http.close()

    def __enter__(self) -> KubeClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def request(self, method, path, body=None, params=None, content_type=None):
        """Send a request and return the decoded JSON answer.

        Raises ApiError when the server answers with an error status.
        """
        headers = {}
        content = None
        if body is not None:
            content = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = content_type or "application/json"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        response = self._http.request(
            method, path, content=content, params=query, headers=headers
        )
        if response.is_error:
            raise _api_error(response)
        if not response.content:
            return {}
        return response.json()

    def get(self, path):
        """Fetch one object."""
        return self.request("GET", path)

    def list(self, path, label_selector=None, limit=None):
        """List the objects of a collection, optionally filtered by labels."""
        params: dict[str, Any] = {}
        if label_selector is not None:
            params["labelSelector"] = label_selector
        if limit is not None:
            params["limit"] = str(limit)
        return self.request("GET", path, params=params).get("items") or []

    def create(self, path, body):
        """Create an object in a collection and return it as stored."""
        return self.request("POST", path, body=body)

    def patch(self, path, body, content_type="application/merge-patch+json", params=None):
        """Patch an object with the given patch type."""
        return self.request(
            "PATCH", path, body=body, params=params, content_type=content_type
        )


def _api_error(response: httpx.Response) -> ApiError:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    message = data.get("message") or response.text
    reason = data.get("reason") or response.reason_phrase
    return ApiError(response.status_code, message, reason)


@dataclass
class Context:
    """State shared by every reconciliation."""

    client: KubeClient