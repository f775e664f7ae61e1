"""Starting the dataplane API server: TLS setup plus health and backends services."""

from __future__ import annotations

import ipaddress
import logging
from concurrent import futures
from dataclasses import dataclass
from pathlib import Path

import grpc
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from blixt.backends import add_backends_servicer_to_server
from blixt.config import MutualTLSConfig, ServerOnlyTLSConfig
from blixt.server import BackendService

log = logging.getLogger(__name__)

HEALTH_SERVICE_NAME = "grpc.health.v1.Health"
HEALTH_CHECK_METHOD = f"/{HEALTH_SERVICE_NAME}/Check"
_SERVING_RESPONSE = b"\x08\x01"
_MAX_WORKERS = 10


class TLSSetupError(Exception):
    """The TLS material for the API server could not be loaded."""


@dataclass(frozen=True)
class _ServerTLS:
    certificate_chain: bytes
    private_key: bytes
    root_certificates: bytes | None = None

    @property
    def require_client_auth(self) -> bool:
        return self.root_certificates is not None

    def credentials(self) -> grpc.ServerCredentials:
        return grpc.ssl_server_credentials(
            [(self.private_key, self.certificate_chain)],
            root_certificates=self.root_certificates,
            require_client_auth=self.require_client_auth,
        )


def _read(path: Path, what: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise TLSSetupError(f'Failed to read {what} from "{path}": {exc}') from exc


def _load_identity(cert_path: Path, key_path: Path) -> tuple[bytes, bytes]:
    cert = _read(cert_path, "certificate")
    key = _read(key_path, "key")
    try:
        x509.load_pem_x509_certificate(cert)
    except ValueError as exc:
        raise TLSSetupError(f'Invalid certificate in "{cert_path}": {exc}') from exc
    try:
        serialization.load_pem_private_key(key, password=None)
    except (ValueError, TypeError) as exc:
        raise TLSSetupError(f'Invalid key in "{key_path}": {exc}') from exc
    return cert, key


def setup_tls(tls_config):
    """Load the TLS material named by ``tls_config``.

    Returns None when TLS is not configured. Raises TLSSetupError when a file
    cannot be read or does not hold a PEM certificate or key.
    """
    if tls_config is None:
        log.info("gRPC TLS is not enabled")
        return None
    if isinstance(tls_config, MutualTLSConfig):
        cert, key = _load_identity(
            tls_config.server_certificate_path, tls_config.server_private_key_path
        )
        ca_path = tls_config.client_certificate_authority_root_path
        ca = _read(ca_path, "client CA")
        try:
            x509.load_pem_x509_certificates(ca)
        except ValueError as exc:
            raise TLSSetupError(f'Invalid client CA in "{ca_path}": {exc}') from exc
        log.info("gRPC mTLS enabled")
        return _ServerTLS(certificate_chain=cert, private_key=key, root_certificates=ca)
    if isinstance(tls_config, ServerOnlyTLSConfig):
        cert, key = _load_identity(
            tls_config.server_certificate_path, tls_config.server_private_key_path
        )
        log.info("gRPC TLS enabled")
        return _ServerTLS(certificate_chain=cert, private_key=key)
    raise TLSSetupError(f"unsupported TLS configuration: {tls_config!r}")


def _health_check(request: bytes, context) -> bytes:
    # Only the overall server status ("" service) is registered.
    if request:
        context.abort(grpc.StatusCode.NOT_FOUND, "service not registered")
    return _SERVING_RESPONSE


def _bind(server: grpc.Server, address: str, credentials=None) -> None:
    try:
        if credentials is None:
            bound = server.add_insecure_port(address)
        else:
            bound = server.add_secure_port(address, credentials)
    except RuntimeError as exc:
        raise OSError(f"failed to listen on {address}: {exc}") from exc
    if bound == 0:
        raise OSError(f"failed to listen on {address}")


@dataclass
class _RunningServers:
    health: grpc.Server
    backends: grpc.Server
    service: BackendService

    def wait_for_termination(self, timeout=None) -> None:
        self.backends.wait_for_termination(timeout)
        self.health.wait_for_termination(timeout)

    def stop(self, grace=None) -> None:
        for server in (self.backends, self.health):
            server.stop(grace).wait()

    def __enter__(self) -> _RunningServers:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def start(addr, port, backends_map, gateway_indexes_map, tcp_conns_map, tls_config=None):
    """Start the health service on ``port + 1`` and the backends service on ``port``.

    TLS, when configured, applies only to the backends service. Returns a
    handle whose ``wait_for_termination`` blocks while both are serving.
    """
    host = str(ipaddress.IPv4Address(addr))
    tls = setup_tls(tls_config)

    health = grpc.server(futures.ThreadPoolExecutor(max_workers=_MAX_WORKERS))
    health.add_generic_rpc_handlers(
        (
            grpc.method_handlers_generic_handler(
                HEALTH_SERVICE_NAME,
                {
                    "Check": grpc.unary_unary_rpc_method_handler(
                        _health_check,
                        request_deserializer=bytes,
                        response_serializer=bytes,
                    )
                },
            ),
        )
    )
    health_addr = f"{host}:{port + 1}"
    _bind(health, health_addr)

    service = BackendService(backends_map, gateway_indexes_map, tcp_conns_map)
    backends = grpc.server(futures.ThreadPoolExecutor(max_workers=_MAX_WORKERS))
    add_backends_servicer_to_server(service, backends)
    api_addr = f"{host}:{port}"
    _bind(backends, api_addr, None if tls is None else tls.credentials())

    health.start()
    log.debug("gRPC Health Checking service listens on %s", health_addr)
    backends.start()
    log.debug("TLS server listens on %s", api_addr)
    return _RunningServers(health=health, backends=backends, service=service)