import socket
from datetime import datetime, timedelta, timezone
from ipaddress import IPv4Address

import grpc
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from blixt.apiserver import HEALTH_CHECK_METHOD, TLSSetupError, setup_tls, start
from blixt.backends import BackendsStub, Target, Targets, Vip
from blixt.common import Backend, BackendKey
from blixt.config import MutualTLSConfig, ServerOnlyTLSConfig


def _self_signed(common_name="localhost", is_ca=False):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), False)
    )
    if is_ca:
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), True)
    cert = builder.sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


@pytest.fixture
def server_files(tmp_path):
    cert_pem, key_pem = _self_signed()
    cert_path = tmp_path / "server.crt"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(cert_pem)
    key_path.write_bytes(key_pem)
    return cert_path, key_path, cert_pem, key_pem


def test_tls_self_signed_cert(server_files):
    cert_path, key_path, cert_pem, key_pem = server_files
    tls = setup_tls(ServerOnlyTLSConfig(cert_path, key_path))
    assert tls.certificate_chain == cert_pem
    assert tls.private_key == key_pem
    assert tls.root_certificates is None
    assert tls.require_client_auth is False


def test_tls_missing_cert(tmp_path):
    _, key_pem = _self_signed()
    key_path = tmp_path / "server.key"
    key_path.write_bytes(key_pem)
    config = ServerOnlyTLSConfig(tmp_path / "missing_server.crt", key_path)
    with pytest.raises(TLSSetupError, match="Failed to read certificate"):
        setup_tls(config)


def test_tls_missing_key(tmp_path):
    cert_pem, _ = _self_signed()
    cert_path = tmp_path / "server.crt"
    cert_path.write_bytes(cert_pem)
    config = ServerOnlyTLSConfig(cert_path, tmp_path / "missing_server.key")
    with pytest.raises(TLSSetupError, match="Failed to read key"):
        setup_tls(config)


def test_mtls_self_signed_cert(server_files, tmp_path):
    cert_path, key_path, cert_pem, _ = server_files
    ca_pem, _ = _self_signed("blixt-test-ca", is_ca=True)
    ca_path = tmp_path / "ca.crt"
    ca_path.write_bytes(ca_pem)
    tls = setup_tls(MutualTLSConfig(cert_path, key_path, ca_path))
    assert tls.certificate_chain == cert_pem
    assert tls.root_certificates == ca_pem
    assert tls.require_client_auth is True


def test_mtls_invalid_ca_cert(server_files, tmp_path):
    cert_path, key_path, _, _ = server_files
    ca_path = tmp_path / "invalid_ca.crt"
    ca_path.write_bytes(b"not a valid certificate")
    with pytest.raises(TLSSetupError, match="Invalid client CA"):
        setup_tls(MutualTLSConfig(cert_path, key_path, ca_path))


def test_mtls_missing_ca_cert(server_files, tmp_path):
    cert_path, key_path, _, _ = server_files
    config = MutualTLSConfig(cert_path, key_path, tmp_path / "missing_ca.crt")
    with pytest.raises(TLSSetupError, match="Failed to read client CA"):
        setup_tls(config)


def test_invalid_server_certificate(server_files, tmp_path):
    _, key_path, _, _ = server_files
    bad_cert = tmp_path / "bad.crt"
    bad_cert.write_bytes(b"not a valid certificate")
    with pytest.raises(TLSSetupError, match="Invalid certificate"):
        setup_tls(ServerOnlyTLSConfig(bad_cert, key_path))


def test_no_tls_config():
    assert setup_tls(None) is None


def _free_port_pair():
    for _ in range(50):
        with socket.socket() as probe:
            probe.bind(("127.0.0.1", 0))
            port = probe.getsockname()[1]
        try:
            with socket.socket() as first, socket.socket() as second:
                first.bind(("127.0.0.1", port))
                second.bind(("127.0.0.1", port + 1))
        except OSError:
            continue
        return port
    raise RuntimeError("no pair of free ports found")


def test_start_serves_backends_and_health():
    port = _free_port_pair()
    backends_map, indexes_map, conns_map = {}, {}, {}
    vip_ip = int(IPv4Address("127.0.0.1"))
    with start("127.0.0.1", port, backends_map, indexes_map, conns_map, None):
        with grpc.insecure_channel(f"127.0.0.1:{port}") as channel:
            reply = BackendsStub(channel).update(
                Targets(
                    vip=Vip(ip=vip_ip, port=8080),
                    targets=[Target(daddr=vip_ip, dport=9000, ifindex=1)],
                )
            )
        with grpc.insecure_channel(f"127.0.0.1:{port + 1}") as channel:
            check = channel.unary_unary(
                HEALTH_CHECK_METHOD,
                request_serializer=bytes,
                response_deserializer=bytes,
            )
            health = check(b"")

    assert reply.confirmation == "success, vip 127.0.0.1:8080 was updated with 1 backends"
    key = BackendKey(vip_ip, 8080)
    assert backends_map[key].backends == [Backend(daddr=vip_ip, dport=9000, ifindex=1)]
    assert indexes_map[key] == 0
    assert health == b"\x08\x01"