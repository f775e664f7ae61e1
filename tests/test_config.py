import argparse
from pathlib import Path

import pytest

from blixt.config import (
    MutualTLSConfig,
    ServerOnlyTLSConfig,
    add_tls_subcommands,
    tls_config_from_args,
)


def _parser():
    parser = argparse.ArgumentParser(prog="loader")
    parser.add_argument("--iface", default="lo")
    add_tls_subcommands(parser)
    return parser


def test_no_subcommand_means_no_tls():
    args = _parser().parse_args([])
    assert tls_config_from_args(args) is None
    assert args.iface == "lo"


def test_server_only_tls():
    args = _parser().parse_args(
        [
            "--iface",
            "eth0",
            "tls",
            "--server-certificate-path",
            "/certs/server.crt",
            "--server-private-key-path",
            "placeholder",
        ]
    )
    assert tls_config_from_args(args) == ServerOnlyTLSConfig(
        server_certificate_path=Path("/certs/server.crt"),
        server_private_key_path=Path("placeholder"),
    )
    assert args.iface == "eth0"


def test_mutual_tls():
    args = _parser().parse_args(
        [
            "mutual-tls",
            "--server-certificate-path",
            "/certs/server.crt",
            "--server-private-key-path",
            "placeholder",
            "--client-certificate-authority-root-path",
            "/certs/ca.crt",
        ]
    )
    assert tls_config_from_args(args) == MutualTLSConfig(
        server_certificate_path=Path("/certs/server.crt"),
        server_private_key_path=Path("placeholder"),
        client_certificate_authority_root_path=Path("/certs/ca.crt"),
    )


def test_mutual_tls_requires_ca():
    with pytest.raises(SystemExit):
        _parser().parse_args(
            [
                "mutual-tls",
                "--server-certificate-path",
                "/certs/server.crt",
                "--server-private-key-path",
                "placeholder",
            ]
        )


def test_tls_requires_key():
    with pytest.raises(SystemExit):
        _parser().parse_args(["tls", "--server-certificate-path", "/certs/server.crt"])


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        tls_config_from_args(argparse.Namespace(tls_command="plaintext"))


def test_args_without_tls_attribute():
    assert tls_config_from_args(argparse.Namespace()) is None