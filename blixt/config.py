"""TLS settings of the dataplane API server and their command-line form."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Union

_TLS_COMMAND = "tls"
_MUTUAL_TLS_COMMAND = "mutual-tls"


@dataclass(frozen=True)
class ServerOnlyTLSConfig:
    """TLS where only the server presents a certificate."""

    server_certificate_path: Path
    server_private_key_path: Path


@dataclass(frozen=True)
class MutualTLSConfig:
    """TLS where clients must present a certificate signed by a given CA."""

    server_certificate_path: Path
    server_private_key_path: Path
    client_certificate_authority_root_path: Path


TLSConfig = Union[ServerOnlyTLSConfig, MutualTLSConfig]


def _add_server_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--server-certificate-path", type=Path, required=True)
    parser.add_argument("--server-private-key-path", type=Path, required=True)


def add_tls_subcommands(parser):
    """Add the optional ``tls`` and ``mutual-tls`` subcommands to ``parser``."""
    subcommands = parser.add_subparsers(dest="tls_command")
    tls = subcommands.add_parser(_TLS_COMMAND, help="serve the API with server-only TLS")
    _add_server_options(tls)
    mutual = subcommands.add_parser(
        _MUTUAL_TLS_COMMAND, help="serve the API with mutual TLS"
    )
    _add_server_options(mutual)
    mutual.add_argument(
        "--client-certificate-authority-root-path", type=Path, required=True
    )
    return subcommands


def tls_config_from_args(args) -> TLSConfig | None:
    """Build the TLS configuration chosen on the command line, if any."""
    command = getattr(args, "tls_command", None)
    if command is None:
        return None
    if command == _TLS_COMMAND:
        return ServerOnlyTLSConfig(
            server_certificate_path=args.server_certificate_path,
            server_private_key_path=args.server_private_key_path,
        )
    if command == _MUTUAL_TLS_COMMAND:
        return MutualTLSConfig(
            server_certificate_path=args.server_certificate_path,
            server_private_key_path=args.server_private_key_path,
            client_certificate_authority_root_path=(
                args.client_certificate_authority_root_path
            ),
        )
    raise ValueError(f"unknown TLS mode: {command}")