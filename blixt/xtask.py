"""Developer tasks: build the eBPF programs, run the planes, poke the gRPC API."""

from __future__ import annotations

import argparse
import sys

from blixt.build_ebpf import Architecture, build_ebpf
from blixt.grpc_client import update
from blixt.run import DEFAULT_RUNNER, run_controlplane, run_dataplane

_RUN_COMMANDS = ("run-dataplane", "run-controlplane")


def _architecture(value: str) -> Architecture:
    try:
        return Architecture.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--bpf-target",
        type=_architecture,
        default=Architecture.BPF_EL,
        help="Set the endianness of the BPF target",
    )
    parser.add_argument(
        "--release", action="store_true", help="Build and run the release target"
    )
    parser.add_argument(
        "-r",
        "--runner",
        default=DEFAULT_RUNNER,
        help="The command used to wrap your application",
    )


def _build_ebpf(args: argparse.Namespace) -> None:
    build_ebpf(args.target, args.release)


def _run_dataplane(args: argparse.Namespace) -> None:
    run_dataplane(args.bpf_target, args.release, args.runner, args.run_args)


def _run_controlplane(args: argparse.Namespace) -> None:
    run_controlplane(args.release)


def _grpc_client(args: argparse.Namespace) -> None:
    update(
        server_ip=args.server_ip,
        server_port=args.server_port,
        vip_ip=args.vip_ip,
        vip_port=args.vip_port,
        daddr=args.daddr,
        dport=args.dport,
        ifindex=args.ifindex,
        delete=args.delete,
    )


def build_parser() -> argparse.ArgumentParser:
    """The command-line parser of the developer tasks.

    Arguments for the started application follow ``--`` and are split off by main.
    """
    parser = argparse.ArgumentParser(prog="xtask")
    commands = parser.add_subparsers(dest="command", required=True)

    ebpf = commands.add_parser("build-ebpf", help="Build the eBPF programs")
    ebpf.add_argument("--target", type=_architecture, default=Architecture.BPF_EL)
    ebpf.add_argument("--release", action="store_true")
    ebpf.set_defaults(handler=_build_ebpf)

    dataplane = commands.add_parser("run-dataplane", help="Build and run the dataplane")
    _add_run_options(dataplane)
    dataplane.set_defaults(handler=_run_dataplane)

    controlplane = commands.add_parser(
        "run-controlplane", help="Build and run the control plane"
    )
    _add_run_options(controlplane)
    controlplane.set_defaults(handler=_run_controlplane)

    client = commands.add_parser("grpc-client", help="Update or delete a VIP")
    client.add_argument("--server-ip", default="127.0.0.1")
    client.add_argument("--server-port", type=int, default=9874)
    client.add_argument("--vip-ip", default="127.0.0.1")
    client.add_argument("--vip-port", type=int, default=8080)
    client.add_argument("--daddr", default="127.0.0.1")
    client.add_argument("--dport", type=int, default=8080)
    client.add_argument("--ifindex", type=int, default=0)
    client.add_argument("-d", "--delete", action="store_true")
    client.set_defaults(handler=_grpc_client)

    return parser


def _describe(exc: BaseException | None) -> str:
    parts = []
    while exc is not None:
        text = str(exc)
        if text:
            parts.append(text)
        exc = exc.__cause__
    return ": ".join(parts)


def main(argv=None) -> int:
    """Run one developer task; return the process exit status."""
    argv = list(sys.argv[1:] if argv is None else argv)
    run_args: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, run_args = argv[:split], argv[split + 1:]

    parser = build_parser()
    args = parser.parse_args(argv)
    if run_args and args.command not in _RUN_COMMANDS:
        parser.error(f"unexpected arguments: {' '.join(run_args)}")
    args.run_args = run_args

    try:
        args.handler(args)
    except Exception as exc:
        print(_describe(exc), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())