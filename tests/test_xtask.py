import subprocess
from concurrent import futures
from unittest.mock import patch

import grpc
import pytest

from blixt.backends import add_backends_servicer_to_server
from blixt.build_ebpf import Architecture
from blixt.server import BackendService
from blixt.xtask import build_parser, main


@pytest.fixture
def backend_server():
    service = BackendService({}, {}, {}, resolve_ifindex=lambda ip: 7)
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    add_backends_servicer_to_server(service, server)
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    yield service, port
    server.stop(None)


def test_grpc_client_defaults():
    args = build_parser().parse_args(["grpc-client"])
    assert args.server_ip == "127.0.0.1"
    assert args.server_port == 9874
    assert args.vip_port == 8080
    assert args.dport == 8080
    assert args.ifindex == 0
    assert args.delete is False


def test_run_dataplane_defaults():
    args = build_parser().parse_args(["run-dataplane"])
    assert args.bpf_target is Architecture.BPF_EL
    assert args.runner == "sudo -E"
    assert args.release is False


def test_build_ebpf_target_option():
    args = build_parser().parse_args(["build-ebpf", "--target", "bpfeb-unknown-none"])
    assert args.target is Architecture.BPF_EB


def test_invalid_target_is_a_usage_error():
    with pytest.raises(SystemExit) as info:
        main(["build-ebpf", "--target", "nope"])
    assert info.value.code == 2


def test_missing_command_is_a_usage_error():
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == 2


def test_main_builds_ebpf():
    with patch("subprocess.run") as run:
        assert main(["build-ebpf", "--release"]) == 0
    assert run.call_args.args[0][-1] == "--release"


def test_main_reports_build_failure(capsys):
    with patch("subprocess.run", side_effect=subprocess.CalledProcessError(1, "cargo")):
        assert main(["run-controlplane"]) == 1
    assert capsys.readouterr().err.startswith("Error while building controlplane")


def test_main_passes_run_args_after_separator():
    with patch("subprocess.run"), patch(
        "os.execvpe", side_effect=FileNotFoundError(2, "missing")
    ) as execvpe:
        assert main(["run-dataplane", "-r", "env", "--", "--iface", "eth0"]) == 1
    assert execvpe.call_args.args[1][-2:] == ["--iface", "eth0"]
    assert execvpe.call_args.args[0] == "env"


def test_main_rejects_run_args_for_other_commands():
    with pytest.raises(SystemExit) as info:
        main(["grpc-client", "--", "extra"])
    assert info.value.code == 2


def test_main_grpc_client(backend_server, capsys):
    service, port = backend_server
    assert main(["grpc-client", "--server-port", str(port)]) == 0
    out = capsys.readouterr().out
    assert "grpc server responded to UPDATE: success, vip 127.0.0.1:8080" in out
    assert len(service.backends_map) == 1


def test_main_grpc_client_bad_address(capsys):
    assert main(["grpc-client", "--vip-ip", "bogus"]) == 1
    assert "bogus" in capsys.readouterr().err