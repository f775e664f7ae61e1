from concurrent.futures import ThreadPoolExecutor

import grpc
import pytest

from blixt.backends import (
    BackendsServicer,
    BackendsStub,
    Confirmation,
    DecodeError,
    InterfaceIndexConfirmation,
    PodIp,
    Target,
    Targets,
    Vip,
    add_backends_servicer_to_server,
)


def test_vip_wire_bytes():
    assert Vip(ip=1, port=2).encode() == b"\x08\x01\x10\x02"


def test_default_scalars_are_omitted():
    assert Vip().encode() == b""
    assert Confirmation().encode() == b""


def test_optional_zero_is_written():
    assert Target(ifindex=0).encode() == b"\x18\x00"
    assert Target.decode(Target(ifindex=0).encode()).ifindex == 0
    assert Target.decode(Target().encode()).ifindex is None


def test_confirmation_wire_bytes():
    assert Confirmation("ok").encode() == b"\x0a\x02ok"


@pytest.mark.parametrize(
    "message",
    [
        Vip(ip=0x7F000001, port=8080),
        Target(daddr=0xFFFFFFFF, dport=9875, ifindex=7),
        Targets(
            vip=Vip(ip=3232235777, port=80),
            targets=[Target(1, 2, 3), Target(4, 5), Target(6, 7, 0)],
        ),
        Targets(),
        Confirmation("success, vip 127.0.0.1:8080 was deleted"),
        PodIp(ip=167772161),
        InterfaceIndexConfirmation(ifindex=42),
    ],
)
def test_round_trip(message):
    assert type(message).decode(message.encode()) == message


def test_unknown_fields_are_skipped():
    data = Vip(ip=1, port=2).encode() + b"\x28\x07" + b"\x32\x01z"
    assert Vip.decode(data) == Vip(ip=1, port=2)


def test_truncated_varint():
    with pytest.raises(DecodeError):
        Vip.decode(b"\x08")


def test_truncated_length_delimited():
    with pytest.raises(DecodeError):
        Confirmation.decode(b"\x0a\x05ab")


def test_unsupported_wire_type():
    with pytest.raises(DecodeError):
        Vip.decode(b"\x0b")


def test_wire_type_mismatch():
    with pytest.raises(DecodeError):
        Vip.decode(b"\x0a\x00")


def test_invalid_utf8():
    with pytest.raises(DecodeError):
        Confirmation.decode(b"\x0a\x01\xff")


def test_out_of_range_uint32():
    with pytest.raises(ValueError):
        Vip(ip=1 << 32).encode()
    with pytest.raises(ValueError):
        Vip(port=-1).encode()


class _RecordingServicer(BackendsServicer):
    def __init__(self):
        self.requests = []

    def update(self, request, context):
        self.requests.append(request)
        return Confirmation(f"updated {len(request.targets)}")

    def delete(self, request, context):
        self.requests.append(request)
        return Confirmation(f"deleted {request.port}")

    def get_interface_index(self, request, context):
        self.requests.append(request)
        return InterfaceIndexConfirmation(ifindex=request.ip)


@pytest.fixture
def serve():
    started = []

    def start(servicer):
        server = grpc.server(ThreadPoolExecutor(max_workers=2))
        add_backends_servicer_to_server(servicer, server)
        port = server.add_insecure_port("127.0.0.1:0")
        server.start()
        channel = grpc.insecure_channel(f"127.0.0.1:{port}")
        grpc.channel_ready_future(channel).result(timeout=10)
        started.append((server, channel))
        return BackendsStub(channel)

    yield start
    for server, channel in started:
        channel.close()
        server.stop(None)


def test_stub_and_servicer_talk(serve):
    servicer = _RecordingServicer()
    stub = serve(servicer)
    request = Targets(vip=Vip(ip=1, port=80), targets=[Target(daddr=2, dport=8080)])

    assert stub.update(request).confirmation == "updated 1"
    assert stub.delete(Vip(ip=1, port=80)).confirmation == "deleted 80"
    assert stub.get_interface_index(PodIp(ip=9)).ifindex == 9
    assert servicer.requests == [request, Vip(ip=1, port=80), PodIp(ip=9)]


def test_base_servicer_is_unimplemented(serve):
    stub = serve(BackendsServicer())
    with pytest.raises(grpc.RpcError) as exc_info:
        stub.delete(Vip(ip=1, port=2))
    assert exc_info.value.code() == grpc.StatusCode.UNIMPLEMENTED