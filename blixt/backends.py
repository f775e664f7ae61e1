"""Messages and gRPC bindings of the ``backends.backends`` service."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

import grpc

SERVICE_NAME = "backends.backends"

_GET_INTERFACE_INDEX = f"/{SERVICE_NAME}/GetInterfaceIndex"
_UPDATE = f"/{SERVICE_NAME}/Update"
_DELETE = f"/{SERVICE_NAME}/Delete"

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_FIXED32 = 5

_UINT32_MAX = 0xFFFFFFFF
_UINT64_MASK = (1 << 64) - 1


class DecodeError(ValueError):
    """Raised when bytes are not a valid encoding of a message."""


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _UINT64_MASK, pos
    raise DecodeError("varint is too long")


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise DecodeError("truncated field")
    return data[pos:end], end


def _read_value(data: bytes, pos: int, wire_type: int) -> tuple[Any, int]:
    if wire_type == _WIRE_VARINT:
        return _decode_varint(data, pos)
    if wire_type == _WIRE_FIXED64:
        return _take(data, pos, 8)
    if wire_type == _WIRE_FIXED32:
        return _take(data, pos, 4)
    if wire_type == _WIRE_LEN:
        length, pos = _decode_varint(data, pos)
        return _take(data, pos, length)
    raise DecodeError(f"unsupported wire type {wire_type}")


def _tag(number: int, wire_type: int) -> bytes:
    return _encode_varint(number << 3 | wire_type)


class _Kind(Enum):
    UINT32 = 0
    STRING = ""
    MESSAGE = None


class _Label(Enum):
    SINGULAR = "singular"
    OPTIONAL = "optional"
    REPEATED = "repeated"


@dataclass(frozen=True)
class _Field:
    number: int
    name: str
    kind: _Kind
    label: _Label = _Label.SINGULAR
    message_type: type[Message] | None = None

    def encode_value(self, value: Any) -> bytes:
        if self.kind is _Kind.UINT32:
            if not 0 <= value <= _UINT32_MAX:
                raise ValueError(
                    f"{self.name} must fit in an unsigned 32-bit integer, got {value}"
                )
            return _tag(self.number, _WIRE_VARINT) + _encode_varint(value)
        payload = value.encode("utf-8") if self.kind is _Kind.STRING else value.encode()
        return _tag(self.number, _WIRE_LEN) + _encode_varint(len(payload)) + payload

    def decode_value(self, wire_type: int, raw: Any) -> Any:
        if self.kind is _Kind.UINT32:
            if wire_type != _WIRE_VARINT:
                raise DecodeError(f"field {self.name} expects a varint")
            return raw & _UINT32_MAX
        if wire_type != _WIRE_LEN:
            raise DecodeError(f"field {self.name} expects length-delimited data")
        if self.kind is _Kind.STRING:
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(f"field {self.name} is not valid UTF-8") from exc
        return self.message_type.decode(raw)


class Message:
    """Base of the protocol buffer messages used by the service."""

    _FIELDS: ClassVar[tuple[_Field, ...]] = ()

    def encode(self) -> bytes:
        """Serialize the message to protocol buffer wire format."""
        out = bytearray()
        for spec in self._FIELDS:
            value = getattr(self, spec.name)
            if spec.label is _Label.REPEATED:
                for item in value:
                    out += spec.encode_value(item)
                continue
            if value is None:
                continue
            if spec.label is _Label.SINGULAR and value == spec.kind.value:
                continue
            out += spec.encode_value(value)
        return bytes(out)

    @classmethod
    def decode(cls, data):
        """Parse a message from wire format, skipping unknown fields."""
        data = bytes(data)
        by_number = {spec.number: spec for spec in cls._FIELDS}
        values: dict[str, Any] = {}
        pos = 0
        while pos < len(data):
            key, pos = _decode_varint(data, pos)
            number, wire_type = key >> 3, key & 0x7
            if number == 0:
                raise DecodeError("invalid field number 0")
            raw, pos = _read_value(data, pos, wire_type)
            spec = by_number.get(number)
            if spec is None:
                continue
            value = spec.decode_value(wire_type, raw)
            if spec.label is _Label.REPEATED:
                values.setdefault(spec.name, []).append(value)
            else:
                values[spec.name] = value
        return cls(**values)


@dataclass
class Vip(Message):
    """A gateway's virtual IP address and port."""

    ip: int = 0
    port: int = 0

    _FIELDS: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "ip", _Kind.UINT32),
        _Field(2, "port", _Kind.UINT32),
    )


@dataclass
class Target(Message):
    """A backend address, port and optional interface index."""

    daddr: int = 0
    dport: int = 0
    ifindex: int | None = None

    _FIELDS: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "daddr", _Kind.UINT32),
        _Field(2, "dport", _Kind.UINT32),
        _Field(3, "ifindex", _Kind.UINT32, _Label.OPTIONAL),
    )


@dataclass
class Targets(Message):
    """The full set of backends for one virtual IP."""

    vip: Vip | None = None
    targets: list[Target] = field(default_factory=list)

    _FIELDS: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "vip", _Kind.MESSAGE, _Label.OPTIONAL, Vip),
        _Field(2, "targets", _Kind.MESSAGE, _Label.REPEATED, Target),
    )


@dataclass
class Confirmation(Message):
    """A human-readable answer to an update or delete."""

    confirmation: str = ""

    _FIELDS: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "confirmation", _Kind.STRING),
    )


@dataclass
class PodIp(Message):
    """An IPv4 address whose outgoing interface is asked for."""

    ip: int = 0

    _FIELDS: ClassVar[tuple[_Field, ...]] = (_Field(1, "ip", _Kind.UINT32),)


@dataclass
class InterfaceIndexConfirmation(Message):
    """The index of the interface a pod IP is routed through."""

    ifindex: int = 0

    _FIELDS: ClassVar[tuple[_Field, ...]] = (_Field(1, "ifindex", _Kind.UINT32),)


class BackendsStub:
    """Client of the ``backends.backends`` service."""

    def __init__(self, channel):
        self._get_interface_index = channel.unary_unary(
            _GET_INTERFACE_INDEX,
            request_serializer=PodIp.encode,
            response_deserializer=InterfaceIndexConfirmation.decode,
        )
        self._update = channel.unary_unary(
            _UPDATE,
            request_serializer=Targets.encode,
            response_deserializer=Confirmation.decode,
        )
        self._delete = channel.unary_unary(
            _DELETE,
            request_serializer=Vip.encode,
            response_deserializer=Confirmation.decode,
        )

    def get_interface_index(self, request: PodIp) -> InterfaceIndexConfirmation:
        """Ask which interface routes to the given pod IP."""
        return self._get_interface_index(request)

    def update(self, request: Targets) -> Confirmation:
        """Replace the backends of a virtual IP."""
        return self._update(request)

    def delete(self, request: Vip) -> Confirmation:
        """Remove a virtual IP and its backends."""
        return self._delete(request)


class BackendsServicer:
    """Base of ``backends.backends`` implementations; every call is unimplemented."""

    def get_interface_index(self, request, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "GetInterfaceIndex is not supported")

    def update(self, request, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "Update is not supported")

    def delete(self, request, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "Delete is not supported")


def add_backends_servicer_to_server(servicer, server) -> None:
    """Register ``servicer`` to answer ``backends.backends`` calls on ``server``."""
    handlers = {
        "GetInterfaceIndex": grpc.unary_unary_rpc_method_handler(
            servicer.get_interface_index,
            request_deserializer=PodIp.decode,
            response_serializer=Message.encode,
        ),
        "Update": grpc.unary_unary_rpc_method_handler(
            servicer.update,
            request_deserializer=Targets.decode,
            response_serializer=Message.encode,
        ),
        "Delete": grpc.unary_unary_rpc_method_handler(
            servicer.delete,
            request_deserializer=Vip.decode,
            response_serializer=Message.encode,
        ),
    }
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
    )