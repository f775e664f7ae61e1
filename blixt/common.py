"""Data shared between the load-balancing dataplane and its API server."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

BACKENDS_ARRAY_CAPACITY = 128
"""Maximum number of backends that can be stored for one gateway."""

BPF_MAPS_CAPACITY = 128
"""Maximum number of entries held by the dataplane maps."""


@dataclass(frozen=True)
class Backend:
    """A destination that traffic for a gateway is forwarded to."""

    daddr: int = 0
    dport: int = 0
    ifindex: int = 0


@dataclass(frozen=True)
class BackendKey:
    """Identifies a gateway by its virtual IP and port."""

    ip: int
    port: int


@dataclass
class BackendList:
    """The backends configured for one gateway.

    ``backends_len`` defaults to the number of backends given and may never
    exceed the capacity of the list.
    """

    backends: list[Backend] = field(default_factory=list)
    backends_len: int | None = None

    def __post_init__(self) -> None:
        self.backends = list(self.backends)
        if len(self.backends) > BACKENDS_ARRAY_CAPACITY:
            raise ValueError(
                f"at most {BACKENDS_ARRAY_CAPACITY} backends are supported, "
                f"got {len(self.backends)}"
            )
        if self.backends_len is None:
            self.backends_len = len(self.backends)
        if not 0 <= self.backends_len <= BACKENDS_ARRAY_CAPACITY:
            raise ValueError(
                f"backends_len must be between 0 and {BACKENDS_ARRAY_CAPACITY}, "
                f"got {self.backends_len}"
            )


@dataclass(frozen=True)
class ClientKey:
    """Identifies a client connection by its source IP and port."""

    ip: int
    port: int


class TCPState(IntEnum):
    """Phases of a TCP connection while it is being torn down.

    ``ESTABLISHED`` is the state a newly tracked connection starts in.
    """

    ESTABLISHED = 0
    FIN_WAIT1 = 1
    FIN_WAIT2 = 2
    CLOSING = 3
    TIME_WAIT = 4
    CLOSED = 5


@dataclass(frozen=True)
class LoadBalancerMapping:
    """Records which backend and gateway serve a tracked client."""

    backend: Backend
    backend_key: BackendKey
    tcp_state: TCPState | None = None