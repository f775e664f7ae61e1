"""A UDP echo-logging server with a TCP health endpoint, used in tests of the dataplane."""

from __future__ import annotations

import asyncio
import sys

HEALTH_PORT = 9878
UDP_PORTS = (9875, 9876, 9877)
_BUFFER_SIZE = 1024
_MAX_PEERS = 100


def _format_addr(addr) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}"


class Peers:
    """The distinct addresses that have sent health checks, kept bounded."""

    def __init__(self) -> None:
        self.peers: list[str] = []

    def add(self, addr) -> None:
        """Record the host of ``addr``; announce it the first time it is seen."""
        if len(self.peers) > _MAX_PEERS:
            # reset so the list cannot grow without bound
            self.peers = []
        host = addr[0]
        if host not in self.peers:
            print(f"received health check from {_format_addr(addr)}", flush=True)
            self.peers.append(host)


class _DatagramQueue(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data, addr) -> None:
        self.queue.put_nowait((data, addr))

    def error_received(self, exc) -> None:
        self.queue.put_nowait(exc)


async def run_server(port, notify) -> None:
    """Listen for UDP datagrams on ``port`` and print each one.

    The bound port is put on the ``notify`` queue once listening. The buffer
    is reused between datagrams, so its whole contents are printed each time.
    """
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _DatagramQueue, local_addr=("0.0.0.0", port)
    )
    try:
        port = transport.get_extra_info("sockname")[1]
        await notify.put(port)
        buf = bytearray(_BUFFER_SIZE)
        while True:
            item = await protocol.queue.get()
            if isinstance(item, Exception):
                raise item
            data, addr = item
            data = data[:_BUFFER_SIZE]
            buf[: len(data)] = data
            print(
                f"port {port}: {len(data)} bytes received from {_format_addr(addr)}",
                flush=True,
            )
            contents = buf.decode("utf-8", "replace").replace("\n", "")
            print(f"port {port}: buffer contents: {contents}", flush=True)
    finally:
        transport.close()


async def run_health_server(port, ready, expected=3) -> None:
    """Accept TCP health checks on ``port`` once ``expected`` UDP workers are ready."""
    peers = Peers()

    async def on_connect(reader, writer) -> None:
        peers.add(writer.get_extra_info("peername"))
        writer.close()

    server = await asyncio.start_server(
        on_connect, "0.0.0.0", port, start_serving=False
    )
    async with server:
        print("waiting for listeners...", flush=True)
        remaining = expected
        while remaining > 0:
            worker = await ready.get()
            print(f"UDP worker listening on port {worker}", flush=True)
            remaining -= 1
        print(f"health check server listening on {port}", flush=True)
        await server.serve_forever()


async def _serve(dry_run: bool) -> None:
    ready: asyncio.Queue = asyncio.Queue(maxsize=len(UDP_PORTS))
    tasks = [asyncio.create_task(run_health_server(HEALTH_PORT, ready, len(UDP_PORTS)))]
    if dry_run:
        print("Running in dry-run mode no udp servers started", flush=True)
    else:
        print("Running udp servers at ports 9875, 9876, and 9877", flush=True)
        tasks.extend(asyncio.create_task(run_server(p, ready)) for p in UDP_PORTS)
    try:
        await asyncio.Event().wait()
    finally:
        for task in tasks:
            task.cancel()


def main(argv=None) -> int:
    """Run the servers until interrupted; ``--dry-run`` starts only the health server."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        asyncio.run(_serve(args == ["--dry-run"]))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())