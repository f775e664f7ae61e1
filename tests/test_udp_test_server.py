import asyncio
import contextlib
import socket

from blixt.udp_test_server import Peers, run_health_server, run_server


async def _collect(capsys, text, timeout=5.0):
    collected = ""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        collected += capsys.readouterr().out
        if text in collected:
            break
        await asyncio.sleep(0.02)
    return collected


async def _stop(task):
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_peers_records_each_host_once(capsys):
    peers = Peers()
    peers.add(("10.1.1.1", 4000))
    peers.add(("10.1.1.1", 4001))
    peers.add(("10.1.1.2", 4000))
    assert peers.peers == ["10.1.1.1", "10.1.1.2"]
    out = capsys.readouterr().out
    assert out.count("received health check from") == 2
    assert "received health check from 10.1.1.1:4000" in out


def test_peers_reset_once_over_limit():
    peers = Peers()
    hosts = [f"10.0.{i // 256}.{i % 256}" for i in range(101)]
    for host in hosts:
        peers.add((host, 1))
    assert peers.peers == hosts
    peers.add(("192.0.2.1", 1))
    assert peers.peers == ["192.0.2.1"]


def test_run_server_prints_datagram(capsys):
    payload = b"hello\nworld"

    async def scenario():
        ready = asyncio.Queue()
        task = asyncio.create_task(run_server(0, ready))
        port = await asyncio.wait_for(ready.get(), 5)
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, remote_addr=("127.0.0.1", port)
        )
        transport.sendto(payload)
        out = await _collect(capsys, f"port {port}: buffer contents")
        transport.close()
        await _stop(task)
        return port, out

    port, out = asyncio.run(scenario())
    assert port > 0
    assert f"port {port}: {len(payload)} bytes received from 127.0.0.1:" in out
    assert "helloworld" in out


def test_health_server_waits_for_workers(capsys):
    port = _free_port()

    async def scenario():
        ready = asyncio.Queue()
        task = asyncio.create_task(run_health_server(port, ready, 2))
        await ready.put(1111)
        out = await _collect(capsys, "UDP worker listening on port 1111")
        await asyncio.sleep(0.1)
        out += capsys.readouterr().out
        finished = task.done()
        await _stop(task)
        return out, finished

    out, finished = asyncio.run(scenario())
    assert finished is False
    assert "waiting for listeners..." in out
    assert "UDP worker listening on port 1111" in out
    assert "health check server listening" not in out


def test_health_server_accepts_checks(capsys):
    port = _free_port()

    async def scenario():
        ready = asyncio.Queue()
        task = asyncio.create_task(run_health_server(port, ready, 2))
        await ready.put(1111)
        await ready.put(2222)
        out = await _collect(capsys, f"health check server listening on {port}")
        for _ in range(50):
            try:
                _, writer = await asyncio.open_connection("127.0.0.1", port)
                break
            except OSError:
                await asyncio.sleep(0.05)
        writer.close()
        out += await _collect(capsys, "received health check from")
        await _stop(task)
        return out

    out = asyncio.run(scenario())
    assert "UDP worker listening on port 2222" in out
    assert "received health check from 127.0.0.1:" in out