# tests/test_proxy_integration.py
"""
End-to-end CONNECT scenarios over real loopback sockets.
An echo server plays the target; the proxy runs as a tunnel-only listener.
The SOCKS scenario adds a minimal SOCKS5 relay as the second hop.
"""
import asyncio
import struct
import pytest
import pytest_asyncio
from unittest.mock import MagicMock
from proxy_core import create_proxy_server
from socks_tunnel import create_socks_server
from host_policy import HostPolicy
from structures import ConnectionContext, Outcome, TEAPOT_RESPONSE, ESTABLISHED_RESPONSE

async def _echo(reader, writer):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()

async def _wait_for_completion(callback, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        for call in callback.call_args_list:
            if call.args[0] == "COMPLETE":
                return call.args[1]
        await asyncio.sleep(0.01)
    raise AssertionError("connection never completed")

@pytest_asyncio.fixture
async def echo_port():
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

async def _start_proxy(policy, callback):
    server = await create_proxy_server("127.0.0.1", 0, policy, callback, tunnel_only=True)
    return server, server.sockets[0].getsockname()[1]

@pytest.mark.asyncio
async def test_connect_relays_both_directions(echo_port):
    callback = MagicMock()
    server, port = await _start_proxy(HostPolicy.from_entries(["blocked.example"]), callback)
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(f"CONNECT 127.0.0.1:{echo_port} HTTP/1.1\r\n\r\n".encode())
        await writer.drain()
        head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=2)
        assert head == ESTABLISHED_RESPONSE

        writer.write(b"ping")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(4), timeout=2) == b"ping"

        writer.write_eof()
        assert await asyncio.wait_for(reader.read(), timeout=2) == b""
        writer.close()

        ctx = await _wait_for_completion(callback)
        assert isinstance(ctx, ConnectionContext)
        assert ctx.outcome == Outcome.RELAYED
        assert (ctx.bytes_sent, ctx.bytes_received) == (4, 4)
    finally:
        server.close()
        await server.wait_closed()

@pytest.mark.asyncio
async def test_blocked_connect_gets_teapot_and_close():
    callback = MagicMock()
    server, port = await _start_proxy(HostPolicy.from_entries(["blocked.example"]), callback)
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"CONNECT blocked.example:443 HTTP/1.1\r\n\r\n")
        await writer.drain()
        assert await asyncio.wait_for(reader.read(), timeout=2) == TEAPOT_RESPONSE
        writer.close()

        ctx = await _wait_for_completion(callback)
        assert ctx.outcome == Outcome.BLOCKED
    finally:
        server.close()
        await server.wait_closed()

@pytest.mark.asyncio
async def test_non_connect_is_closed_without_response():
    callback = MagicMock()
    server, port = await _start_proxy(HostPolicy.from_entries([]), callback)
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n")
        await writer.drain()
        assert await asyncio.wait_for(reader.read(), timeout=2) == b""
        writer.close()

        ctx = await _wait_for_completion(callback)
        assert ctx.outcome == Outcome.FAILED
        assert ctx.bytes_sent == 0 and ctx.bytes_received == 0
    finally:
        server.close()
        await server.wait_closed()

# -- SOCKS through a real second hop --

async def _socks5_upstream(reader, writer):
    """Minimal no-auth SOCKS5 relay that answers CONNECT and then echoes."""
    try:
        _, nmethods = await reader.readexactly(2)
        await reader.readexactly(nmethods)
        writer.write(b"\x05\x00")
        _, _, _, atyp = await reader.readexactly(4)
        if atyp == 0x01:
            await reader.readexactly(4)
        elif atyp == 0x04:
            await reader.readexactly(16)
        else:
            await reader.readexactly((await reader.readexactly(1))[0])
        await reader.readexactly(2)
        writer.write(b"\x05\x00\x00\x01" + bytes(4) + b"\x00\x00")
        await writer.drain()
        await _echo(reader, writer)
    finally:
        writer.close()

@pytest.mark.asyncio
async def test_socks_tunnel_via_real_upstream():
    upstream = await asyncio.start_server(_socks5_upstream, "127.0.0.1", 0)
    upstream_port = upstream.sockets[0].getsockname()[1]
    callback = MagicMock()
    server = await create_socks_server(
        "127.0.0.1", 0, HostPolicy.from_entries(["blocked.example"]), callback,
        upstream=f"127.0.0.1:{upstream_port}"
    )
    port = server.sockets[0].getsockname()[1]
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"\x05\x01\x00")
        assert await asyncio.wait_for(reader.readexactly(2), timeout=2) == b"\x05\x00"
        writer.write(b"\x05\x01\x00\x01" + bytes([127, 0, 0, 1]) + struct.pack("!H", 9))
        reply = await asyncio.wait_for(reader.readexactly(10), timeout=2)
        assert reply[:2] == b"\x05\x00"

        writer.write(b"ping")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(4), timeout=2) == b"ping"
        writer.write_eof()
        assert await asyncio.wait_for(reader.read(), timeout=2) == b""
        writer.close()

        ctx = await _wait_for_completion(callback)
        assert ctx.protocol == "SOCKS"
        assert ctx.outcome == Outcome.RELAYED
        assert (ctx.bytes_sent, ctx.bytes_received) == (4, 4)
        assert (ctx.target_host, ctx.target_port) == ("127.0.0.1", 9)
    finally:
        server.close()
        await server.wait_closed()
        upstream.close()
        await upstream.wait_closed()
