#Filename: socks_tunnel.py
"""
SOCKS TUNNEL
SOCKS5 listener (RFC 1928, no-auth CONNECT subset). The target named in
the client's request is checked against the host policy, then dialed
through a second-hop SOCKS5 relay with python-socks and handed to the
relay engine.
"""

import asyncio
import ipaddress
import struct
from typing import Optional, Tuple

from python_socks import ProxyConnectionError, ProxyError as SocksClientError, ProxyTimeoutError
from python_socks.async_.asyncio import Proxy

from host_policy import HostPolicy
from metered import MeteredStream
from proxy_common import (
    BaseProxyHandler, ProtocolError, DialError, ManagerCallback, IDLE_TIMEOUT,
    split_host_port, close_writer
)
from relay import relay, TRANSFER_ERRORS
from structures import Outcome, format_client, TEAPOT_RESPONSE

# -- Constants --
SOCKS_VERSION = 0x05
AUTH_NONE = 0x00
AUTH_NO_ACCEPTABLE = 0xFF
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
REP_SUCCESS = 0x00
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

DEFAULT_SOCKS_UPSTREAM = "127.0.0.1:1080"

SOCKS_DIAL_ERRORS = (SocksClientError, ProxyConnectionError, ProxyTimeoutError, OSError)

def build_reply(rep: int) -> bytes:
    """Server reply with a zero IPv4 bound address."""
    return struct.pack("!BBBB4sH", SOCKS_VERSION, rep, 0x00, ATYP_IPV4, b"\x00" * 4, 0)

class SocksTunnelHandler(BaseProxyHandler):
    """Handles one SOCKS5 client from greeting to relay completion."""
    __slots__ = ('reader', 'writer', 'upstream')

    protocol_name = "SOCKS"

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        policy: HostPolicy,
        manager_callback: Optional[ManagerCallback],
        upstream: str = DEFAULT_SOCKS_UPSTREAM
    ):
        super().__init__(policy, manager_callback, format_client(writer.get_extra_info('peername')))
        self.reader = reader
        self.writer = writer
        self.upstream = upstream

    async def _read_exactly(self, n: int) -> bytes:
        try:
            return await asyncio.wait_for(self.reader.readexactly(n), timeout=IDLE_TIMEOUT)
        except asyncio.IncompleteReadError as exc:
            raise ProtocolError("Client closed during SOCKS handshake") from exc
        except asyncio.TimeoutError as exc:
            raise ProtocolError("Read Timeout (Idle) in SOCKS handshake") from exc

    async def _send(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def extract_target(self) -> str:
        """
        Runs the greeting and request phases and returns the requested
        target rendered as host:port.
        """
        ver, nmethods = await self._read_exactly(2)
        if ver != SOCKS_VERSION:
            raise ProtocolError(f"Unsupported SOCKS version: {ver}")
        methods = await self._read_exactly(nmethods) if nmethods else b""
        if AUTH_NONE not in methods:
            await self._send(bytes([SOCKS_VERSION, AUTH_NO_ACCEPTABLE]))
            raise ProtocolError("Client offered no acceptable auth method")
        await self._send(bytes([SOCKS_VERSION, AUTH_NONE]))

        ver, cmd, _, atyp = await self._read_exactly(4)
        if ver != SOCKS_VERSION:
            raise ProtocolError(f"Unsupported SOCKS version in request: {ver}")

        if atyp == ATYP_IPV4:
            host = str(ipaddress.IPv4Address(await self._read_exactly(4)))
        elif atyp == ATYP_IPV6:
            host = f"[{ipaddress.IPv6Address(await self._read_exactly(16))}]"
        elif atyp == ATYP_DOMAIN:
            (length,) = await self._read_exactly(1)
            raw = await self._read_exactly(length)
            try:
                host = raw.decode('ascii')
            except UnicodeDecodeError as exc:
                raise ProtocolError("Non-ASCII domain name") from exc
        else:
            await self._send(build_reply(REP_ADDRESS_TYPE_NOT_SUPPORTED))
            raise ProtocolError(f"Unsupported address type: {atyp}")
        (port,) = struct.unpack("!H", await self._read_exactly(2))

        if cmd != CMD_CONNECT:
            await self._send(build_reply(REP_COMMAND_NOT_SUPPORTED))
            raise ProtocolError(f"Unsupported SOCKS command: {cmd}")
        return f"{host}:{port}"

    async def _dial(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Dials the target through the second-hop SOCKS5 relay."""
        try:
            proxy = Proxy.from_url(f"socks5://{self.upstream}")
            sock = await proxy.connect(dest_host=host, dest_port=port)
            return await asyncio.open_connection(sock=sock)
        except SOCKS_DIAL_ERRORS as e:
            raise DialError(f"Failed to connect to {host}:{port} via {self.upstream}: {e}") from e

    async def run(self) -> None:
        """Handshake, policy check, dial, relay."""
        u_w: Optional[asyncio.StreamWriter] = None
        try:
            try:
                target = await self.extract_target()
            except (ProtocolError, *TRANSFER_ERRORS) as e:
                self.log("ERROR", self.tag(f"SOCKS handshake failed: {e}"))
                self.ctx.finish(Outcome.FAILED, str(e))
                return
            self.log("ACCEPT", self.tag(f"target: {target}"))

            try:
                host, port = split_host_port(target)
            except ProtocolError as e:
                self.log("ERROR", self.tag(f"Failed to parse target address: {e}"))
                self.ctx.finish(Outcome.FAILED, str(e))
                return
            self.ctx.target_host, self.ctx.target_port = host, port

            if self._check_policy(host):
                try:
                    await self._send(TEAPOT_RESPONSE)
                except TRANSFER_ERRORS:
                    pass
                self.ctx.finish(Outcome.BLOCKED)
                return

            try:
                u_r, u_w = await self._dial(host, port)
            except DialError as e:
                self.log("ERROR", self.tag(str(e)))
                self.ctx.finish(Outcome.FAILED, str(e))
                return

            try:
                await self._send(build_reply(REP_SUCCESS))
                sent, received = await relay(
                    MeteredStream(self.reader, self.writer), MeteredStream(u_r, u_w)
                )
            except TRANSFER_ERRORS as e:
                self.log("ERROR", self.tag(f"Tunnel to {target} failed: {e}"))
                self.ctx.finish(Outcome.FAILED, str(e))
                return
            self.ctx.bytes_sent = sent
            self.ctx.bytes_received = received
            self.ctx.finish(Outcome.RELAYED)
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", self.tag(f"SOCKS Proxy Error: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
        finally:
            await close_writer(u_w)
            await close_writer(self.writer)

async def create_socks_server(
    host: str,
    port: int,
    policy: HostPolicy,
    manager_callback: Optional[ManagerCallback],
    upstream: str = DEFAULT_SOCKS_UPSTREAM
) -> asyncio.AbstractServer:
    """Binds the SOCKS listener. Every accepted connection runs in its own task."""
    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        handler = SocksTunnelHandler(r, w, policy, manager_callback, upstream=upstream)
        if manager_callback:
            manager_callback("ACCEPT", handler.tag("Received connection"))
        await handler.run()
        handler.ctx.finish(Outcome.FAILED, "Connection ended without an outcome")
        if manager_callback:
            manager_callback("COMPLETE", handler.ctx)

    return await asyncio.start_server(_handle, host, port)

async def start_socks_server(
    host: str,
    port: int,
    policy: HostPolicy,
    manager_callback: ManagerCallback,
    upstream: str = DEFAULT_SOCKS_UPSTREAM
) -> None:
    """Runs the SOCKS listener until cancelled."""
    server = await create_socks_server(host, port, policy, manager_callback, upstream=upstream)
    manager_callback("SYSTEM", f"SOCKS proxy listening on {host}:{port} (upstream: {upstream})")

    async with server:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            manager_callback("SYSTEM", "SOCKS proxy stopped")
            server.close()
            await server.wait_closed()
