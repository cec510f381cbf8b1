#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared error taxonomy, constants, and the base handler used by the
HTTP and SOCKS listeners.
"""

import asyncio
import re
import socket
from typing import Optional, Callable, Tuple, TYPE_CHECKING

from structures import ConnectionContext, DEFAULT_TUNNEL_PORT

if TYPE_CHECKING:
    from host_policy import HostPolicy

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
IDLE_TIMEOUT = 60.0
MAX_HEADER_LIST_SIZE = 262144
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536

ManagerCallback = Callable[[str, object], None]

# -- Errors --

class ProxyError(Exception):
    """Base exception for Proxy operations."""

class ConfigError(ProxyError):
    """Startup configuration is unusable (policy source, ports)."""

class ProtocolError(ProxyError):
    """The client spoke something other than the expected handshake."""

class PayloadTooLargeError(ProtocolError):
    """Raised when a forwarded request body exceeds the safe limit."""

class DialError(ProxyError):
    """The outbound leg to the target could not be established."""

# -- Stateless Helper Functions --

def parse_target(authority: str, default_port: int = DEFAULT_TUNNEL_PORT) -> Tuple[str, int]:
    """
    Parses a host or host:port string into (hostname, port).
    Bracketed IPv6 literals are supported; a missing port yields default_port.
    Raises ProtocolError on an empty host or a non-numeric port.
    """
    if not authority:
        raise ProtocolError("Empty target authority")
    if authority.startswith('['):
        end = authority.find(']')
        if end == -1:
            raise ProtocolError(f"Unterminated IPv6 literal: {authority}")
        host = authority[1:end]
        rem = authority[end + 1:]
        if not rem:
            port_str = ""
        elif rem.startswith(':'):
            port_str = rem[1:]
        else:
            raise ProtocolError(f"Garbage after IPv6 literal: {authority}")
    elif ':' in authority:
        host, port_str = authority.rsplit(':', 1)
    else:
        host, port_str = authority, ""

    if not host:
        raise ProtocolError(f"Missing host in {authority!r}")
    if not port_str:
        return host, default_port
    try:
        port = int(port_str)
    except ValueError as exc:
        raise ProtocolError(f"Invalid port in {authority!r}") from exc
    if not 0 < port < 65536:
        raise ProtocolError(f"Port out of range in {authority!r}")
    return host, port

def split_host_port(address: str) -> Tuple[str, int]:
    """Splits a host:port address where the port is mandatory."""
    if address.startswith('['):
        if ']:' not in address:
            raise ProtocolError(f"Missing port in address {address!r}")
    elif ':' not in address:
        raise ProtocolError(f"Missing port in address {address!r}")
    return parse_target(address)

async def close_writer(writer: Optional[asyncio.StreamWriter]) -> None:
    """Closes a stream writer, ignoring errors from an already broken transport."""
    if writer is None:
        return
    try:
        if not writer.is_closing():
            writer.close()
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass

class BaseProxyHandler:
    """
    Base class containing shared logic for the HTTP and SOCKS handlers.
    Holds the policy reference and reports lifecycle events.
    """
    __slots__ = ('policy', 'callback', 'ctx')

    protocol_name = "PROXY"

    def __init__(
        self,
        policy: "HostPolicy",
        manager_callback: Optional[ManagerCallback],
        client: str
    ):
        """Initializes the handler for one accepted client."""
        self.policy = policy
        self.callback = manager_callback
        self.ctx = ConnectionContext(self.protocol_name, client)

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    def tag(self, msg: str) -> str:
        return f"[{self.ctx.protocol}] [Client {self.ctx.client}] {msg}"

    def _check_policy(self, candidate: str) -> bool:
        """Returns True (and logs the rule) when the candidate is blocked."""
        rule = self.policy.match(candidate)
        if rule is None:
            return False
        self.log("BLOCK", self.tag(f"Blocked host: {candidate} (rule: {rule})"))
        return True

    async def _dial(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Opens a direct TCP connection to the target."""
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except (OSError, asyncio.TimeoutError) as e:
            raise DialError(f"Error connecting to {host}:{port}: {e}") from e
        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return reader, writer
