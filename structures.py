#Filename: structures.py
"""
CORE DATA STRUCTURES
Per-connection state and the fixed wire literals shared by the HTTP
and SOCKS listeners.
"""

import time
from enum import Enum
from typing import Optional, Set, Tuple, Union

# -- Constants --

DEFAULT_TUNNEL_PORT: int = 443
MAX_FORWARD_BODY_SIZE: int = 10 * 1024 * 1024  # 10MB limit for forwarded request bodies
RELAY_CHUNK_SIZE: int = 65536

PROXY_AGENT: str = "teapot-proxy"

# Fixed status lines written verbatim on the tunnel paths
TEAPOT_RESPONSE: bytes = b"HTTP/1.1 418 I'm a teapot\r\n\r\n"
ESTABLISHED_RESPONSE: bytes = (
    b"HTTP/1.1 200 Connection Established\r\n"
    b"Proxy-agent: " + PROXY_AGENT.encode('ascii') + b"\r\n"
    b"Connection: close\r\n\r\n"
)

# RFC 9110 Section 7.6.1: hop-by-hop fields are never forwarded
HOP_BY_HOP_HEADERS: Set[str] = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'proxy-connection', 'te', 'trailer', 'trailers', 'transfer-encoding', 'upgrade'
}

# Recomputed by the HTTP client from the outgoing request
REQUEST_MANAGED_HEADERS: Set[str] = {'host', 'content-length'}

# -- Types --

class Outcome(Enum):
    """Final disposition of a proxied connection."""
    PENDING = "pending"
    BLOCKED = "blocked"
    RELAYED = "relayed"
    FAILED = "failed"

Peername = Union[Tuple[str, int], Tuple[str, int, int, int], str, None]

def format_client(peername: Peername) -> str:
    """
    Renders a socket peername as a client identity string.
    IPv4-mapped IPv6 addresses collapse to their IPv4 form.
    """
    if isinstance(peername, tuple) and len(peername) >= 2:
        host = str(peername[0])
        if host.startswith('::ffff:') and '.' in host:
            host = host[7:]
        if ':' in host:
            return f"[{host}]:{peername[1]}"
        return f"{host}:{peername[1]}"
    if peername:
        return str(peername)
    return "<?>"

class ConnectionContext:
    """
    Lifecycle record of a single client connection.
    Created on accept, filled in by the handler, logged once on completion.
    """
    __slots__ = (
        'protocol', 'client', 'target_host', 'target_port', 'outcome',
        'bytes_sent', 'bytes_received', 'error', 'start_time', 'end_time'
    )

    def __init__(self, protocol: str, client: str) -> None:
        self.protocol = protocol
        self.client = client
        self.target_host: str = ""
        self.target_port: int = 0
        self.outcome = Outcome.PENDING
        # client -> target
        self.bytes_sent = 0
        # target -> client
        self.bytes_received = 0
        self.error: Optional[str] = None
        self.start_time = time.time()
        self.end_time: Optional[float] = None

    @property
    def target(self) -> str:
        """Target as host:port (or bare host when no port is known yet)."""
        if not self.target_host:
            return "<?>"
        host = f"[{self.target_host}]" if ':' in self.target_host else self.target_host
        return f"{host}:{self.target_port}" if self.target_port else host

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)

    def finish(self, outcome: Outcome, error: Optional[str] = None) -> None:
        """Records the final outcome. Only the first call wins."""
        if self.end_time is not None:
            return
        self.outcome = outcome
        self.error = error
        self.end_time = time.time()

    def summary(self) -> str:
        """One log line describing the finished connection."""
        line = (
            f"[{self.protocol}] [Client {self.client}] target: {self.target} "
            f"outcome: {self.outcome.value} sent: {self.bytes_sent} bytes "
            f"received: {self.bytes_received} bytes ({self.duration:.3f}s)"
        )
        if self.error:
            line += f" error: {self.error}"
        return line

    def __repr__(self) -> str:
        return f"<{self.protocol} {self.client} -> {self.target} {self.outcome.value}>"
