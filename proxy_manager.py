# proxy_manager.py

"""
Proxy Manager.
Runs the HTTP/CONNECT listener and the SOCKS listener side by side on one
event loop and turns handler lifecycle events into log lines.
"""

import asyncio
import logging
from typing import Optional, Any, Callable, List

import proxy_core
import socks_tunnel
from host_policy import HostPolicy
from structures import ConnectionContext, Outcome

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

log = logging.getLogger("ProxyManager")

def configure_logging(verbose: bool = False) -> None:
    """Installs the root handler used by the command line entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT
    )

class ProxyManager:
    def __init__(
        self,
        policy: HostPolicy,
        http_port: int = 8080,
        socks_port: int = 1081,
        bind_address: str = "0.0.0.0",
        tunnel_only: bool = False,
        socks_enabled: bool = True,
        socks_upstream: str = socks_tunnel.DEFAULT_SOCKS_UPSTREAM,
        external_callback: Optional[Callable[[str, Any], None]] = None
    ):
        self.policy = policy
        self.http_port = http_port
        self.socks_port = socks_port
        self.bind_address = bind_address
        self.tunnel_only = tunnel_only
        self.socks_enabled = socks_enabled
        self.socks_upstream = socks_upstream
        self.external_callback = external_callback
        self.completed = 0
        self.totals = {outcome: 0 for outcome in Outcome}
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []

    def unified_callback(self, level: str, msg: Any) -> None:
        """Maps handler events onto log records."""
        if level == "COMPLETE" and isinstance(msg, ConnectionContext):
            self.completed += 1
            self.totals[msg.outcome] += 1
            log.info(msg.summary())
        elif level in ("SYSTEM", "ACCEPT"):
            log.info(msg)
        elif level == "BLOCK":
            log.warning(msg)
        elif level == "ERROR":
            log.error(msg)
        else:
            log.debug(msg)

        if self.external_callback:
            try:
                self.external_callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    async def run(self) -> None:
        log.info("=== Starting Proxy Manager (%d blocked patterns) ===", len(self.policy))
        http_client = None if self.tunnel_only else proxy_core.create_http_client()
        try:
            self.tasks.append(asyncio.create_task(proxy_core.start_proxy_server(
                self.bind_address, self.http_port, self.policy, self.unified_callback,
                tunnel_only=self.tunnel_only, http_client=http_client)))
            if self.socks_enabled:
                self.tasks.append(asyncio.create_task(socks_tunnel.start_socks_server(
                    self.bind_address, self.socks_port, self.policy, self.unified_callback,
                    upstream=self.socks_upstream)))

            stopper = asyncio.create_task(self.stop_event.wait())
            done, _ = await asyncio.wait(
                [stopper, *self.tasks], return_when=asyncio.FIRST_COMPLETED
            )
            stopper.cancel()
            # A listener that exits on its own failed to bind or crashed
            for task in done:
                if task is not stopper and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in self.tasks:
                task.cancel()
            await asyncio.gather(*self.tasks, return_exceptions=True)
            self.tasks.clear()
            if http_client is not None:
                await http_client.aclose()
            log.info("Proxy Manager stopped after %d connections", self.completed)

    def stop(self) -> None:
        self.stop_event.set()
