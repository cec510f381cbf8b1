# teapot_proxy.py
"""
Teapot Proxy -- Forward proxy with a static host blocklist.

ARCHITECTURE:
- POLICY: 'host_policy.py' loads the blocklist once at startup.
- PROXY: Delegates to 'proxy_manager.py', which runs the HTTP/CONNECT
  listener ('proxy_core.py') and the SOCKS listener ('socks_tunnel.py').
- RELAY: 'relay.py' copies both directions through 'metered.py' counters.

Every option falls back to an environment variable, then a fixed default.
"""

import sys
import os
import asyncio
import argparse
import logging
from typing import List, Optional

# -- Network & Performance --
try:
    import uvloop
except ImportError:
    uvloop = None

from host_policy import HostPolicy
from proxy_common import ConfigError, split_host_port, ProtocolError
from proxy_manager import ProxyManager, configure_logging
from socks_tunnel import DEFAULT_SOCKS_UPSTREAM

# Global Configuration
DEFAULT_HTTP_PORT = 8080
DEFAULT_SOCKS_PORT = 1081
DEFAULT_BIND = "0.0.0.0"
DEFAULT_BLACKLIST = "blacklist.txt"

TRUTHY = {"1", "true", "yes", "on"}

logger = logging.getLogger(__name__)

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in TRUTHY

def _port(value: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid port: {value!r}") from exc
    if not 0 <= port < 65536:
        raise ConfigError(f"Port out of range: {port}")
    return port

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Teapot Proxy - HTTP/CONNECT/SOCKS forward proxy with a host blocklist")
    parser.add_argument("--bind", default=os.environ.get("TEAPOT_BIND", DEFAULT_BIND),
                        help=f"Listen address for both listeners (default: {DEFAULT_BIND})")
    parser.add_argument("-p", "--http-port", default=os.environ.get("PORT", str(DEFAULT_HTTP_PORT)),
                        help=f"HTTP/CONNECT listen port (env PORT, default: {DEFAULT_HTTP_PORT})")
    parser.add_argument("--tunnel-only", action="store_true", default=_env_flag("TEAPOT_TUNNEL_ONLY"),
                        help="Accept CONNECT only; other methods are dropped silently")
    parser.add_argument("--socks-port", default=os.environ.get("TEAPOT_SOCKS_PORT", str(DEFAULT_SOCKS_PORT)),
                        help=f"SOCKS listen port (default: {DEFAULT_SOCKS_PORT})")
    parser.add_argument("--no-socks", action="store_true", help="Disable the SOCKS listener")
    parser.add_argument("--socks-upstream", default=os.environ.get("TEAPOT_SOCKS_UPSTREAM", DEFAULT_SOCKS_UPSTREAM),
                        help=f"Second-hop SOCKS5 relay host:port (default: {DEFAULT_SOCKS_UPSTREAM})")
    parser.add_argument("-b", "--blacklist", default=os.environ.get("TEAPOT_BLACKLIST", DEFAULT_BLACKLIST),
                        help=f"Blocked host patterns, one per line (default: {DEFAULT_BLACKLIST})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parses and validates the command line. Raises ConfigError on bad values."""
    args = build_parser().parse_args(argv)
    args.http_port = _port(args.http_port)
    args.socks_port = _port(args.socks_port)
    try:
        split_host_port(args.socks_upstream)
    except ProtocolError as exc:
        raise ConfigError(f"Invalid SOCKS upstream {args.socks_upstream!r}: {exc}") from exc
    return args

def build_manager(args: argparse.Namespace) -> ProxyManager:
    """Loads the policy and wires the manager. Raises ConfigError on failure."""
    policy = HostPolicy.load(args.blacklist)
    return ProxyManager(
        policy,
        http_port=args.http_port,
        socks_port=args.socks_port,
        bind_address=args.bind,
        tunnel_only=args.tunnel_only,
        socks_enabled=not args.no_socks,
        socks_upstream=args.socks_upstream
    )

def _run(coro) -> None:
    if uvloop is not None and sys.platform != "win32":
        uvloop.run(coro)
    else:
        asyncio.run(coro)

def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
        configure_logging(args.verbose)
        manager = build_manager(args)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.critical("Failed to start: %s", e)
        return 1

    try:
        _run(manager.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except OSError as e:
        logger.critical("Listener failed: %s", e)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
