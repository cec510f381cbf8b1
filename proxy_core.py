#Filename: proxy_core.py
"""
HTTP PROXY CORE
HTTP/1.1 listener for the forward proxy.
CONNECT requests become opaque tunnels; any other method is re-issued
against the origin with httpx, or silently dropped on a tunnel-only listener.
"""

import asyncio
from typing import Optional, Tuple, List, Dict
from urllib.parse import urlsplit

import httpx

from host_policy import HostPolicy
from metered import MeteredStream
from proxy_common import (
    BaseProxyHandler, ProxyError, ProtocolError, PayloadTooLargeError, DialError,
    ManagerCallback, STRICT_HEADER_PATTERN, IDLE_TIMEOUT, MAX_HEADER_LIST_SIZE,
    COMPACTION_THRESHOLD, READ_CHUNK_SIZE, parse_target, close_writer
)
from relay import relay, TRANSFER_ERRORS
from structures import (
    Outcome, format_client, HOP_BY_HOP_HEADERS, REQUEST_MANAGED_HEADERS,
    MAX_FORWARD_BODY_SIZE, TEAPOT_RESPONSE, ESTABLISHED_RESPONSE
)

# Forwarded requests only; tunnels have no timeouts
FORWARD_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

def create_http_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Builds the shared origin client. Environment proxies are ignored to avoid loops."""
    return httpx.AsyncClient(
        transport=transport,
        timeout=FORWARD_TIMEOUT,
        follow_redirects=False,
        trust_env=False
    )

def filter_headers(
    headers: List[Tuple[str, str]], extra_drop: Optional[set] = None
) -> List[Tuple[str, str]]:
    """Drops hop-by-hop fields, including any named by the Connection header."""
    drop = set(HOP_BY_HOP_HEADERS)
    if extra_drop:
        drop |= extra_drop
    for k, v in headers:
        if k.lower() == 'connection':
            drop |= {t.strip().lower() for t in v.split(',') if t.strip()}
    return [(k, v) for k, v in headers if k.lower() not in drop]

class Http11ProxyHandler(BaseProxyHandler):
    """
    Handles one HTTP/1.1 client connection: either a CONNECT tunnel or a
    single forwarded request. The connection is closed afterwards.
    """
    __slots__ = (
        'reader', 'writer', 'tunnel_only', 'http_client', 'buffer',
        '_buffer_offset', '_previous_byte_was_cr'
    )

    protocol_name = "HTTP"

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        policy: HostPolicy,
        manager_callback: Optional[ManagerCallback],
        tunnel_only: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
        initial_data: bytes = b""
    ):
        """Initializes the Http11ProxyHandler."""
        super().__init__(policy, manager_callback, format_client(writer.get_extra_info('peername')))
        self.reader = reader
        self.writer = writer
        self.tunnel_only = tunnel_only
        self.http_client = http_client
        self.buffer = bytearray(initial_data)
        self._buffer_offset = 0
        self._previous_byte_was_cr = False

    async def _read_strict_line(self) -> bytes:
        """
        Reads a single line from the buffer/stream, enforcing the header size limit.
        Returns b"" on a clean end-of-stream.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                if len(self.buffer) - self._buffer_offset > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if (len(self.buffer) - self._buffer_offset) > MAX_HEADER_LIST_SIZE:
                    raise ProtocolError("Header Line Exceeded Max Length")

                if (
                    self._buffer_offset > COMPACTION_THRESHOLD
                    and self._buffer_offset > (len(self.buffer) // 2)
                ):
                    del self.buffer[:self._buffer_offset]
                    self._buffer_offset = 0

                try:
                    data = await asyncio.wait_for(
                        self.reader.read(READ_CHUNK_SIZE), timeout=IDLE_TIMEOUT
                    )
                except asyncio.TimeoutError as exc:
                    raise ProtocolError("Read Timeout (Idle)") from exc

                if not data:
                    if len(self.buffer) - self._buffer_offset > 0:
                        raise ProtocolError("Incomplete message")
                    return b""
                self.buffer.extend(data)
                continue

            line_len = lf_index - self._buffer_offset
            if line_len > MAX_HEADER_LIST_SIZE:
                raise ProtocolError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                if self.buffer[lf_index - 1] == 0x0D:
                    is_crlf = True
            elif lf_index == self._buffer_offset:
                if self._previous_byte_was_cr:
                    is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            if line_end > self._buffer_offset:
                line = bytes(self.buffer[self._buffer_offset:line_end])
            else:
                line = b""

            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    async def _read_head(self) -> Optional[Tuple[str, str, str, List[Tuple[str, str]]]]:
        """Reads the request line and header block. None on an idle close."""
        line = await self._read_strict_line()
        if not line:
            return None
        try:
            method_b, target_b, version_b = line.split(b' ', 2)
            method = method_b.decode('ascii')
            target = target_b.decode('ascii')
            version = version_b.decode('ascii')
        except (ValueError, UnicodeDecodeError) as exc:
            raise ProtocolError("Malformed Request Line") from exc
        if not method or not target or not version.startswith('HTTP/'):
            raise ProtocolError("Malformed Request Line")

        headers: List[Tuple[str, str]] = []
        total = len(line)
        while True:
            h_line = await self._read_strict_line()
            if not h_line:
                break
            total += len(h_line)
            if total > MAX_HEADER_LIST_SIZE:
                raise ProtocolError("Header Section Too Large")
            if h_line[0] in (0x20, 0x09):
                raise ProtocolError("Obsolete Line Folding Rejected")
            match = STRICT_HEADER_PATTERN.match(h_line)
            if not match:
                raise ProtocolError("Invalid Header Syntax")
            try:
                key = match.group(1).decode('ascii')
                val = match.group(2).decode('latin-1').strip()
            except UnicodeDecodeError as exc:
                raise ProtocolError("Invalid Header Syntax") from exc
            headers.append((key, val))
        return method, target, version, headers

    async def run(self) -> None:
        """Reads one request and dispatches it."""
        try:
            try:
                head = await self._read_head()
            except ProtocolError as e:
                self.log("ERROR", self.tag(f"Error reading request: {e}"))
                self.ctx.finish(Outcome.FAILED, str(e))
                if not self.tunnel_only and "Timeout" not in str(e):
                    await self._send_error(400, "Bad Request")
                return

            if head is None:
                self.ctx.finish(Outcome.FAILED, "Client closed before sending a request")
                return
            method, target, version, headers = head

            if method == 'CONNECT':
                await self._handle_connect(target)
                return

            if self.tunnel_only:
                self.log("ERROR", self.tag(f"Invalid request method: {method}"))
                self.ctx.finish(Outcome.FAILED, f"Invalid request method: {method}")
                return

            await self._handle_forward(method, target, headers)
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", self.tag(f"HTTP/1.1 Proxy Error: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
        finally:
            await close_writer(self.writer)

    async def _handle_connect(self, target: str) -> None:
        """Handles a CONNECT request for tunneling."""
        self.ctx.protocol = "CONNECT"
        self.log("ACCEPT", self.tag(f"Target host: {target}"))
        try:
            host, port = parse_target(target)
        except ProtocolError as e:
            host, port, parse_error = "", 0, e
        else:
            parse_error = None
            self.ctx.target_host, self.ctx.target_port = host, port

        # The policy sees the authority exactly as the client sent it
        if self._check_policy(target):
            await self._write_raw(TEAPOT_RESPONSE)
            self.ctx.finish(Outcome.BLOCKED)
            return
        if parse_error is not None:
            self.log("ERROR", self.tag(f"Invalid CONNECT target: {parse_error}"))
            self.ctx.finish(Outcome.FAILED, str(parse_error))
            return

        try:
            u_r, u_w = await self._dial(host, port)
        except DialError as e:
            self.log("ERROR", self.tag(str(e)))
            self.ctx.finish(Outcome.FAILED, str(e))
            return

        try:
            self.writer.write(ESTABLISHED_RESPONSE)
            await self.writer.drain()

            client = MeteredStream(self.reader, self.writer)
            server = MeteredStream(u_r, u_w)
            # Bytes pipelined behind the CONNECT head belong to the tunnel
            if self._buffer_offset < len(self.buffer):
                pending = bytes(self.buffer[self._buffer_offset:])
                self._buffer_offset = len(self.buffer)
                await server.write(pending)

            sent, received = await relay(client, server)
            self.ctx.bytes_sent = sent
            self.ctx.bytes_received = received
            self.ctx.finish(Outcome.RELAYED)
        except TRANSFER_ERRORS as e:
            self.log("ERROR", self.tag(f"Tunnel to {host}:{port} failed: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
        finally:
            await close_writer(u_w)

    async def _handle_forward(self, method: str, target: str, headers: List[Tuple[str, str]]) -> None:
        """Re-issues a plain HTTP request against the origin and streams the response back."""
        headers_dict: Dict[str, str] = {k.lower(): v for k, v in headers}
        try:
            url, authority = self._resolve_url(target, headers_dict)
            scheme = urlsplit(url).scheme
            host, port = parse_target(authority, default_port=443 if scheme == 'https' else 80)
        except ProtocolError as e:
            self.log("ERROR", self.tag(f"Bad forward target: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
            await self._send_error(400, "Bad Request")
            return

        self.ctx.target_host, self.ctx.target_port = host, port
        self.log("ACCEPT", self.tag(f"target: {url}"))
        if self._check_policy(authority):
            self.ctx.finish(Outcome.BLOCKED)
            await self._send_error(418, "I'm a teapot")
            return

        try:
            body = await self._read_body(headers_dict)
        except PayloadTooLargeError as e:
            self.ctx.finish(Outcome.FAILED, str(e))
            await self._send_error(413, "Payload Too Large")
            return
        except ProtocolError as e:
            self.ctx.finish(Outcome.FAILED, str(e))
            await self._send_error(400, "Bad Request")
            return
        self.ctx.bytes_sent = len(body)

        request = self.http_client.build_request(
            method, url,
            headers=filter_headers(headers, REQUEST_MANAGED_HEADERS),
            content=body if body else None
        )
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            self.log("ERROR", self.tag(f"Dispatch to {url} failed: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
            await self._send_error(500, "Internal Server Error", str(e).encode('utf-8', 'replace'))
            return

        client = MeteredStream(None, self.writer)
        try:
            head = [f"HTTP/1.1 {response.status_code} {response.reason_phrase}\r\n".encode('latin-1')]
            for k, v in filter_headers(list(response.headers.multi_items())):
                head.append(f"{k}: {v}\r\n".encode('latin-1'))
            head.append(b"Connection: close\r\n\r\n")
            self.writer.write(b"".join(head))
            await self.writer.drain()

            if response.is_stream_consumed:
                await client.write(response.content)
            else:
                async for chunk in response.aiter_raw():
                    await client.write(chunk)
            self.ctx.finish(Outcome.RELAYED)
        except httpx.HTTPError as e:
            self.log("ERROR", self.tag(f"Origin stream from {url} failed: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
        except TRANSFER_ERRORS as e:
            self.log("DEBUG", self.tag(f"Client went away during response: {e}"))
            self.ctx.finish(Outcome.FAILED, str(e))
        finally:
            self.ctx.bytes_received = client.bytes_written
            await response.aclose()
        self.log("DEBUG", self.tag(f"HTTP request to {url} transferred {client.bytes_written} bytes"))

    def _resolve_url(self, target: str, headers_dict: Dict[str, str]) -> Tuple[str, str]:
        """Returns (absolute url, authority) for an absolute-form or origin-form target."""
        if target.startswith(('http://', 'https://')):
            parts = urlsplit(target)
            if not parts.netloc:
                raise ProtocolError(f"Missing host in {target!r}")
            # Policy and ctx see host[:port] without userinfo
            return target, parts.netloc.rpartition('@')[2]
        host = headers_dict.get('host', '')
        if not host or not target.startswith('/'):
            raise ProtocolError(f"Cannot determine host for {target!r}")
        return f"http://{host}{target}", host

    async def _read_body(self, headers_dict: Dict[str, str]) -> bytes:
        """Reads a Content-Length or chunked request body."""
        te = headers_dict.get('transfer-encoding', '').lower()
        cl = headers_dict.get('content-length')
        if 'chunked' in te:
            return await self._read_chunked_body()
        if cl:
            try:
                n = int(cl)
            except ValueError as exc:
                raise ProtocolError("Invalid Content-Length") from exc
            if n < 0:
                raise ProtocolError("Invalid Content-Length")
            return await self._read_bytes(n)
        return b""

    async def _read_chunked_body(self) -> bytes:
        """Reads a chunked HTTP body."""
        parts = []
        total = 0
        while True:
            line = await self._read_strict_line()
            if b';' in line:
                line, _ = line.split(b';', 1)
            try:
                size = int(line.strip(), 16)
            except ValueError as exc:
                raise ProtocolError("Invalid chunk size") from exc

            if size == 0:
                while True:
                    t = await self._read_strict_line()
                    if not t:
                        break
                break

            total += size
            if total > MAX_FORWARD_BODY_SIZE:
                raise PayloadTooLargeError(
                    f"Chunked body exceeded {MAX_FORWARD_BODY_SIZE} bytes."
                )
            parts.append(await self._read_bytes(size))
            await self._read_strict_line()
        return b"".join(parts)

    async def _read_bytes(self, n: int) -> bytes:
        """Reads exactly n bytes from the stream."""
        if n > MAX_FORWARD_BODY_SIZE:
            raise PayloadTooLargeError(f"Content-Length {n} exceeds forward limit.")

        while (len(self.buffer) - self._buffer_offset) < n:
            try:
                data = await asyncio.wait_for(
                    self.reader.read(READ_CHUNK_SIZE), timeout=IDLE_TIMEOUT
                )
            except asyncio.TimeoutError as exc:
                raise ProtocolError("Read Timeout (Idle) in Body") from exc
            if not data:
                raise ProtocolError("Incomplete read")

            if (
                self._buffer_offset > COMPACTION_THRESHOLD
                and self._buffer_offset > (len(self.buffer) // 2)
            ):
                del self.buffer[:self._buffer_offset]
                self._buffer_offset = 0
            self.buffer.extend(data)

        chunk = bytes(self.buffer[self._buffer_offset : self._buffer_offset + n])
        self._buffer_offset += n
        return chunk

    async def _write_raw(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except TRANSFER_ERRORS:
            pass

    async def _send_error(self, code: int, message: str, body: bytes = b"") -> None:
        """Sends an HTTP error response to the client."""
        head = (
            f"HTTP/1.1 {code} {message}\r\n"
            f"Connection: close\r\nContent-Length: {len(body)}\r\n"
        )
        if body:
            head += "Content-Type: text/plain; charset=utf-8\r\n"
        await self._write_raw(head.encode('latin-1') + b"\r\n" + body)

async def create_proxy_server(
    host: str,
    port: int,
    policy: HostPolicy,
    manager_callback: Optional[ManagerCallback],
    tunnel_only: bool = False,
    http_client: Optional[httpx.AsyncClient] = None
) -> asyncio.AbstractServer:
    """
    Binds the HTTP listener. Every accepted connection runs in its own task.
    A forwarding listener needs an http_client; a tunnel-only one does not.
    """
    if not tunnel_only and http_client is None:
        raise ProxyError("A forwarding HTTP listener requires an http_client")

    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        handler = Http11ProxyHandler(
            r, w, policy, manager_callback,
            tunnel_only=tunnel_only, http_client=http_client
        )
        if manager_callback:
            manager_callback("ACCEPT", handler.tag("Received connection"))
        await handler.run()
        handler.ctx.finish(Outcome.FAILED, "Connection ended without an outcome")
        if manager_callback:
            manager_callback("COMPLETE", handler.ctx)

    return await asyncio.start_server(_handle, host, port)

async def start_proxy_server(
    host: str,
    port: int,
    policy: HostPolicy,
    manager_callback: ManagerCallback,
    tunnel_only: bool = False,
    http_client: Optional[httpx.AsyncClient] = None
) -> None:
    """Runs the HTTP listener until cancelled."""
    server = await create_proxy_server(
        host, port, policy, manager_callback,
        tunnel_only=tunnel_only, http_client=http_client
    )
    mode = "CONNECT tunnel" if tunnel_only else "HTTP/CONNECT"
    manager_callback("SYSTEM", f"{mode} proxy listening on {host}:{port}")

    async with server:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            manager_callback("SYSTEM", f"{mode} proxy stopped")
            server.close()
            await server.wait_closed()
