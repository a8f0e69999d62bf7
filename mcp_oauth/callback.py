"""Local redirect listener for the authorization-code flow.

The browser is sent back to ``http://{host}:{port}{path}`` once the user has
consented. ``CallbackListener`` serves exactly that URL for the lifetime of one
authentication attempt and hands the outcome to the waiting flow through a
one-shot future.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from .errors import AuthorizationTimeoutError, ConfigurationError, RedirectError

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PATH = "/oauth/callback"

# Five minutes for the user to complete consent
DEFAULT_TIMEOUT = 300.0

# Per connection; browsers open speculative connections that never send a request
REQUEST_READ_TIMEOUT = 10.0


@dataclass
class CallbackResult:
    """Query parameters received on the redirect.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter echoed back by the server
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if the redirect carried a code and no error."""
        return self.code is not None and self.error is None


_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; background: #f4f5f7; margin: 0; }}
        main {{ max-width: 480px; margin: 12vh auto; background: #fff; padding: 32px 40px;
                border-radius: 12px; border-top: 6px solid {accent}; }}
        h1 {{ font-size: 22px; margin: 0 0 12px 0; color: #1f2328; }}
        p {{ color: #57606a; line-height: 1.5; }}
        code {{ display: block; background: #f6f8fa; padding: 10px; border-radius: 6px;
                color: {accent}; white-space: pre-wrap; word-break: break-word; }}
    </style>
</head>
<body>
    <main>
        <h1>{title}</h1>
        <p>{message}</p>
        {detail}
    </main>
</body>
</html>"""


def render_success_page() -> str:
    """Page shown after a code was received."""
    return _PAGE_HTML.format(
        title="Authorization Successful",
        accent="#1a7f37",
        message="You can close this window and return to your application.",
        detail="",
    )


def render_error_page(error: str, description: str | None = None) -> str:
    """Page shown when the server redirected with an error.

    All values are HTML-escaped; they come straight from the query string.
    """
    detail = html.escape(error)
    if description:
        detail = f"{detail}: {html.escape(description)}"
    return _PAGE_HTML.format(
        title="Authorization Failed",
        accent="#cf222e",
        message="The authorization server reported an error. You can close this window.",
        detail=f"<code>{detail}</code>",
    )


def render_missing_code_page() -> str:
    """Page shown when the redirect carried neither a code nor an error."""
    return _PAGE_HTML.format(
        title="Authorization Failed",
        accent="#cf222e",
        message="No authorization code was provided in the redirect.",
        detail="",
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL or request target with query parameters

    Returns:
        CallbackResult with parsed parameters
    """
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class CallbackListener:
    """Transient HTTP listener for one authentication attempt.

    Usage:
        listener = CallbackListener("localhost", 12334)
        await listener.start()
        try:
            result = await listener.wait_for_callback(timeout=300)
        finally:
            await listener.stop()

    The first redirect that carries a code or an error decides the outcome.
    Later requests still get a page but cannot change it. The listener never
    stops itself; whoever started it stops it.
    """

    def __init__(
        self,
        host: str,
        port: int,
        path: str = DEFAULT_CALLBACK_PATH,
        read_timeout: float = REQUEST_READ_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.path = path
        self.read_timeout = read_timeout

        self._server: asyncio.Server | None = None
        self._future: asyncio.Future[CallbackResult] | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def redirect_url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    async def start(self) -> None:
        """Bind the listener.

        Raises:
            ConfigurationError: If the address is unavailable
        """
        if self._server is not None:
            return

        self._future = asyncio.get_running_loop().create_future()
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port
            )
        except OSError as e:
            self._future = None
            raise ConfigurationError(
                f"Cannot listen for the OAuth redirect on {self.host}:{self.port}: {e}. "
                f"Choose another callback port."
            ) from e

        if self.port == 0:
            sockets = self._server.sockets
            if sockets:
                self.port = sockets[0].getsockname()[1]

        logger.debug(f"Callback listener started on {self.redirect_url}")

    async def stop(self) -> None:
        """Stop listening. Safe to call more than once."""
        server, self._server = self._server, None
        if server is None:
            return

        server.close()
        # wait_closed() also waits for open client connections (3.12.1+)
        for writer in list(self._writers):
            writer.close()
        await server.wait_closed()

        if self._future is not None and not self._future.done():
            self._future.cancel()
        logger.debug("Callback listener stopped")

    async def wait_for_callback(self, timeout: float | None = DEFAULT_TIMEOUT) -> CallbackResult:
        """Wait for the redirect.

        Returns:
            CallbackResult carrying the authorization code

        Raises:
            RedirectError: If the server redirected with an error
            AuthorizationTimeoutError: If no redirect arrived in time
        """
        if self._future is None:
            raise ConfigurationError("Callback listener not started")

        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)
        except asyncio.TimeoutError:
            raise AuthorizationTimeoutError(
                f"Timed out waiting for the OAuth redirect after {timeout} seconds"
            ) from None

    def _resolve(self, result: CallbackResult) -> None:
        future = self._future
        if future is None or future.done():
            logger.debug("Ignoring redirect received after the attempt completed")
            return

        if result.error is not None:
            future.set_exception(RedirectError(result.error, result.error_description))
        else:
            future.set_result(result)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        self._writers.add(writer)
        try:
            try:
                request_line = await asyncio.wait_for(
                    self._read_request_head(reader), timeout=self.read_timeout
                )
            except asyncio.TimeoutError:
                logger.debug("Closing callback connection that sent no request")
                return
            except ValueError:
                # Line longer than the StreamReader limit
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Request too large")
                return

            if not request_line:
                return

            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            if urlparse(target).path != self.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            if method != "GET":
                await self._send_response(
                    writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed"
                )
                return

            result = parse_callback_url(target)

            if result.error is not None:
                logger.debug(f"Redirect carried error: {result.error}")
                self._resolve(result)
                await self._send_html_response(
                    writer,
                    HTTPStatus.BAD_REQUEST,
                    render_error_page(result.error, result.error_description),
                )
            elif result.code is not None:
                logger.debug("Redirect carried an authorization code")
                self._resolve(result)
                await self._send_html_response(writer, HTTPStatus.OK, render_success_page())
            else:
                await self._send_html_response(
                    writer, HTTPStatus.BAD_REQUEST, render_missing_code_page()
                )

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Callback connection closed early: {e}")

        finally:
            self._writers.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    @staticmethod
    async def _read_request_head(reader: asyncio.StreamReader) -> bytes:
        """Read the request line and drain the headers."""
        request_line = await reader.readline()
        while request_line:
            header_line = await reader.readline()
            if header_line in (b"\r\n", b"\n", b""):
                break
        return request_line

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Cache-Control: no-store\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "CallbackListener":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
