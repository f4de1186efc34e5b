"""HTTP surface of the Health Aggregator.

Minimal HTTP/1.1 server on the asyncio event loop. Only GET on the health
path is answered; every request triggers fresh probes.
"""

import asyncio
import json

import structlog

from .aggregator import HealthAggregator

logger = structlog.get_logger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_PATH = "/health"


class HealthServer:
    """Serve HealthAggregator snapshots over HTTP."""

    def __init__(
        self,
        aggregator: HealthAggregator,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        path: str = DEFAULT_PATH,
    ):
        """Initialize health server.

        Args:
            aggregator: Aggregator queried on every request.
            host: Interface to bind.
            port: Port to bind (0 picks a free port).
            path: Request path that returns the health document.
        """
        self._aggregator = aggregator
        self.host = host
        self.port = port
        self.path = path
        self._server: asyncio.Server | None = None

    @property
    def bound_port(self) -> int | None:
        """Port actually bound, once started."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Start the health server."""
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port,
        )
        logger.info(f"Health server started on http://{self.host}:{self.bound_port}{self.path}")

    async def stop(self) -> None:
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Health server stopped")

    async def serve_forever(self) -> None:
        """Start (if needed) and serve until cancelled."""
        if self._server is None:
            await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        try:
            # Read request line
            request_line = await asyncio.wait_for(
                reader.readline(),
                timeout=5.0,
            )
            request_str = request_line.decode("utf-8").strip()

            # Parse request
            parts = request_str.split(" ")
            if len(parts) >= 2:
                method, path = parts[0], parts[1]
            else:
                method, path = "GET", "/"
            path = path.split("?", 1)[0]

            # Read headers (we don't need them, just consume)
            while True:
                line = await reader.readline()
                if line == b"\r\n" or line == b"\n" or line == b"":
                    break

            # Handle request
            if method == "GET" and path == self.path:
                snapshot = await self._aggregator.snapshot()
                response_body = json.dumps(snapshot.to_dict())
                status_line = "HTTP/1.1 200 OK"
            else:
                response_body = json.dumps({"error": "Not Found"})
                status_line = "HTTP/1.1 404 Not Found"

            body = response_body.encode("utf-8")
            head = (
                f"{status_line}\r\n"
                f"Content-Type: application/json\r\n"
                f"Access-Control-Allow-Origin: *\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
            )
            writer.write(head.encode("utf-8") + body)
            await writer.drain()

        except asyncio.TimeoutError:
            logger.debug("Health check connection timed out")
        except Exception as e:
            logger.warning(f"Health check error: {e}")
        finally:
            writer.close()
            await writer.wait_closed()
