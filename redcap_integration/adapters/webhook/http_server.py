"""HTTP server adapter for the Data Entry Trigger endpoint.

Serves REDCap's form POSTs with the standard library http.server. Request
threads hand each body to the asyncio event loop the integrator runs on
and block until the response is ready.
"""

import asyncio
import json
import logging
from concurrent.futures import Future
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from redcap_integration.adapters.webhook.receiver import WebhookReceiver

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"

# REDCap trigger bodies are a handful of short parameters
MAX_BODY_SIZE = 1024 * 1024


def log_late_outcome(future: Future[tuple[int, dict[str, Any]]]) -> None:
    """Log how a trigger ended after its request had already timed out."""
    if future.cancelled():
        logger.warning("Timed out trigger was cancelled before completing")
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Timed out trigger failed: {error}", exc_info=error)
        return
    status, payload = future.result()
    logger.info(
        f"Timed out trigger completed with status {status}",
        extra={"status": payload.get("status")},
    )


def make_request_handler(
    receiver: WebhookReceiver,
    loop: asyncio.AbstractEventLoop,
    trigger_path: str,
    request_timeout: float,
) -> type[BaseHTTPRequestHandler]:
    """Build a request handler class bound to one receiver and event loop.

    http.server instantiates the handler per request, so its dependencies
    are captured in a closure rather than passed to __init__.
    """

    class TriggerRequestHandler(BaseHTTPRequestHandler):
        """Routes trigger POSTs to the receiver and answers health checks."""

        def do_POST(self) -> None:
            route = self.path.split("?", 1)[0]
            if route == HEALTH_PATH:
                self._send_json(200, {"status": "healthy"})
                return
            if route != trigger_path:
                self.send_error(404, "Unknown endpoint")
                return

            body = self._read_body()
            if body is None:
                return

            future = asyncio.run_coroutine_threadsafe(receiver.handle_trigger(body), loop)
            try:
                status, payload = future.result(timeout=request_timeout)
            except TimeoutError:
                # A started pipeline always runs to completion
                future.add_done_callback(log_late_outcome)
                logger.error(
                    f"Trigger not processed within {request_timeout:g}s, "
                    "answering 504 while it completes"
                )
                self.send_error(504, "Trigger processing timed out")
                return
            except Exception as e:
                logger.error(f"Unhandled error processing trigger: {e}", exc_info=True)
                self.send_error(500, "Internal server error")
                return
            self._send_json(status, payload)

        def do_GET(self) -> None:
            if self.path.split("?", 1)[0] == HEALTH_PATH:
                self._send_json(200, {"status": "healthy"})
            else:
                self.send_error(404, "Unknown endpoint")

        def _read_body(self) -> bytes | None:
            """Read the request body, or answer with an error and return None."""
            try:
                length = int(self.headers.get("Content-Length", 0))
            except ValueError:
                self.send_error(400, "Invalid Content-Length")
                return None
            if length > MAX_BODY_SIZE:
                self.send_error(413, "Trigger body too large")
                return None
            return self.rfile.read(length) if length > 0 else b""

        def _send_json(self, status: int, data: dict[str, Any]) -> None:
            encoded = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(encoded)))
            self.end_headers()
            self.wfile.write(encoded)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(f"{self.client_address[0]} {format % args}")

    return TriggerRequestHandler


class WebhookHTTPServer:
    """Listens for Data Entry Triggers on one host, port and path."""

    def __init__(
        self,
        webhook_receiver: WebhookReceiver,
        host: str = "0.0.0.0",
        port: int = 8080,
        trigger_path: str = "/trigger",
        request_timeout: float = 60.0,
    ):
        """Initialize the server without binding the socket.

        Args:
            webhook_receiver: Receiver every trigger body is passed to.
            host: Interface to bind.
            port: Port to bind; 0 lets the OS pick one, readable after start().
            trigger_path: Path configured as the trigger URL in REDCap.
            request_timeout: Seconds a request thread waits for the pipeline.
        """
        if not trigger_path.startswith("/"):
            raise ValueError(f"trigger_path must start with '/', got {trigger_path!r}")
        self.webhook_receiver = webhook_receiver
        self.host = host
        self.port = port
        self.trigger_path = trigger_path
        self.request_timeout = request_timeout
        self.server: ThreadingHTTPServer | None = None
        self._serve_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Bind the socket and serve requests in a worker thread."""
        handler_class = make_request_handler(
            receiver=self.webhook_receiver,
            loop=asyncio.get_running_loop(),
            trigger_path=self.trigger_path,
            request_timeout=self.request_timeout,
        )
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.server.daemon_threads = True
        self.port = self.server.server_address[1]

        self._serve_task = asyncio.create_task(self._serve())
        logger.info(f"Accepting triggers on http://{self.host}:{self.port}{self.trigger_path}")

    async def _serve(self) -> None:
        if self.server is None:
            return
        try:
            await asyncio.to_thread(self.server.serve_forever)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Trigger server stopped unexpectedly: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop accepting requests and release the socket."""
        if self.server is not None:
            await asyncio.to_thread(self.server.shutdown)
            self.server.server_close()
            self.server = None
        if self._serve_task is not None:
            self._serve_task.cancel()
            try:
                await self._serve_task
            except asyncio.CancelledError:
                pass
            self._serve_task = None
        logger.info("Trigger server stopped")
