"""
MCP Server implementation for the CO2 Sensor MCP Server.

MCPServer reads JSON-RPC lines from stdin, classifies each one, dispatches
requests in their own tasks (so a pending sensor acquisition never blocks the
next line) and writes exactly one response per request to stdout.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import TextIO

from mcp_co2sensor.config import AppConfig, load_config
from mcp_co2sensor.context import RequestContext
from mcp_co2sensor.device import Device
from mcp_co2sensor.emitter import ResponseEmitter
from mcp_co2sensor.errors import ToolError
from mcp_co2sensor.framing import LineFramer
from mcp_co2sensor.handlers import build_method_registry, server_info_params
from mcp_co2sensor.logging import get_logger, setup_logging
from mcp_co2sensor.protocol import (
    Malformed,
    Notification,
    create_internal_error,
    format_error_response,
    format_success_response,
    parse_message,
    tool_error_to_jsonrpc_error,
)
from mcp_co2sensor.routing import MethodRegistry, ToolRegistry, get_default_tool_registry

logger = get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# Upper bound on waiting for in-flight requests while closing
CLOSE_DRAIN_TIMEOUT = 2.0


async def process_message(line: str, server: MCPServer) -> str | None:
    """
    Process a single JSON-RPC line and return the response.

    This function handles the complete message lifecycle:
    1. Classify the line (request, notification or malformed)
    2. Create a RequestContext
    3. Dispatch to the method or notification handler
    4. Format the response (success or error)

    Args:
        line: One line of input.
        server: The server providing handlers and the device.

    Returns:
        JSON string containing the response, or None for notifications.
    """
    envelope = parse_message(line)

    if isinstance(envelope, Malformed):
        logger.warning(
            "Rejected malformed message",
            extra={"code": envelope.error.code, "error": envelope.error.message},
        )
        return format_error_response(envelope.id, envelope.error).to_json()

    ctx = RequestContext.from_envelope(envelope, server)

    if isinstance(envelope, Notification):
        await server.methods.notify(ctx, envelope.params)
        return None

    try:
        result = await server.methods.dispatch(ctx, envelope.params)
        return format_success_response(envelope.id, result).to_json()

    except ToolError as e:
        log = logger.error if e.error_code == "internal" else logger.info
        log(
            "Request failed",
            extra={"context": ctx.to_dict(), "tool_error": e.to_dict()},
        )
        error = tool_error_to_jsonrpc_error(e)

    except Exception as e:
        logger.exception(
            "Unexpected error processing request",
            extra={"context": ctx.to_dict(), "error": str(e)},
        )
        error = create_internal_error()

    return format_error_response(envelope.id, error).to_json()


class MCPServer:
    """
    MCP Server that communicates via JSON-RPC 2.0 over stdio.

    Example:
        >>> server = MCPServer(AppConfig())
        >>> await server.run()

    Attributes:
        config: Application configuration.
        device: The device whose sensor is served.
        methods: JSON-RPC method handlers.
        tools: Tool catalog for tools/list and tools/call.
        emitter: Writer for the outgoing stream.
        running: Whether the server is currently running.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        device: Device | None = None,
        methods: MethodRegistry | None = None,
        tools: ToolRegistry | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        reader: asyncio.StreamReader | None = None,
    ) -> None:
        """
        Initialize the MCP Server.

        Args:
            config: Application configuration (defaults if not provided).
            device: Device to serve; built from config if not provided.
            methods: Method registry; the standard table if not provided.
            tools: Tool registry; the default catalog if not provided.
            stdin: Input stream; sys.stdin if not provided.
            stdout: Output stream; sys.stdout if not provided.
            reader: Pre-connected StreamReader, used instead of stdin.
        """
        self.config = config if config is not None else AppConfig()
        self.device = device if device is not None else Device(self.config)
        self.methods = methods if methods is not None else build_method_registry()
        self.tools = tools if tools is not None else get_default_tool_registry()
        self._stdin = stdin if stdin is not None else sys.stdin
        self.emitter = ResponseEmitter(stdout if stdout is not None else sys.stdout)
        self._reader = reader
        self.running = False
        self._started = False
        self._closed = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._shutdown_handle: asyncio.TimerHandle | None = None

    @property
    def in_flight(self) -> int:
        """Number of requests still being processed."""
        return len(self._tasks)

    async def handle_line(self, line: str) -> str | None:
        """
        Handle a single JSON-RPC line.

        Returns:
            JSON string containing the response, or None for notifications.
        """
        return await process_message(line, self)

    def submit(self, line: str) -> asyncio.Task[None]:
        """Process a line in its own task and emit its response when done."""
        task = asyncio.create_task(self._handle_and_emit(line))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle_and_emit(self, line: str) -> None:
        try:
            response = await self.handle_line(line)
        except Exception as e:
            logger.exception("Error in message handling", extra={"error": str(e)})
            self.emitter.send_error(None, create_internal_error())
            return

        if response is not None:
            self.emitter.write_line(response)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight requests to finish."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, discover: bool = True) -> None:
        """Start the device and announce the server."""
        if self._started:
            return
        self._started = True
        self.running = True
        await self.device.start(discover=discover)
        self.emitter.send_notification(
            "server/info", server_info_params(self.config.server)
        )
        logger.info(
            "MCP Server starting",
            extra={"methods": self.methods.list_methods(), "tools_count": len(self.tools)},
        )

    async def run(self, discover: bool = True) -> None:
        """
        Run the server until stdin closes, stop() is called, or shutdown.

        Each line from stdin is treated as one JSON-RPC message.
        """
        await self.start(discover=discover)

        try:
            reader = self._reader
            if reader is None:
                reader = await self._connect_stdin()

            read_task = asyncio.create_task(self._read_loop(reader))
            stop_task = asyncio.create_task(self._stop_event.wait())
            try:
                await asyncio.wait(
                    {read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in (read_task, stop_task):
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
        finally:
            await self.close()

    async def _connect_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, self._stdin)
        return reader

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        framer = LineFramer()
        while self.running:
            try:
                chunk = await reader.read(READ_CHUNK_SIZE)
            except (OSError, ValueError) as e:
                logger.error("Error reading input stream", extra={"error": str(e)})
                break

            if not chunk:
                tail = framer.flush()
                if tail and tail.strip():
                    self.submit(tail.strip())
                break

            for line in framer.feed(chunk):
                line = line.strip()
                if line:
                    self.submit(line)

        # EOF: let in-flight requests answer before closing
        await self.drain()

    def stop(self) -> None:
        """Stop the server gracefully."""
        if self.running:
            logger.info("MCP Server stopping")
        self.running = False
        self._stop_event.set()

    def request_shutdown(self) -> None:
        """Stop after the grace delay so the shutdown response can flush."""
        if self._shutdown_handle is not None:
            return
        loop = asyncio.get_running_loop()
        delay = self.config.server.shutdown_grace_ms / 1000.0
        self._shutdown_handle = loop.call_later(delay, self.stop)

    async def close(self) -> None:
        """Release the device and finish outstanding requests."""
        if self._closed:
            return
        self._closed = True
        self.running = False

        if self._shutdown_handle is not None:
            self._shutdown_handle.cancel()
            self._shutdown_handle = None

        # Stopping the device resolves pending acquisitions with fallback data
        await self.device.stop()
        await self.drain(timeout=CLOSE_DRAIN_TIMEOUT)
        for task in list(self._tasks):
            task.cancel()

        logger.info("MCP Server stopped")


def create_server(config: AppConfig | None = None) -> MCPServer:
    """Create an MCP Server with the standard methods and tool catalog."""
    return MCPServer(config=config)


async def run_server(config: AppConfig) -> None:
    """
    Run the server on stdio with signal handling.

    SIGINT and SIGTERM stop the server gracefully.
    """
    server = create_server(config)
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        server.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except (ValueError, NotImplementedError):
            # Signal handling not supported on this platform
            pass

    await server.run()


def main(argv: list[str] | None = None) -> int:
    """Console entry point. Returns the process exit status."""
    config = load_config(cli_args=argv)
    setup_logging(config.logging)

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        pass
    return 0
