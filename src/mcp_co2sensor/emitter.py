"""
Response emitter for the CO2 Sensor MCP Server.

All output on the protocol stream goes through ResponseEmitter: one compact
JSON document per line, flushed immediately. Responses are written in the
order handlers finish, so peers correlate by id, never by position.
"""

from __future__ import annotations

from typing import Any, TextIO

from mcp_co2sensor.logging import get_logger
from mcp_co2sensor.protocol import (
    JSONRPCError,
    JSONRPCResponse,
    RequestId,
    format_error_response,
    format_notification,
)

logger = get_logger(__name__)


class ResponseEmitter:
    """
    Line writer for the outgoing JSON-RPC stream.

    A failing stream (e.g., the peer closed stdout) is logged and otherwise
    ignored; it never raises into the dispatch path.

    Attributes:
        lines_written: Number of lines successfully written.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self.lines_written = 0

    def write_line(self, message: str) -> bool:
        """
        Write one serialized message followed by a newline.

        Returns:
            True if the line was written and flushed.
        """
        if "\n" in message:
            raise ValueError("Protocol messages must be single-line JSON")
        try:
            self._stream.write(message + "\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            logger.error("Failed to write to output stream", extra={"error": str(e)})
            return False
        self.lines_written += 1
        return True

    def send(self, response: JSONRPCResponse) -> bool:
        return self.write_line(response.to_json())

    def send_error(self, request_id: RequestId | None, error: JSONRPCError) -> bool:
        return self.send(format_error_response(request_id, error))

    def send_notification(self, method: str, params: dict[str, Any]) -> bool:
        """Write a server-initiated notification (no id)."""
        return self.write_line(format_notification(method, params))
