"""
Request context for the CO2 Sensor MCP Server.

A RequestContext is built for every request and notification and passed to
the handler together with the params. It carries the request identity and a
reference to the server, through which handlers reach the device, the tool
catalog and the lifecycle controls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_co2sensor.config import AppConfig
    from mcp_co2sensor.device import Device
    from mcp_co2sensor.protocol import Notification, Request, RequestId
    from mcp_co2sensor.server import MCPServer


@dataclass
class RequestContext:
    """
    Encapsulates the context of a single request or notification.

    Attributes:
        method: JSON-RPC method name.
        request_id: Request id, or None for notifications.
        server: The server handling the message.
        timestamp: When the message was received (UTC).
        metadata: Additional per-request data.
    """

    method: str
    request_id: RequestId | None
    server: MCPServer
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        return self.request_id is None

    @property
    def device(self) -> Device:
        """The device served by this server."""
        return self.server.device

    @property
    def config(self) -> AppConfig:
        return self.server.config

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for logging."""
        return {
            "method": self.method,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_envelope(
        cls,
        envelope: Request | Notification,
        server: MCPServer,
        metadata: dict[str, Any] | None = None,
    ) -> RequestContext:
        """
        Create a context from a classified envelope.

        Example:
            >>> req = parse_message('{"jsonrpc":"2.0","id":1,"method":"tools/list"}')
            >>> ctx = RequestContext.from_envelope(req, server)
            >>> ctx.request_id
            1
        """
        return cls(
            method=envelope.method,
            request_id=getattr(envelope, "id", None),
            server=server,
            timestamp=datetime.now(UTC),
            metadata=metadata or {},
        )
