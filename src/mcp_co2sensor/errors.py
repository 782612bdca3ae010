"""
Error types for the CO2 Sensor MCP Server.

Handlers express domain failures with ToolError (or a subclass) instead of
building JSON-RPC error objects directly. The dispatch boundary maps them to
JSON-RPC error codes in mcp_co2sensor.protocol.
"""

from __future__ import annotations

from typing import Any


class ToolError(Exception):
    """
    Base exception class for handler errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "unavailable", "internal").
        message: Human-readable error message (sent over the wire).
        details: Optional structured details (logged, never sent).

    Example:
        >>> raise ToolError(
        ...     error_code="invalid_argument",
        ...     message="Invalid resource URI",
        ...     details={"uri": "bogus"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for logging.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(ToolError):
    """
    Raised when a required parameter is missing or names an unknown resource.

    Maps to JSON-RPC "Invalid params" (-32602).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class NotFoundError(ToolError):
    """
    Raised when a tool name is not in the catalog.

    Maps to JSON-RPC "Method not found" (-32601).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="not_found", message=message, details=details)


class UnavailableError(ToolError):
    """
    Raised when the hardware transport cannot be opened or written.

    The acquisition engine absorbs this error; it only reaches the wire if a
    handler lets it escape, in which case it maps to an internal error.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="unavailable", message=message, details=details)


class InternalError(ToolError):
    """
    Raised for unexpected failures inside a handler.

    Maps to JSON-RPC "Internal error" (-32603).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="internal", message=message, details=details)
