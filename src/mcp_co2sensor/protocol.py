"""
JSON-RPC 2.0 message classification and response formatting.

Every incoming line is parsed into exactly one envelope:

- Request: carries an id and obligates exactly one response.
- Notification: no id (absent or null); never produces a response.
- Malformed: the line could not be accepted; carries the error to report and
  whatever id could be recovered.

Error codes:
- -32700: Parse error (malformed JSON)
- -32600: Invalid Request (missing/invalid jsonrpc or method)
- -32601: Method not found (unknown tool name)
- -32602: Invalid params (missing/unknown parameter values)
- -32603: Internal error (handler failure)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from mcp_co2sensor.errors import ToolError

JSONRPC_VERSION = "2.0"

# Substituted for a missing id on any outgoing response.
SENTINEL_ID = 0

# =============================================================================
# JSON-RPC Error Codes
# =============================================================================

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

ERROR_CODE_MAP: dict[str, int] = {
    "invalid_argument": INVALID_PARAMS,
    "not_found": METHOD_NOT_FOUND,
    "unavailable": INTERNAL_ERROR,
    "internal": INTERNAL_ERROR,
}

RequestId = Union[str, int, float]


class JSONRPCError(Exception):
    """
    Represents a JSON-RPC 2.0 error object.

    This class is both an Exception (so it can be raised) and a data container
    for the `error` member of a response. Only code and message go over the
    wire.

    Attributes:
        code: Integer error code (per JSON-RPC 2.0 spec).
        message: Human-readable error message.
    """

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert the error to a dictionary for JSON serialization."""
        return {"code": self.code, "message": self.message}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return f"JSONRPCError(code={self.code}, message={self.message!r})"


# =============================================================================
# Envelopes
# =============================================================================


@dataclass(frozen=True)
class Request:
    """
    A JSON-RPC request: has an id and obligates exactly one response.

    Attributes:
        id: Opaque request identifier, echoed back unchanged.
        method: Method name.
        params: Parameters (always a dict; array params land in "_args").
    """

    id: RequestId
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    """A JSON-RPC notification: no id, never answered."""

    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Malformed:
    """
    A line that could not be accepted as a request or notification.

    Attributes:
        error: The error to report.
        id: The id recovered from the message, or None when unrecoverable.
    """

    error: JSONRPCError
    id: RequestId | None = None


Envelope = Union[Request, Notification, Malformed]


def parse_message(line: str) -> Envelope:
    """
    Parse and classify one line of input.

    Args:
        line: One line of text (without the trailing newline).

    Returns:
        A Request, Notification, or Malformed envelope. This function never
        raises for bad input.

    Example:
        >>> parse_message('{"jsonrpc":"2.0","id":1,"method":"tools/list"}')
        Request(id=1, method='tools/list', params={})
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        return Malformed(JSONRPCError(PARSE_ERROR, f"Parse error: {e.msg}"))
    except RecursionError:
        # Nesting deeper than the decoder can recurse
        return Malformed(JSONRPCError(PARSE_ERROR, "Parse error: nesting too deep"))

    if not isinstance(data, dict):
        return Malformed(
            JSONRPCError(INVALID_REQUEST, "Invalid Request: must be a JSON object")
        )

    request_id = data.get("id")

    if data.get("jsonrpc") != JSONRPC_VERSION:
        return Malformed(
            JSONRPCError(INVALID_REQUEST, "Invalid Request: missing jsonrpc version"),
            request_id,
        )

    method = data.get("method")
    if not isinstance(method, str) or not method:
        return Malformed(
            JSONRPCError(INVALID_REQUEST, "Invalid Request: missing method"),
            request_id,
        )

    params = data.get("params", {})
    if params is None:
        params = {}
    if isinstance(params, list):
        params = {"_args": params}
    if not isinstance(params, dict):
        if request_id is None:
            # Notifications are never answered, even when malformed
            return Notification(method=method, params={})
        return Malformed(
            JSONRPCError(INVALID_PARAMS, "Invalid params: must be an object or array"),
            request_id,
        )

    if request_id is None:
        return Notification(method=method, params=params)
    return Request(id=request_id, method=method, params=params)


# =============================================================================
# Response Formatting
# =============================================================================


@dataclass
class JSONRPCResponse:
    """
    A JSON-RPC 2.0 response. Either result or error is present, never both.

    Attributes:
        id: Request identifier (None is replaced by SENTINEL_ID on output).
        result: Success result (if not an error).
        error: Error object (if an error occurred).
    """

    id: RequestId | None
    result: Any | None = None
    error: JSONRPCError | None = None

    @property
    def is_error(self) -> bool:
        """Check if this is an error response."""
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert the response to a dictionary for JSON serialization."""
        response: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id if self.id is not None else SENTINEL_ID,
        }
        if self.error is not None:
            response["error"] = self.error.to_dict()
        else:
            response["result"] = self.result
        return response

    def to_json(self) -> str:
        """Serialize the response to a single-line JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"))


def format_success_response(request_id: RequestId | None, result: Any) -> JSONRPCResponse:
    """
    Format a successful JSON-RPC 2.0 response.

    Example:
        >>> format_success_response("req-1", {}).to_json()
        '{"jsonrpc":"2.0","id":"req-1","result":{}}'
    """
    return JSONRPCResponse(id=request_id, result=result)


def format_error_response(
    request_id: RequestId | None, error: JSONRPCError
) -> JSONRPCResponse:
    """
    Format a JSON-RPC 2.0 error response.

    Example:
        >>> format_error_response(None, JSONRPCError(-32700, "Parse error")).to_json()
        '{"jsonrpc":"2.0","id":0,"error":{"code":-32700,"message":"Parse error"}}'
    """
    return JSONRPCResponse(id=request_id, error=error)


def format_notification(method: str, params: dict[str, Any]) -> str:
    """Serialize a server-initiated notification to a single-line JSON string."""
    return json.dumps(
        {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params},
        separators=(",", ":"),
    )


def tool_error_to_jsonrpc_error(tool_error: ToolError) -> JSONRPCError:
    """
    Convert a ToolError to a JSONRPCError.

    Unknown error codes map to an internal error. Details are dropped.
    """
    code = ERROR_CODE_MAP.get(tool_error.error_code, INTERNAL_ERROR)
    if code == INTERNAL_ERROR:
        return create_internal_error()
    return JSONRPCError(code=code, message=tool_error.message)


def create_internal_error() -> JSONRPCError:
    """Create the generic internal error sent for unexpected failures."""
    return JSONRPCError(code=INTERNAL_ERROR, message="Internal error")
