"""
Method and tool routing for the CO2 Sensor MCP Server.

This module provides:
- MethodRegistry: JSON-RPC method name -> request handler, plus a separate
  table of notification handlers
- ToolRegistry: tool name -> tool handler and its catalog descriptor
- @tool_handler: A decorator for registering tool handlers

Unknown request methods are answered with an empty success result so peers
calling optional methods do not stall. Unknown tool names are an error.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mcp_co2sensor.errors import InternalError, NotFoundError, ToolError
from mcp_co2sensor.logging import get_logger

if TYPE_CHECKING:
    from mcp_co2sensor.context import RequestContext

logger = get_logger(__name__)

Handler = Callable[["RequestContext", dict[str, Any]], Awaitable[Any]]

# Default global tool registry (singleton)
_default_tool_registry: ToolRegistry | None = None


def _empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class MethodRegistry:
    """
    Registry of JSON-RPC method handlers.

    Example:
        >>> registry = MethodRegistry()
        >>> registry.register("tools/list", handle_tools_list)
        >>> registry.register_notification("exit", handle_exit)
        >>> result = await registry.dispatch(ctx, {})
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._notification_handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        """
        Register a request handler.

        Raises:
            ValueError: If a handler is already registered for the name.
        """
        if name in self._handlers:
            raise ValueError(f"Method '{name}' is already registered")
        self._handlers[name] = handler

    def register_notification(self, name: str, handler: Handler) -> None:
        """
        Register a notification handler.

        Raises:
            ValueError: If a handler is already registered for the name.
        """
        if name in self._notification_handlers:
            raise ValueError(f"Notification '{name}' is already registered")
        self._notification_handlers[name] = handler

    def has_method(self, name: str) -> bool:
        return name in self._handlers

    def list_methods(self) -> list[str]:
        return list(self._handlers.keys())

    def list_notifications(self) -> list[str]:
        return list(self._notification_handlers.keys())

    async def dispatch(self, ctx: RequestContext, params: dict[str, Any]) -> Any:
        """
        Run the request handler for ctx.method.

        Returns:
            The handler's result, or {} for an unrecognized method.

        Raises:
            ToolError: If the handler raises one; any other exception is
                wrapped in InternalError.
        """
        handler = self._handlers.get(ctx.method)
        if handler is None:
            logger.debug(
                "Unknown method answered with empty result",
                extra={"method": ctx.method, "request_id": ctx.request_id},
            )
            return {}

        try:
            return await handler(ctx, params)
        except ToolError:
            raise
        except Exception as e:
            raise InternalError(
                message=f"Internal error in method '{ctx.method}': {e!s}",
                details={"method": ctx.method, "exception_type": type(e).__name__},
            ) from e

    async def notify(self, ctx: RequestContext, params: dict[str, Any]) -> None:
        """
        Run the notification handler for ctx.method.

        Unrecognized notifications are dropped. Handler failures are logged
        and never propagate.
        """
        handler = self._notification_handlers.get(ctx.method)
        if handler is None:
            logger.debug("Dropping unknown notification", extra={"method": ctx.method})
            return

        try:
            await handler(ctx, params)
        except Exception as e:
            logger.warning(
                "Error processing notification",
                extra={"method": ctx.method, "error": str(e)},
            )

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


@dataclass(frozen=True)
class ToolSpec:
    """A tool's catalog entry and handler."""

    name: str
    description: str
    handler: Handler
    input_schema: dict[str, Any] = field(default_factory=_empty_object_schema)

    def to_descriptor(self) -> dict[str, Any]:
        """Return the tools/list descriptor for this tool."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolRegistry:
    """
    Registry mapping tool names to handlers, in catalog order.

    Example:
        >>> registry = ToolRegistry()
        >>> registry.register("get_device_info", handler, "Get device information")
        >>> result = await registry.invoke("get_device_info", ctx, {})
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: Handler,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        """
        Register a tool handler.

        Raises:
            ValueError: If a tool is already registered for the name.
        """
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        self._tools[name] = ToolSpec(
            name=name,
            description=description,
            handler=handler,
            input_schema=input_schema or _empty_object_schema(),
        )

    def get_handler(self, name: str) -> Handler | None:
        spec = self._tools.get(name)
        return spec.handler if spec is not None else None

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def descriptors(self) -> list[dict[str, Any]]:
        """Return the tools/list catalog in registration order."""
        return [spec.to_descriptor() for spec in self._tools.values()]

    async def invoke(
        self, name: str, ctx: RequestContext, arguments: dict[str, Any]
    ) -> Any:
        """
        Invoke a tool handler by name.

        Raises:
            NotFoundError: If the tool is not registered.
            ToolError: If the handler raises one; any other exception is
                wrapped in InternalError.
        """
        handler = self.get_handler(name)
        if handler is None:
            raise NotFoundError(f"Unknown tool: {name}", details={"tool": name})

        try:
            return await handler(ctx, arguments)
        except ToolError:
            raise
        except Exception as e:
            raise InternalError(
                message=f"Internal error in tool '{name}': {e!s}",
                details={"tool": name, "exception_type": type(e).__name__},
            ) from e

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def get_default_tool_registry() -> ToolRegistry:
    """Get the global tool registry populated by @tool_handler."""
    global _default_tool_registry
    if _default_tool_registry is None:
        _default_tool_registry = ToolRegistry()
    return _default_tool_registry


def tool_handler(
    name: str,
    description: str = "",
    *,
    registry: ToolRegistry | None = None,
) -> Callable[[Handler], Handler]:
    """
    Decorator for registering a function as a tool handler.

    Example:
        >>> @tool_handler("get_device_info", "Get information about the device")
        ... async def handle_get_device_info(ctx: RequestContext, args: dict) -> dict:
        ...     return ctx.device.get_device_info()
    """

    def decorator(handler: Handler) -> Handler:
        target_registry = registry if registry is not None else get_default_tool_registry()
        target_registry.register(name, handler, description)
        return handler

    return decorator
