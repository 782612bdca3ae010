"""
Line framing for byte streams.

Both the protocol stream (stdin) and the hardware stream (serial port) carry
newline-delimited text. LineFramer turns arbitrarily chunked bytes into
complete lines: a line split across reads is reassembled, and several lines
arriving in one read are split apart.
"""

from __future__ import annotations

from mcp_co2sensor.logging import get_logger

logger = get_logger(__name__)

# Upper bound on a buffered partial line before it is discarded
DEFAULT_MAX_LINE_BYTES = 1024 * 1024


class LineFramer:
    """
    Incremental splitter of a byte stream into decoded text lines.

    Lines end at b"\\n"; a preceding b"\\r" is stripped, so both "\\n" and
    "\\r\\n" terminated streams are accepted. Undecodable bytes are replaced
    rather than raising.

    Example:
        >>> framer = LineFramer()
        >>> framer.feed(b"CO2 (ppm):8")
        []
        >>> framer.feed(b"12\\r\\nCO2")
        ['CO2 (ppm):812']
    """

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes

    def feed(self, data: bytes) -> list[str]:
        """
        Add a chunk of bytes and return every line it completes.

        Args:
            data: Raw bytes from the stream.

        Returns:
            Completed lines, without terminators, in stream order.
        """
        self._buffer.extend(data)
        lines: list[str] = []

        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            lines.append(decode_line(raw))

        if len(self._buffer) > self._max_line_bytes:
            logger.warning(
                "Discarding oversized partial line",
                extra={"buffered_bytes": len(self._buffer)},
            )
            self._buffer.clear()

        return lines

    def flush(self) -> str | None:
        """Return the trailing partial line at end of stream, if any."""
        if not self._buffer:
            return None
        raw = bytes(self._buffer)
        self._buffer.clear()
        return decode_line(raw)

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by a newline."""
        return len(self._buffer)


def decode_line(raw: bytes) -> str:
    """Decode one raw line as UTF-8, dropping the line terminator."""
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")
