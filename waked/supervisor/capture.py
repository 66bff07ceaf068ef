"""Output Capture: Turns a child's raw output stream into log lines."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from waked.logging_config import get_logger

logger = get_logger(__name__)

LogSink = Callable[[str, str], None]

LINE_LIMIT = 1024 * 1024   # longest line the reader will assemble
PUMP_CHUNK = 64 * 1024


def log_exe_line(exe_path: str, line: str) -> None:
    """Default sink: one structured log event per child output line."""
    logger.info("exe_output", exe=exe_path, line=line)


class OutputCapture:
    """Write sink for one stream of one invocation.

    Writes go into an internal buffer; a reader task splits it on newlines
    and hands each line, tagged with the executable path, to the sink.
    Must be started and closed from inside a running event loop.
    """

    def __init__(self, exe_path: str, sink: Optional[LogSink] = None, stream: str = "stdout") -> None:
        self.exe_path = exe_path
        self.stream = stream
        self._sink = sink or log_exe_line
        self._buffer = asyncio.StreamReader(limit=LINE_LIMIT)
        self._closed = False
        self._reader = asyncio.create_task(
            self._read_lines(), name=f"capture:{stream}:{exe_path}",
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed capture")
        if data:
            self._buffer.feed_data(data)
        return len(data)

    async def pump(self, stream: asyncio.StreamReader) -> None:
        """Copy a child pipe into this capture until EOF."""
        while chunk := await stream.read(PUMP_CHUNK):
            if self._closed:
                # Keep draining so the child never blocks on a full pipe.
                continue
            self.write(chunk)

    async def close(self) -> None:
        """Flush a trailing partial line and wait for the reader to finish."""
        if self._closed:
            return
        self._closed = True
        self._buffer.feed_eof()
        await self._reader

    async def _read_lines(self) -> None:
        discarding = False
        while True:
            try:
                raw = await self._buffer.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # EOF: the remainder is the final, unterminated line.
                if exc.partial and not discarding:
                    self._forward(exc.partial)
                return
            except asyncio.LimitOverrunError as exc:
                if not discarding:
                    logger.warning("exe_output_line_too_long", exe=self.exe_path, stream=self.stream, limit=LINE_LIMIT)
                    discarding = True
                await self._buffer.readexactly(exc.consumed)
                continue
            if discarding:
                # Tail of the over-long line.
                discarding = False
                continue
            self._forward(raw)

    def _forward(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\n"):
            line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]
        try:
            self._sink(self.exe_path, line)
        except Exception as exc:
            logger.error("log_sink_failed", exe=self.exe_path, error=str(exc))
