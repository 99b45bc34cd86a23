"""Newline-delimited JSON ports over asyncio streams.

Wire format (UTF-8, one JSON value per line, LF terminated):
    {"jsonrpc":"2.0","method":"operation-request","params":{...}}

Used for stdio servers, subprocess pipes and sockets. Invalid lines are
logged and skipped; end of input disconnects the port.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import Any

from ..exceptions import PortDisconnectedError
from .base import BasePort

logger = logging.getLogger(__name__)

ENCODING = "utf-8"
NEWLINE = "\n"

# asyncio's default readline limit is 64KB; results can be larger
STREAM_BUFFER_LIMIT = 1024 * 1024

SUBPROCESS_TERMINATE_TIMEOUT = 5.0


class StreamPort(BasePort):
    """Port over an asyncio StreamReader/StreamWriter pair.

    `start()` launches the background reader. `post_message` only buffers
    the line on the writer, so it never blocks.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        name: str | None = None,
    ):
        super().__init__(name)
        self._reader = reader
        self._writer = writer
        self._reader_task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Start delivering inbound lines to on_message listeners."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name=f"{self.name}-reader")

    async def wait_closed(self) -> None:
        """Wait until the inbound side has ended."""
        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task

    def disconnect(self) -> None:
        """Close this end. Local on_close listeners are notified, on_disconnect ones are not."""
        self._mark_closed()
        if not self._writer.is_closing():
            self._writer.close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()

    async def aclose(self) -> None:
        """Disconnect and wait for the streams to shut down."""
        self.disconnect()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()
        await self.wait_closed()

    def _do_post(self, message: Any) -> None:
        if self._writer.is_closing():
            self._mark_disconnected()
            raise PortDisconnectedError(f"Stream closed for port {self.name}")
        line = json.dumps(message, ensure_ascii=False) + NEWLINE
        self._writer.write(line.encode(ENCODING))

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break  # EOF

                text = line.decode(ENCODING, errors="replace").strip()
                if text.startswith("\ufeff"):
                    text = text[1:]
                if not text:
                    continue

                try:
                    message = json.loads(text)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping invalid line on {self.name}: {e}")
                    continue

                self._deliver(message)
        except (ConnectionError, ValueError) as e:
            # ValueError: line longer than the reader limit
            logger.warning(f"Read error on {self.name}: {e}")
        finally:
            self._mark_disconnected()


class SubprocessPort(StreamPort):
    """Port over the stdin/stdout of a child process.

    The child's stderr is forwarded to this process's log at DEBUG level.
    """

    def __init__(self, process: asyncio.subprocess.Process, *, name: str | None = None):
        if process.stdout is None or process.stdin is None:
            raise ValueError("Process must be started with stdin and stdout pipes")
        super().__init__(process.stdout, process.stdin, name=name or f"subprocess-{process.pid}")
        self.process = process
        self._stderr_task: asyncio.Task[None] | None = None

    def start(self) -> None:
        super().start()
        if self._stderr_task is None and self.process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._read_stderr(self.process.stderr))

    async def aclose(self) -> None:
        """Close stdin, then terminate the child if it does not exit."""
        self.disconnect()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=SUBPROCESS_TERMINATE_TIMEOUT)
        except TimeoutError:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=SUBPROCESS_TERMINATE_TIMEOUT)
            except TimeoutError:
                self.process.kill()
                await self.process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        await self.wait_closed()
        logger.debug(f"Subprocess exited (pid={self.process.pid}, code={self.process.returncode})")

    async def _read_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            line = await stderr.readline()
            if not line:
                break
            logger.debug(f"[{self.name} stderr] {line.decode(ENCODING, errors='replace').rstrip()}")


async def open_stream_port(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    *,
    name: str | None = None,
) -> StreamPort:
    """Create and start a port over an existing stream pair."""
    port = StreamPort(reader, writer, name=name)
    port.start()
    return port


async def open_stdio_port(limit: int = STREAM_BUFFER_LIMIT) -> StreamPort:
    """Create and start a port over this process's stdin/stdout.

    Anything else written to stdout corrupts the stream; log to stderr.
    """
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)

    return await open_stream_port(reader, writer, name="stdio")


async def spawn_port(
    command: list[str],
    *,
    env: dict[str, str] | None = None,
    working_directory: str | None = None,
    limit: int = STREAM_BUFFER_LIMIT,
) -> SubprocessPort:
    """Launch `command` and return a started port over its stdin/stdout."""
    process_env = {**os.environ, **env} if env else None
    process = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=working_directory,
        env=process_env,
        limit=limit,
    )
    logger.info(f"Launched subprocess: {' '.join(command)} (pid={process.pid})")

    port = SubprocessPort(process)
    port.start()
    return port
