"""Progress reporters for the flashing pipeline.

The pipeline talks to a ProgressReporter only; each delivery surface
supplies its own adapter:
- QueueReporter: frames events as server-sent events for a streaming
  HTTP response (one ``data:`` frame per event, a single terminal frame)
- ConsoleReporter: stage banners and a redrawing rich progress bar
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from isoflash.types import ProgressEvent, Stage

logger = logging.getLogger(__name__)

STAGE_TITLES = {
    Stage.DISCOVER: "Finding device",
    Stage.VALIDATE: "Safety checks",
    Stage.FETCH: "Downloading ISO",
    Stage.UNMOUNT: "Unmounting device",
    Stage.WRITE: "Writing ISO",
    Stage.VERIFY: "Verifying",
    Stage.EJECT: "Ejecting device",
    Stage.CLEANUP: "Cleaning up",
}


class ProgressReporter(Protocol):
    """Receives pipeline progress and exactly one terminal notification."""

    def progress(self, event: ProgressEvent) -> None: ...

    def success(self, message: str) -> None: ...

    def failure(self, message: str) -> None: ...


def format_sse(payload: dict[str, Any]) -> str:
    """Frame a JSON payload as a single server-sent event."""
    return f"data: {json.dumps(payload)}\n\n"


class QueueReporter:
    """Buffers SSE frames for a streaming response.

    Frames are queued as soon as events arrive. After the terminal frame
    the stream ends; later calls are ignored. ``detach`` is called when
    the client goes away so the pipeline can finish without a consumer.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed

    def progress(self, event: ProgressEvent) -> None:
        if self._closed or self._detached:
            return
        self._queue.put_nowait(
            format_sse(
                {
                    "stage": event.stage.value,
                    "progress": event.percent,
                    "message": event.message,
                }
            )
        )

    def success(self, message: str) -> None:
        self._finish({"stage": "complete", "progress": 100, "message": message})

    def failure(self, message: str) -> None:
        self._finish({"stage": "error", "error": message})

    def detach(self) -> None:
        """Stop buffering frames; nobody is reading them."""
        if not self._detached:
            logger.info("Progress stream client disconnected; job continues")
        self._detached = True

    async def frames(self) -> AsyncIterator[str]:
        """Yield frames until the terminal frame has been sent."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def _finish(self, payload: dict[str, Any]) -> None:
        if self._closed:
            logger.warning("Ignoring second terminal notification: %s", payload)
            return
        self._closed = True
        if not self._detached:
            self._queue.put_nowait(format_sse(payload))
        self._queue.put_nowait(None)


async def sse_stream(reporter: QueueReporter) -> AsyncIterator[str]:
    """Stream a reporter's frames, detaching it if the client disconnects."""
    try:
        async for frame in reporter.frames():
            yield frame
    finally:
        if not reporter.closed:
            reporter.detach()


class ConsoleReporter:
    """Renders pipeline progress on a terminal.

    Each stage opens with a banner and gets its own progress bar. Call
    ``paused()`` around interactive prompts so the live display does not
    redraw over them.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._progress: Progress | None = None
        self._task: TaskID | None = None
        self._stage: Stage | None = None

    def progress(self, event: ProgressEvent) -> None:
        if event.stage != self._stage:
            self._stop()
            self._stage = event.stage
            title = STAGE_TITLES.get(event.stage, event.stage.value)
            self.console.print(f"\n[bold cyan]==> {title}[/bold cyan]")
        if self._progress is None:
            self._start()

        assert self._progress is not None and self._task is not None
        self._progress.update(self._task, completed=event.percent, description=event.message)
        if event.percent >= 100:
            self._stop()

    def success(self, message: str) -> None:
        self._stop()
        self.console.print(f"\n[green]✓ {escape(message)}[/green]")

    def failure(self, message: str) -> None:
        self._stop()
        self.console.print(f"\n[red]✗ {escape(message)}[/red]")

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Suspend the live progress display."""
        progress = self._progress
        if progress is not None:
            progress.stop()
        try:
            yield
        finally:
            if progress is not None and progress is self._progress:
                progress.start()

    def _start(self) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}", markup=False),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
        )
        self._task = self._progress.add_task("", total=100)
        self._progress.start()

    def _stop(self) -> None:
        if self._progress is not None:
            self._progress.stop()
        self._progress = None
        self._task = None


__all__ = [
    "ConsoleReporter",
    "ProgressReporter",
    "QueueReporter",
    "STAGE_TITLES",
    "format_sse",
    "sse_stream",
]
