"""Supervision of external processes used by the pipeline.

Each fatal stage (fetch via an external tool, write via dd) runs exactly
one process. ``supervise`` reads its combined output incrementally, hands
parsed progress tokens to the caller, emits heartbeats when the tool goes
quiet, and waits for the exit code. If the awaiting task is cancelled the
process is terminated before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from isoflash.flash.progress import ProgressParser, Token, Unparsed

logger = logging.getLogger(__name__)

# Bytes read from the process per iteration
READ_CHUNK_SIZE = 4096

# Lines of output kept for error messages
OUTPUT_TAIL_LINES = 5

# Seconds to wait after SIGTERM before SIGKILL
TERMINATE_GRACE_SECONDS = 5.0


@dataclass
class ProcessResult:
    """Result of a supervised process.

    Attributes:
        returncode: Process exit code.
        output_tail: Last lines of unparsed output (for error messages).
        duration: Wall-clock seconds the process ran.
    """

    returncode: int
    output_tail: str
    duration: float

    @property
    def ok(self) -> bool:
        """Whether the process exited successfully."""
        return self.returncode == 0


def privilege_prefix(use_sudo: bool) -> list[str]:
    """Return the command prefix needed for raw device access."""
    if not use_sudo or not hasattr(os, "geteuid") or os.geteuid() == 0:
        return []
    return ["sudo"]


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Terminate a process, escalating to SIGKILL after a grace period."""
    if proc.returncode is not None:
        return
    logger.warning("Terminating process %d", proc.pid)
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.error("Process %d ignored SIGTERM, killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def supervise(
    cmd: Sequence[str],
    *,
    on_token: Callable[[Token], None] | None = None,
    on_heartbeat: Callable[[float], None] | None = None,
    heartbeat_interval: float = 5.0,
    timeout: float | None = None,
) -> ProcessResult:
    """Run a process while observing its progress output.

    Args:
        cmd: Command and arguments (never passed through a shell).
        on_token: Called for every parsed progress token.
        on_heartbeat: Called with elapsed seconds when no progress token
            arrived within ``heartbeat_interval``.
        heartbeat_interval: Quiet period before a heartbeat.
        timeout: Overall timeout in seconds.

    Returns:
        ProcessResult with exit code and trailing output.

    Raises:
        FileNotFoundError: The executable does not exist.
        PermissionError: The executable cannot be run.
        TimeoutError: The process exceeded ``timeout`` (it is terminated).
    """
    logger.debug("Spawning: %s", shlex.join(cmd))
    started = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )

    parser = ProgressParser()
    tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    last_progress = started

    def _dispatch(tokens: list[Token]) -> None:
        nonlocal last_progress
        for token in tokens:
            if isinstance(token, Unparsed):
                tail.append(token.text.strip())
                logger.debug("[%d] %s", proc.pid, token.text.strip())
                continue
            last_progress = time.monotonic()
            if on_token is not None:
                on_token(token)

    async def _pump() -> int:
        nonlocal last_progress
        assert proc.stdout is not None
        while True:
            try:
                chunk = await asyncio.wait_for(
                    proc.stdout.read(READ_CHUNK_SIZE), timeout=heartbeat_interval
                )
            except asyncio.TimeoutError:
                chunk = None

            if chunk == b"":
                break
            if chunk:
                _dispatch(parser.feed(chunk.decode(errors="replace")))

            now = time.monotonic()
            if now - last_progress >= heartbeat_interval:
                last_progress = now
                if on_heartbeat is not None:
                    on_heartbeat(now - started)

        _dispatch(parser.flush())
        return await proc.wait()

    try:
        if timeout is None:
            returncode = await _pump()
        else:
            returncode = await asyncio.wait_for(_pump(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TimeoutError(
            f"{cmd[0]} did not finish within {timeout:.0f} seconds"
        ) from e
    finally:
        await _terminate(proc)

    duration = time.monotonic() - started
    logger.debug("Process %d exited with %d after %.1fs", proc.pid, returncode, duration)
    return ProcessResult(
        returncode=returncode,
        output_tail="\n".join(tail),
        duration=duration,
    )


async def run_command(cmd: Sequence[str], timeout: float = 60.0) -> ProcessResult:
    """Run a short command to completion without progress reporting."""
    return await supervise(cmd, heartbeat_interval=timeout, timeout=timeout)


__all__ = [
    "ProcessResult",
    "privilege_prefix",
    "run_command",
    "supervise",
]
