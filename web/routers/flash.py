"""Flash operation endpoints.

- POST /flash - Start a flash and stream its progress as server-sent events
- GET /flash/history - List past flash operations

The request is checked before the stream opens: a malformed device path
or artifact reference is a 400, a running job a 409 and a client over its
start quota a 429. Once the stream is open every outcome, including
failures, arrives as an event and the stream closes after the terminal
event.
"""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi import status as http_status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from isoflash.errors import BusyError, ValidationError
from isoflash.flash.fetch import select_fetcher
from isoflash.flash.pipeline import FlashPipeline, FlashRequest
from isoflash.flash.reporters import QueueReporter, sse_stream
from isoflash.flash.service import get_flash_records, run_flash
from isoflash.types import FlashOutcome, FlashStatus
from web.deps import (
    AppSettings,
    ClientKey,
    DbSession,
    Guard,
    HostPlatform,
    RateLimiter,
    SessionFactory,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class FlashStartRequest(BaseModel):
    """Request body for a flash operation."""

    device: str = Field(..., min_length=1, description="Device path, e.g. /dev/sdb")
    iso_url: str = Field(..., min_length=1, description="http(s):// or gs:// ISO URL")


@router.get("/history")
def list_flash_history(
    db: DbSession,
    device: str | None = Query(None, description="Filter by device path"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum results"),
) -> list[dict[str, Any]]:
    """List flash records, newest first."""
    status_filter: FlashStatus | None = None
    if status:
        try:
            status_filter = FlashStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: pending, running, succeeded, failed",
                },
            ) from None

    records = get_flash_records(
        db, device_path=device, status=status_filter, limit=limit
    )
    return [r.to_dict() for r in records]


@router.post("")
async def start_flash(
    body: FlashStartRequest,
    request: Request,
    settings: AppSettings,
    platform: HostPlatform,
    guard: Guard,
    limiter: RateLimiter,
    session_factory: SessionFactory,
    client: ClientKey,
) -> StreamingResponse:
    """Flash an ISO to a device, streaming progress.

    Each event is a ``data:`` line holding ``{"stage", "progress",
    "message"}``; the stream ends with ``{"stage": "complete", ...}`` or
    ``{"stage": "error", "error": ...}``.

    Raises:
        HTTPException: 400 for an invalid request, 409 while another flash
            is running, 429 when the client exceeded its start quota.
    """
    try:
        device_path = platform.validator.check_path(body.device)
        select_fetcher(body.iso_url)
    except ValidationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.error_code, "message": e.message},
        ) from None

    try:
        reservation = guard.reserve(device_path)
    except BusyError as e:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={"code": e.error_code, "message": e.message},
        ) from None

    if not limiter.hit(client):
        reservation.release()
        retry_after = int(limiter.retry_after(client)) + 1
        raise HTTPException(
            status_code=http_status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "rate_limited",
                "message": "Too many flash operations. Try again later.",
            },
            headers={"Retry-After": str(retry_after)},
        )

    reporter = QueueReporter()
    pipeline = FlashPipeline(platform, settings, guard=guard)
    task = asyncio.create_task(
        run_flash(
            pipeline,
            FlashRequest(device_path=device_path, artifact_location=body.iso_url),
            reporter,
            session_factory=session_factory,
            reservation=reservation,
        )
    )
    tasks: set[asyncio.Task[FlashOutcome]] = request.app.state.flash_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    task.add_done_callback(_log_task_result)

    logger.info("Flash of %s requested by %s", device_path, client)
    return StreamingResponse(
        sse_stream(reporter),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _log_task_result(task: "asyncio.Task[FlashOutcome]") -> None:
    if task.cancelled():
        logger.warning("Flash task cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error("Flash task crashed", exc_info=error)
