"""Flash service layer.

This module provides the high-level operations used by both the CLI and
the web app:
- list_devices: enumerate write targets on the host
- run_flash: run the pipeline for one request and record it in history
- get_flash_records: query flash history

History is an audit trail only. A database failure is logged and never
changes the outcome of a flash.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from isoflash.db import get_session
from isoflash.flash.models import FlashRecord
from isoflash.flash.pipeline import (
    BeforeWrite,
    FlashJob,
    FlashPipeline,
    FlashRequest,
    Reservation,
)
from isoflash.flash.platform import Platform
from isoflash.flash.reporters import ProgressReporter
from isoflash.types import Device, FlashOutcome, FlashStatus

logger = logging.getLogger(__name__)


def list_devices(platform: Platform) -> list[Device]:
    """List removable devices on the host.

    Raises:
        DiscoveryError: The platform's listing tool could not run.
    """
    return platform.enumerator.list_devices()


async def run_flash(
    pipeline: FlashPipeline,
    request: FlashRequest,
    reporter: ProgressReporter,
    *,
    session_factory: sessionmaker[Session] | None = None,
    reservation: Reservation | None = None,
    before_write: BeforeWrite | None = None,
) -> FlashOutcome:
    """Run one flash operation and record it.

    Args:
        pipeline: Pipeline bound to the host platform.
        request: Device and artifact to flash.
        reporter: Progress reporter for the delivery surface.
        session_factory: History database sessions; history is skipped if None.
        reservation: Job slot already claimed by the caller.
        before_write: Confirmation hook awaited before the device is touched.

    Returns:
        FlashOutcome from the pipeline.

    Raises:
        BusyError: Another flash is running (only when no reservation given).
    """
    job = pipeline.create_job(request)
    if reservation is None:
        reservation = pipeline.guard.reserve(job.target_device.path)

    try:
        # History writes are blocking database I/O
        record_id = await asyncio.to_thread(_record_start, session_factory, job)
        try:
            outcome = await pipeline.run(
                job, reporter, reservation=reservation, before_write=before_write
            )
        except asyncio.CancelledError:
            await asyncio.to_thread(
                _record_finish, session_factory, record_id, job, job.outcome
            )
            raise
    finally:
        reservation.release()

    await asyncio.to_thread(_record_finish, session_factory, record_id, job, outcome)
    return outcome


def _record_start(
    session_factory: sessionmaker[Session] | None, job: FlashJob
) -> int | None:
    if session_factory is None:
        return None
    try:
        with get_session(session_factory) as session:
            record = FlashRecord(
                job_id=job.job_id,
                device_path=job.target_device.path,
                artifact_location=job.artifact_location.split("?", 1)[0],
            )
            record.mark_running()
            session.add(record)
            session.flush()
            logger.debug("Created FlashRecord id=%d for job %s", record.id, job.job_id)
            return record.id
    except SQLAlchemyError:
        logger.exception("Could not record start of flash job %s", job.job_id)
        return None


def _record_finish(
    session_factory: sessionmaker[Session] | None,
    record_id: int | None,
    job: FlashJob,
    outcome: FlashOutcome | None,
) -> None:
    if session_factory is None or record_id is None:
        return
    try:
        with get_session(session_factory) as session:
            record = session.get(FlashRecord, record_id)
            if record is None:
                logger.warning("FlashRecord %d disappeared before completion", record_id)
                return

            device = job.target_device
            record.device_path = device.path
            record.device_model = device.display_name or None
            record.device_serial = device.serial or None
            record.bytes_written = job.bytes_written
            record.advisories = "\n".join(job.advisories) or None

            if outcome is None:
                record.stage_reached = job.current_stage.value
                record.mark_failed("CANCELLED", "Flash operation cancelled")
            elif outcome.success:
                record.stage_reached = outcome.stage.value
                record.mark_succeeded()
            else:
                record.stage_reached = outcome.stage.value
                record.mark_failed(outcome.error_code, outcome.message)
    except SQLAlchemyError:
        logger.exception("Could not record result of flash job %s", job.job_id)


def get_flash_records(
    session: Session,
    *,
    device_path: str | None = None,
    status: FlashStatus | None = None,
    limit: int = 100,
) -> list[FlashRecord]:
    """Query flash records with optional filters.

    Args:
        session: Database session.
        device_path: Filter by device path.
        status: Filter by status.
        limit: Maximum number of records to return.

    Returns:
        List of FlashRecord objects, newest first.
    """
    stmt = select(FlashRecord)

    if device_path is not None:
        stmt = stmt.where(FlashRecord.device_path == device_path)
    if status is not None:
        stmt = stmt.where(FlashRecord.status == status.value)

    stmt = stmt.order_by(FlashRecord.requested_at.desc(), FlashRecord.id.desc()).limit(
        limit
    )

    result = session.execute(stmt)
    return list(result.scalars().all())


__all__ = [
    "get_flash_records",
    "list_devices",
    "run_flash",
]
