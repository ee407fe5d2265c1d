"""Stage pipeline for a single flash operation.

This module drives one FlashJob through its stages:
- discover: resolve the requested path to an attached removable device
- validate: safety checks on the device and the artifact reference
- fetch: download the artifact into the job's staging directory (fatal)
- unmount: release the device's partitions (advisory)
- write: block-level copy of the artifact (fatal)
- verify: check the device has a readable partition table (advisory)
- eject: flush and detach the device (advisory)
- cleanup: remove the staging directory, exactly once, however the run ends

Every run produces exactly one terminal notification (success or failure)
after cleanup. Fatal errors stop the pipeline; advisory errors are folded
into the stage's final progress message and the run continues.

Only one job may run per process. JobGuard hands out reservations and
raises BusyError while a job is active.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import threading
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import httpx

from isoflash.config import Settings
from isoflash.errors import (
    AdvisoryError,
    BusyError,
    FetchError,
    FlashAbortedError,
    FlashError,
    ValidationError,
)
from isoflash.flash.device import format_size
from isoflash.flash.fetch import ArtifactFetcher, select_fetcher
from isoflash.flash.platform import Platform
from isoflash.flash.progress import StageProgress
from isoflash.flash.reporters import ProgressReporter
from isoflash.types import Device, FlashOutcome, ProgressEvent, Stage

logger = logging.getLogger(__name__)

FetcherFactory = Callable[..., ArtifactFetcher]

# Called after the download, before anything touches the device; False aborts
BeforeWrite = Callable[["FlashJob"], Awaitable[bool]]


@dataclass
class FlashRequest:
    """What to flash, and where.

    Attributes:
        device_path: Requested target device path.
        artifact_location: http(s):// or gs:// reference to the image.
    """

    device_path: str
    artifact_location: str


@dataclass
class FlashJob:
    """State of one pipeline run.

    Attributes:
        job_id: Unique identifier for the run.
        target_device: Device being flashed (refined during discover).
        artifact_location: Where the image is downloaded from.
        staging_path: Job-private directory holding the downloaded image.
        current_stage: Stage the pipeline is in; SUCCESS or FAILED once the
            run has ended.
        stage_progress_percent: Percent complete within the current stage.
        started_at: When the job was created.
        artifact_path: Local path of the downloaded image, once fetched.
        bytes_written: Bytes copied onto the device.
        advisories: Messages from best-effort steps that failed.
        outcome: How the run ended, set before the terminal notification.
    """

    job_id: str
    target_device: Device
    artifact_location: str
    staging_path: Path
    current_stage: Stage = Stage.DISCOVER
    stage_progress_percent: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    artifact_path: Path | None = None
    bytes_written: int = 0
    advisories: list[str] = field(default_factory=list)
    outcome: FlashOutcome | None = None


class Reservation:
    """Claim on the process-wide job slot; release is idempotent."""

    def __init__(self, guard: JobGuard, device_path: str) -> None:
        self._guard = guard
        self.device_path = device_path
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._guard._release(self)


class JobGuard:
    """Allows at most one active flash job."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Reservation | None = None

    @property
    def active_device(self) -> str | None:
        """Device path of the running job, if any."""
        active = self._active
        return active.device_path if active else None

    @property
    def busy(self) -> bool:
        return self._active is not None

    def reserve(self, device_path: str) -> Reservation:
        """Claim the job slot.

        Raises:
            BusyError: Another job holds the slot.
        """
        if not self._lock.acquire(blocking=False):
            raise BusyError(self.active_device)
        reservation = Reservation(self, device_path)
        self._active = reservation
        logger.debug("Reserved job slot for %s", device_path)
        return reservation

    def _release(self, reservation: Reservation) -> None:
        if self._active is not reservation:
            return
        self._active = None
        self._lock.release()
        logger.debug("Released job slot for %s", reservation.device_path)


_default_guard = JobGuard()


def get_job_guard() -> JobGuard:
    """Return the process-wide job guard."""
    return _default_guard


class _StageEmitter:
    """Turns stage transitions and tool progress into reporter calls.

    Percent is monotonic within a stage; stale values are dropped and
    ``None`` re-sends the current percent with a new message (heartbeat).
    """

    def __init__(self, job: FlashJob, reporter: ProgressReporter) -> None:
        self._job = job
        self._reporter = reporter
        self._progress = StageProgress()
        self._reporter_failed = False

    def enter(self, stage: Stage, message: str) -> None:
        self._progress.advance(stage)
        self._job.current_stage = stage
        self._job.stage_progress_percent = 0
        logger.info("[%s] %s", stage.value, message)
        self._send(ProgressEvent(stage, 0, message))

    def __call__(self, percent: int | None, message: str) -> None:
        if percent is not None and not self._progress.update(percent):
            return
        self._job.stage_progress_percent = self._progress.percent
        self._send(ProgressEvent(self._job.current_stage, self._progress.percent, message))

    def finish(self, message: str) -> None:
        self._progress.update(100)
        self._job.stage_progress_percent = 100
        self._send(ProgressEvent(self._job.current_stage, 100, message))

    def terminal(self, outcome: FlashOutcome) -> None:
        try:
            if outcome.success:
                self._reporter.success(outcome.message)
            else:
                self._reporter.failure(outcome.message)
        except Exception:
            logger.exception("Reporter failed to deliver the terminal notification")

    def _send(self, event: ProgressEvent) -> None:
        if self._reporter_failed:
            return
        try:
            self._reporter.progress(event)
        except Exception:
            self._reporter_failed = True
            logger.exception("Reporter failed; further progress events are dropped")


class FlashPipeline:
    """Runs flash jobs on one host platform.

    Args:
        platform: Capability bundle (enumerator, validator, writer, ejector).
        settings: Application settings.
        guard: Job guard; defaults to the process-wide guard.
        fetcher_factory: Builds the fetcher for an artifact location.
        http_client: Optional shared client for HTTP downloads.
    """

    def __init__(
        self,
        platform: Platform,
        settings: Settings,
        *,
        guard: JobGuard | None = None,
        fetcher_factory: FetcherFactory = select_fetcher,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.platform = platform
        self.settings = settings
        self.guard = guard or get_job_guard()
        self._fetcher_factory = fetcher_factory
        self._http_client = http_client

    def create_job(self, request: FlashRequest) -> FlashJob:
        """Create a job with a private staging directory (not yet created)."""
        job_id = uuid.uuid4().hex[:12]
        path = request.device_path.strip()
        return FlashJob(
            job_id=job_id,
            target_device=Device(path=path, display_name=path),
            artifact_location=request.artifact_location.strip(),
            staging_path=self.settings.staging_dir / job_id,
        )

    async def run(
        self,
        request: FlashRequest | FlashJob,
        reporter: ProgressReporter,
        *,
        reservation: Reservation | None = None,
        before_write: BeforeWrite | None = None,
    ) -> FlashOutcome:
        """Run a job to a terminal state.

        Args:
            request: Request (a job is created) or a job from create_job.
            reporter: Receives progress and exactly one terminal notification.
            reservation: Job slot already claimed by the caller; one is
                claimed here otherwise and released when the run ends.
            before_write: Confirmation hook awaited before the device is touched.

        Returns:
            FlashOutcome describing how the run ended.

        Raises:
            BusyError: Another job is running (only when no reservation given).
            asyncio.CancelledError: The run was cancelled; cleanup and the
                terminal failure notification have already happened.
        """
        job = request if isinstance(request, FlashJob) else self.create_job(request)
        if reservation is None:
            reservation = self.guard.reserve(job.target_device.path)

        emit = _StageEmitter(job, reporter)
        outcome: FlashOutcome | None = None
        logger.info(
            "Starting flash job %s: %s -> %s",
            job.job_id,
            _display_location(job.artifact_location),
            job.target_device.path,
        )

        try:
            try:
                outcome = await self._execute(job, emit, before_write)
            except FlashError as e:
                outcome = self._failed(job, e.message, e.error_code)
            except asyncio.CancelledError:
                outcome = self._failed(job, "Flash operation cancelled", "CANCELLED")
                raise
            except Exception as e:
                logger.exception("Unexpected error in flash job %s", job.job_id)
                outcome = self._failed(job, f"Unexpected error: {e}", "INTERNAL_ERROR")
            finally:
                self._cleanup(job, emit)
                if outcome is None:
                    outcome = self._failed(job, "Flash operation interrupted", "CANCELLED")
                if outcome.success and job.advisories:
                    outcome.message = (
                        f"{outcome.message} Warnings: {'; '.join(job.advisories)}"
                    )
                job.current_stage = Stage.SUCCESS if outcome.success else Stage.FAILED
                job.outcome = outcome
                emit.terminal(outcome)
        finally:
            reservation.release()

        return outcome

    async def _execute(
        self, job: FlashJob, emit: _StageEmitter, before_write: BeforeWrite | None
    ) -> FlashOutcome:
        validator = self.platform.validator

        emit.enter(Stage.DISCOVER, f"Looking for {job.target_device.path}")
        path = validator.check_path(job.target_device.path)
        job.target_device = await asyncio.to_thread(self._discover, path)
        emit.finish(f"Found {job.target_device.display_name}")

        emit.enter(Stage.VALIDATE, f"Checking {job.target_device.path} is safe to write")
        job.target_device = validator.require_valid(job.target_device)
        fetcher = self._fetcher_factory(
            job.artifact_location,
            heartbeat_interval=self.settings.heartbeat_interval,
            timeout=self.settings.download_timeout,
            client=self._http_client,
        )
        emit.finish(f"{job.target_device.path} accepted as write target")

        emit.enter(Stage.FETCH, "Downloading ISO")
        job.artifact_path = await fetcher.fetch(
            job.artifact_location, job.staging_path, emit
        )
        artifact_size = job.artifact_path.stat().st_size
        if artifact_size == 0:
            raise FetchError(
                f"Downloaded artifact {job.artifact_path.name} is empty",
                error_code="EMPTY_ARTIFACT",
            )
        emit.finish(f"Download complete ({format_size(artifact_size)})")

        if before_write is not None and not await before_write(job):
            raise FlashAbortedError(job.target_device.path)

        device = job.target_device
        writer = self.platform.writer

        emit.enter(Stage.UNMOUNT, f"Unmounting {device.path}")
        try:
            await writer.unmount(device)
        except AdvisoryError as e:
            self._advisory(job, emit, e)
        else:
            emit.finish(f"{device.path} unmounted")

        emit.enter(
            Stage.WRITE, f"Writing ISO to {device.path}. Do not remove the device."
        )
        job.bytes_written = await writer.write(
            job.artifact_path, device, artifact_size, emit
        )
        emit.finish(f"Wrote {format_size(job.bytes_written)} to {device.path}")

        emit.enter(Stage.VERIFY, f"Verifying {device.path}")
        try:
            await writer.verify(device)
        except AdvisoryError as e:
            self._advisory(job, emit, e)
        else:
            emit.finish("Partition table readable")

        emit.enter(Stage.EJECT, f"Ejecting {device.path}")
        try:
            await self.platform.ejector.eject(device)
        except AdvisoryError as e:
            self._advisory(job, emit, e)
        else:
            emit.finish(f"{device.path} ejected")

        return FlashOutcome(
            success=True,
            stage=Stage.SUCCESS,
            message=(
                f"ISO flashed to {device.display_name}. "
                "You can now remove the device and boot from it."
            ),
            advisories=job.advisories,
            bytes_written=job.bytes_written,
        )

    def _discover(self, path: str) -> Device:
        for device in self.platform.enumerator.list_devices():
            if device.path == path:
                return device
        raise ValidationError(
            f"Device {path} is not an attached removable device",
            error_code="DEVICE_NOT_FOUND",
        )

    def _advisory(self, job: FlashJob, emit: _StageEmitter, error: AdvisoryError) -> None:
        logger.warning("[%s] %s", job.current_stage.value, error.message)
        job.advisories.append(error.message)
        emit.finish(f"{error.message} (continuing)")

    def _failed(self, job: FlashJob, message: str, error_code: str) -> FlashOutcome:
        logger.error(
            "Flash job %s failed during %s (%s): %s",
            job.job_id,
            job.current_stage.value,
            error_code,
            message,
        )
        return FlashOutcome(
            success=False,
            stage=job.current_stage,
            message=message,
            error_code=error_code,
            advisories=job.advisories,
            bytes_written=job.bytes_written,
        )

    def _cleanup(self, job: FlashJob, emit: _StageEmitter) -> None:
        emit.enter(Stage.CLEANUP, "Cleaning up temporary files")
        try:
            if job.staging_path.exists():
                shutil.rmtree(job.staging_path)
        except OSError as e:
            message = f"Could not remove {job.staging_path}: {e}"
            logger.warning("%s", message)
            job.advisories.append(message)
            emit.finish(f"{message} (continuing)")
        else:
            emit.finish("Temporary files removed")


def _display_location(location: str) -> str:
    return location.split("?", 1)[0]


__all__ = [
    "BeforeWrite",
    "FlashJob",
    "FlashPipeline",
    "FlashRequest",
    "JobGuard",
    "Reservation",
    "get_job_guard",
]
