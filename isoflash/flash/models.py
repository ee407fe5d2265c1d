"""Flash history ORM models.

One FlashRecord row is written per pipeline run, giving operators an
audit trail of which image went onto which device and how it ended.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from isoflash.db import Base
from isoflash.types import FlashStatus


class FlashRecord(Base):
    """ORM model for flash operations.

    Attributes:
        id: Primary key.
        job_id: Pipeline job identifier.
        device_path: Block device path (e.g., '/dev/sdb').
        device_model: Device vendor/model label.
        device_serial: Device serial number, when known.
        artifact_location: Image location with any query string removed.
        requested_at: Timestamp when flash was requested.
        started_at: Timestamp when the pipeline started.
        finished_at: Timestamp when the pipeline reached a terminal stage.
        status: Flash status (pending, running, succeeded, failed).
        stage_reached: Stage the run ended in.
        bytes_written: Bytes copied onto the device.
        advisories: Newline-separated warnings from best-effort stages.
        error_type: Error code if flash failed.
        error_message: Error message if flash failed.
    """

    __tablename__ = "flash_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    # Device identification
    device_path: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_serial: Mapped[str | None] = mapped_column(String(255), nullable=True)

    artifact_location: Mapped[str] = mapped_column(String(1000), nullable=False)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FlashStatus.PENDING.value, index=True
    )
    stage_reached: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bytes_written: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    advisories: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Errors
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_flash_records_device_status", "device_path", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of FlashRecord."""
        return (
            f"<FlashRecord(id={self.id}, job_id='{self.job_id}', "
            f"device_path='{self.device_path}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this flash as running."""
        self.status = FlashStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this flash as succeeded."""
        self.status = FlashStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this flash as failed.

        Args:
            error_type: Error code.
            message: Error message details.
        """
        self.status = FlashStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this flash succeeded."""
        return self.status == FlashStatus.SUCCEEDED.value

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "device_path": self.device_path,
            "device_model": self.device_model,
            "device_serial": self.device_serial,
            "artifact_location": self.artifact_location,
            "status": self.status,
            "stage_reached": self.stage_reached,
            "bytes_written": self.bytes_written,
            "advisories": self.advisories.splitlines() if self.advisories else [],
            "error_type": self.error_type,
            "error_message": self.error_message,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


__all__ = ["FlashRecord"]
