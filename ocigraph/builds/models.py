"""Build history ORM model.

Each row records the outcome of one package within one graph run.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ocigraph.db import Base
from ocigraph.types import NodeState


class BuildRecord(Base):
    """ORM model for package outcomes.

    Attributes:
        id: Primary key.
        run_id: Identifier shared by all records of one run.
        package: Package name.
        status: Final node state (fresh, built, failed, blocked).
        reasons: JSON list of staleness or blocking reasons.
        fingerprint: Input fingerprint at evaluation time.
        contexts: JSON list of sibling contexts offered to the build.
        requested_at: Timestamp when the record was created.
        started_at: Timestamp when evaluation started.
        finished_at: Timestamp when evaluation finished.
        error_type: Stable error code if the package failed.
        error_phase: Phase the failure happened in.
        error_message: Error message if the package failed.
        log_path: Path to the backend log.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    package: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NodeState.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Inputs
    reasons: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(80), nullable=True)
    contexts: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_phase: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (Index("ix_build_records_package_status", "package", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, run_id='{self.run_id}', "
            f"package='{self.package}', status='{self.status}')>"
        )

    def is_failed(self) -> bool:
        """Check if this package failed."""
        return self.status == NodeState.FAILED.value


__all__ = ["BuildRecord"]
