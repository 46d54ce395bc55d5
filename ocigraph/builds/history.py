"""Build history persistence and queries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ocigraph.builds.models import BuildRecord
from ocigraph.types import NodeState

if TYPE_CHECKING:
    from ocigraph.builds.scheduler import PackageOutcome, RunReport

logger = logging.getLogger(__name__)


def _to_naive(value: datetime | None) -> datetime | None:
    # SQLite DateTime columns store naive timestamps
    return value.replace(tzinfo=None) if value is not None else None


def outcome_to_record(run_id: str, outcome: PackageOutcome) -> BuildRecord:
    """Create a BuildRecord from a package outcome."""
    log_path = outcome.log_path
    return BuildRecord(
        run_id=run_id,
        package=outcome.package,
        status=outcome.state.value,
        reasons=list(outcome.reasons),
        fingerprint=outcome.fingerprint,
        contexts=list(outcome.contexts),
        started_at=_to_naive(outcome.started_at),
        finished_at=_to_naive(outcome.finished_at),
        error_type=outcome.error_code,
        error_phase=outcome.phase,
        error_message=str(outcome.error) if outcome.error is not None else None,
        log_path=str(log_path) if log_path is not None else None,
    )


class BuildHistory:
    """Records run outcomes to the history database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def record_run(self, report: RunReport) -> list[BuildRecord]:
        """Persist one record per package outcome of a run."""
        records = [outcome_to_record(report.run_id, o) for o in report.outcomes]
        with self.session_factory() as session:
            session.add_all(records)
            session.commit()
        logger.debug("Recorded %d outcomes for run %s", len(records), report.run_id)
        return records


def list_builds(
    session: Session,
    package: str | None = None,
    status: NodeState | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records, newest first.

    Args:
        session: Database session.
        package: Filter by package name.
        status: Filter by final state.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if package is not None:
        stmt = stmt.where(BuildRecord.package == package)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


def get_run(session: Session, run_id: str) -> list[BuildRecord]:
    """Return the records of one run in evaluation order."""
    stmt = (
        select(BuildRecord)
        .where(BuildRecord.run_id == run_id)
        .order_by(BuildRecord.id.asc())
    )
    return list(session.execute(stmt).scalars().all())


def latest_run_id(session: Session) -> str | None:
    """Return the id of the most recently recorded run."""
    stmt = select(BuildRecord.run_id).order_by(BuildRecord.id.desc()).limit(1)
    return session.execute(stmt).scalar_one_or_none()


__all__ = [
    "BuildHistory",
    "get_run",
    "latest_run_id",
    "list_builds",
    "outcome_to_record",
]
