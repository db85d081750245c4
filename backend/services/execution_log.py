"""Execution records for pipeline job runs."""
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import utc_now
from core.utils.logging import structured_logger
from models.audit import JobExecutionLog, JobExecutionStatus


@dataclass
class ExecutionRecord:
    id: UUID
    job_name: str
    started_at: datetime
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def set_counts(self, processed: int = 0, succeeded: int = 0, failed: int = 0, skipped: int = 0) -> None:
        self.processed_count = processed
        self.success_count = succeeded
        self.failure_count = failed
        self.skipped_count = skipped

    @property
    def status(self) -> JobExecutionStatus:
        if not self.failure_count:
            return JobExecutionStatus.SUCCESS
        if self.success_count:
            return JobExecutionStatus.PARTIAL_SUCCESS
        return JobExecutionStatus.FAILED


@asynccontextmanager
async def track_execution(
    db: AsyncSession,
    job_name: str,
    now: Callable[[], datetime] = utc_now,
) -> AsyncIterator[ExecutionRecord]:
    """
    Record a job run in ``job_execution_logs``.

    A ``running`` row is committed on entry. On exit it is finalized with
    timing, the counters set on the yielded record and a status of
    ``success``, ``partial_success`` or ``failed``. An exception escaping the
    block marks the run failed and is re-raised.
    """
    started_at = now()
    log = JobExecutionLog(job_name=job_name, status=JobExecutionStatus.RUNNING, started_at=started_at)
    db.add(log)
    await db.commit()
    record = ExecutionRecord(id=log.id, job_name=job_name, started_at=started_at)

    try:
        yield record
    except Exception as e:
        await db.rollback()
        await _finalize(db, record, JobExecutionStatus.FAILED, now(), error_message=str(e) or type(e).__name__)
        raise
    await _finalize(db, record, record.status, now())


async def _finalize(
    db: AsyncSession,
    record: ExecutionRecord,
    status: JobExecutionStatus,
    completed_at: datetime,
    error_message: Optional[str] = None,
) -> None:
    duration_ms = int((completed_at - record.started_at).total_seconds() * 1000)
    await db.execute(
        update(JobExecutionLog)
        .where(JobExecutionLog.id == record.id)
        .values(
            status=status,
            completed_at=completed_at,
            duration_ms=duration_ms,
            processed_count=record.processed_count,
            success_count=record.success_count,
            failure_count=record.failure_count,
            skipped_count=record.skipped_count,
            meta_data=record.metadata or None,
            error_message=error_message,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    log = structured_logger.error if status == JobExecutionStatus.FAILED else structured_logger.info
    log(
        message=f"Job {record.job_name} finished with status {status.value}",
        job=record.job_name,
        metadata={
            "execution_id": str(record.id),
            "duration_ms": duration_ms,
            "processed": record.processed_count,
            "succeeded": record.success_count,
            "failed": record.failure_count,
            "skipped": record.skipped_count,
        },
    )
