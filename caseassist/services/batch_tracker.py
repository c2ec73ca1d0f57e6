"""Batch job run tracking.

A BatchJobRun records the lifecycle of one bulk AI operation: start,
per-item success/failure counters and, on completion, the token and cost
roll-up of every ledger entry attributed to the job. Counter updates are
single SQL increments so that concurrent workers never lose an update.
"""

import logging

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from caseassist.db.models import BatchJobRun, BatchJobStatus, utc_now_iso
from caseassist.errors import BatchJobStateError, NotFoundError
from caseassist.services.cost_ledger import CostLedger
from caseassist.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


class BatchJobTracker:
    """Service for batch job lifecycle and counters.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session, ledger: CostLedger | None = None) -> None:
        self.db = db
        self.ledger = ledger or CostLedger(db)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_job(
        self, firm_id: str, feature: str, total_items: int | None = None
    ) -> BatchJobRun:
        """Create a Running job with zeroed counters.

        Args:
            firm_id: Firm the job runs for.
            feature: Logical capability name.
            total_items: Number of items the job will be given, when known.
                Completion then accounts for every one of them.

        Returns:
            The created BatchJobRun.
        """
        if total_items is not None and total_items < 0:
            raise ValueError("total_items must be non-negative")
        job = BatchJobRun(
            firm_id=firm_id,
            feature=feature,
            status=BatchJobStatus.Running.value,
            items_submitted=total_items,
            items_processed=0,
            items_failed=0,
            total_tokens=0,
            total_cost_micro_eur=0,
            started_at=utc_now_iso(),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info(
            "Batch job %s started: firm=%s feature=%s items=%s",
            job.id, firm_id, feature, total_items,
        )
        return job

    def record_item_outcome(self, job_id: str, success: bool) -> None:
        """Atomically count one item as processed or failed.

        Raises:
            NotFoundError: If the job does not exist.
            BatchJobStateError: If the job is no longer Running.
            ValueError: If more outcomes are reported than items submitted.
        """
        counter = BatchJobRun.items_processed if success else BatchJobRun.items_failed
        result = self.db.execute(
            update(BatchJobRun)
            .where(
                BatchJobRun.id == job_id,
                BatchJobRun.status == BatchJobStatus.Running.value,
                or_(
                    BatchJobRun.items_submitted.is_(None),
                    BatchJobRun.items_processed + BatchJobRun.items_failed
                    < BatchJobRun.items_submitted,
                ),
            )
            .values({counter.key: counter + 1})
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 1:
            return

        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("batch job", job_id)
        if job.status != BatchJobStatus.Running.value:
            raise BatchJobStateError(job_id, job.status)
        raise ValueError(
            f"Batch job {job_id} already has outcomes for all "
            f"{job.items_submitted} submitted items"
        )

    def complete_job(self, job_id: str, error_message: str | None = None) -> BatchJobRun:
        """Freeze counters, roll up ledger totals and set the final status.

        Status is Failed when ``error_message`` is given or when every
        reported item failed, otherwise Completed. Items submitted but
        never reported are counted as failed. Calling this on a job that
        is already complete returns it unchanged.

        Args:
            job_id: Job to complete.
            error_message: Job-level error description.

        Returns:
            The completed BatchJobRun.

        Raises:
            NotFoundError: If the job does not exist.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("batch job", job_id)
        self.db.refresh(job)
        if job.status != BatchJobStatus.Running.value:
            return job

        processed = job.items_processed
        reported_failed = job.items_failed
        failed = reported_failed
        notes: list[str] = []
        if error_message:
            notes.append(error_message)

        submitted = job.items_submitted
        if submitted is None:
            submitted = processed + failed
        missing = submitted - processed - failed
        if missing > 0:
            failed += missing
            notes.append(f"{missing} item outcome(s) were never reported")
            logger.warning("Batch job %s: %d item outcome(s) missing", job_id, missing)

        if error_message or (failed > 0 and processed == 0):
            status = BatchJobStatus.Failed
        else:
            status = BatchJobStatus.Completed

        totals = self.ledger.summarize_batch_job(job_id)
        result = self.db.execute(
            update(BatchJobRun)
            .where(
                BatchJobRun.id == job_id,
                BatchJobRun.status == BatchJobStatus.Running.value,
                BatchJobRun.items_processed == processed,
                BatchJobRun.items_failed == reported_failed,
            )
            .values(
                status=status.value,
                items_submitted=submitted,
                items_failed=failed,
                total_tokens=totals.total_tokens,
                total_cost_micro_eur=totals.total_cost_micro_eur,
                error_message=sanitize_error_message("; ".join(notes)) if notes else None,
                completed_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            # Completed concurrently or an outcome landed meanwhile
            self.db.expire(job)
            return self.complete_job(job_id, error_message)
        logger.info(
            "Batch job %s %s: processed=%d failed=%d tokens=%d cost_eur=%s",
            job_id, status.value, processed, failed,
            totals.total_tokens, totals.total_cost_eur,
        )
        self.db.expire(job)
        return self.get_job(job_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str) -> BatchJobRun | None:
        return self.db.query(BatchJobRun).filter(BatchJobRun.id == job_id).first()

    def list_jobs(
        self,
        firm_id: str | None = None,
        feature: str | None = None,
        status: BatchJobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BatchJobRun]:
        """List jobs newest first with optional filtering and pagination."""
        query = self.db.query(BatchJobRun)
        if firm_id is not None:
            query = query.filter(BatchJobRun.firm_id == firm_id)
        if feature is not None:
            query = query.filter(BatchJobRun.feature == feature)
        if status is not None:
            query = query.filter(BatchJobRun.status == BatchJobStatus(status).value)
        return (
            query.order_by(BatchJobRun.started_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_jobs(
        self,
        firm_id: str | None = None,
        feature: str | None = None,
        status: BatchJobStatus | None = None,
    ) -> int:
        query = self.db.query(BatchJobRun)
        if firm_id is not None:
            query = query.filter(BatchJobRun.firm_id == firm_id)
        if feature is not None:
            query = query.filter(BatchJobRun.feature == feature)
        if status is not None:
            query = query.filter(BatchJobRun.status == BatchJobStatus(status).value)
        return query.count()

    def last_run(self, firm_id: str, feature: str) -> BatchJobRun | None:
        """Most recently started job for a firm and feature."""
        jobs = self.list_jobs(firm_id=firm_id, feature=feature, limit=1)
        return jobs[0] if jobs else None
