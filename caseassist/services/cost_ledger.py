"""Append-only AI usage and cost ledger.

Every model invocation made by the engine, by batch jobs or by any other
caller produces exactly one UsageLogEntry. Entries are never updated or
deleted; corrections are written as compensating entries that negate the
original. Cost is resolved by the caller (see services.pricing) and passed
in; the ledger only records and aggregates.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from caseassist.db.models import (
    BatchJobRun,
    BatchJobStatus,
    UsageLogEntry,
    eur_to_micros,
    micros_to_eur,
    to_iso,
)
from caseassist.errors import BatchJobStateError, InvalidCompensationError, NotFoundError
from caseassist.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

BATCH_USER_LABEL = "batch processing"


@dataclass(frozen=True)
class UsageSummary:
    """Firm-level usage totals for a date range."""

    firm_id: str
    start: str
    end: str
    total_cost_eur: Decimal
    input_tokens: int
    output_tokens: int
    calls: int
    failed_calls: int
    average_latency_ms: float
    average_daily_cost_eur: Decimal
    projected_month_end_eur: Decimal

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CostBreakdown:
    """One row of a cost grouping (by feature, model or user)."""

    key: str
    cost_eur: Decimal
    tokens: int
    calls: int
    percent_of_total: float


@dataclass(frozen=True)
class DailyCost:
    """Cost and call volume of one UTC calendar day."""

    day: str
    cost_eur: Decimal
    tokens: int
    calls: int


@dataclass(frozen=True)
class BatchUsageTotals:
    """Ledger roll-up of the entries attributed to one batch job."""

    batch_job_id: str
    total_tokens: int
    total_cost_micro_eur: int
    calls: int

    @property
    def total_cost_eur(self) -> Decimal:
        return micros_to_eur(self.total_cost_micro_eur)


def _range_bound(moment: datetime | date | str) -> str:
    """Normalize a range bound to the stored ISO timestamp format."""
    if isinstance(moment, str):
        return moment
    if not isinstance(moment, datetime):
        moment = datetime(moment.year, moment.month, moment.day, tzinfo=UTC)
    return to_iso(moment)


class CostLedger:
    """Records usage entries and answers aggregation queries over them.

    Range queries are half-open: ``start <= created_at < end``.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # =========================================================================
    # Recording
    # =========================================================================

    def record_usage(
        self,
        feature: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_eur: Decimal,
        firm_id: str,
        user_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        duration_ms: int = 0,
        batch_job_id: str | None = None,
        error: str | None = None,
        created_at: datetime | None = None,
    ) -> UsageLogEntry:
        """Append one usage entry for a model invocation.

        Failed calls are recorded too, with zero output tokens and the
        error text. Database failures are not handled here: a call that
        cannot be accounted for must fail the enclosing operation.

        Args:
            feature: Logical capability name (e.g. 'conversation-turn').
            model: Model identifier.
            input_tokens: Prompt tokens.
            output_tokens: Completion tokens.
            cost_eur: Resolved cost, at most 6 fractional digits.
            firm_id: Firm billed for the call.
            user_id: Triggering user, None for batch processing.
            entity_type: Polymorphic reference type (e.g. 'conversation').
            entity_id: Polymorphic reference id.
            duration_ms: Call duration.
            batch_job_id: Batch job the call belongs to.
            error: Failure description for failed calls.
            created_at: Override of the call timestamp (backfills, tests).

        Returns:
            The persisted UsageLogEntry.

        Raises:
            ValueError: If tokens or cost are negative, or cost has more
                than 6 fractional digits.
            NotFoundError: If ``batch_job_id`` names no job.
            BatchJobStateError: If the batch job is no longer Running; its
                totals are frozen at completion.
        """
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("Token counts must be non-negative")
        cost_micro = eur_to_micros(cost_eur)
        if cost_micro < 0:
            raise ValueError("Usage cost must be non-negative; use record_compensation")
        if (entity_type is None) != (entity_id is None):
            raise ValueError("entity_type and entity_id must be given together")
        if batch_job_id is not None:
            self._require_running_job(batch_job_id)

        entry = UsageLogEntry(
            feature=feature,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_micro_eur=cost_micro,
            firm_id=firm_id,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            duration_ms=max(0, int(duration_ms)),
            batch_job_id=batch_job_id,
            error=sanitize_error_message(error),
        )
        if created_at is not None:
            entry.created_at = to_iso(created_at)
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        logger.debug(
            "Usage recorded: feature=%s model=%s tokens=%d cost_eur=%s firm=%s",
            feature, model, entry.total_tokens, entry.cost_eur, firm_id,
        )
        return entry

    def record_compensation(self, original_entry_id: str, reason: str) -> UsageLogEntry:
        """Write a compensating entry that negates an earlier one.

        The compensation stays attributed to the original's batch job only
        while that job is Running. Against a finished job it is left off the
        job and reachable through ``compensates_entry_id``, so the job's
        frozen totals keep matching its entries.

        Args:
            original_entry_id: Entry being corrected.
            reason: Why the correction is made (stored as the entry note).

        Returns:
            The compensating UsageLogEntry.

        Raises:
            NotFoundError: If the original entry does not exist.
            InvalidCompensationError: If the original is itself a
                compensation or has already been compensated.
        """
        original = self.get_entry(original_entry_id)
        if original is None:
            raise NotFoundError("usage entry", original_entry_id)
        if original.compensates_entry_id is not None:
            raise InvalidCompensationError(
                original_entry_id, "entry is itself a compensation"
            )
        existing = (
            self.db.query(UsageLogEntry.id)
            .filter(UsageLogEntry.compensates_entry_id == original_entry_id)
            .first()
        )
        if existing is not None:
            raise InvalidCompensationError(original_entry_id, "entry already compensated")

        batch_job_id = original.batch_job_id
        if batch_job_id is not None and not self._job_is_running(batch_job_id):
            batch_job_id = None

        entry = UsageLogEntry(
            feature=original.feature,
            model=original.model,
            input_tokens=-original.input_tokens,
            output_tokens=-original.output_tokens,
            cost_micro_eur=-original.cost_micro_eur,
            firm_id=original.firm_id,
            user_id=original.user_id,
            entity_type=original.entity_type,
            entity_id=original.entity_id,
            duration_ms=0,
            batch_job_id=batch_job_id,
            note=sanitize_error_message(reason),
            compensates_entry_id=original.id,
        )
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        logger.info(
            "Usage entry %s compensated by %s (%s EUR): %s",
            original.id, entry.id, entry.cost_eur, reason,
        )
        return entry

    def _job_is_running(self, job_id: str) -> bool:
        status = self.db.query(BatchJobRun.status).filter(BatchJobRun.id == job_id).scalar()
        return status == BatchJobStatus.Running.value

    def _require_running_job(self, job_id: str) -> None:
        status = self.db.query(BatchJobRun.status).filter(BatchJobRun.id == job_id).scalar()
        if status is None:
            raise NotFoundError("batch job", job_id)
        if status != BatchJobStatus.Running.value:
            raise BatchJobStateError(job_id, status)

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_entry(self, entry_id: str) -> UsageLogEntry | None:
        return self.db.query(UsageLogEntry).filter(UsageLogEntry.id == entry_id).first()

    def list_entries(
        self,
        firm_id: str,
        start: datetime | date | str | None = None,
        end: datetime | date | str | None = None,
        feature: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[UsageLogEntry]:
        """List a firm's entries newest first, with optional filters."""
        query = self.db.query(UsageLogEntry).filter(UsageLogEntry.firm_id == firm_id)
        if start is not None:
            query = query.filter(UsageLogEntry.created_at >= _range_bound(start))
        if end is not None:
            query = query.filter(UsageLogEntry.created_at < _range_bound(end))
        if feature is not None:
            query = query.filter(UsageLogEntry.feature == feature)
        if entity_type is not None:
            query = query.filter(UsageLogEntry.entity_type == entity_type)
        if entity_id is not None:
            query = query.filter(UsageLogEntry.entity_id == entity_id)
        return (
            query.order_by(UsageLogEntry.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Aggregations
    # =========================================================================

    def _firm_range(self, query, firm_id: str, start, end):
        return query.filter(
            UsageLogEntry.firm_id == firm_id,
            UsageLogEntry.created_at >= _range_bound(start),
            UsageLogEntry.created_at < _range_bound(end),
        )

    def summarize_firm(
        self,
        firm_id: str,
        start: datetime | date,
        end: datetime | date,
        as_of: datetime | None = None,
    ) -> UsageSummary:
        """Summarize a firm's spend over ``[start, end)``.

        The month-end projection extrapolates the average daily cost of
        the range over the days left in the month of ``as_of``
        (default: now).

        Args:
            firm_id: Firm to summarize.
            start: Inclusive range start.
            end: Exclusive range end.
            as_of: Reference moment for the projection.

        Returns:
            UsageSummary with totals, averages and the projection.
        """
        row = self._firm_range(
            self.db.query(
                func.coalesce(func.sum(UsageLogEntry.cost_micro_eur), 0),
                func.coalesce(func.sum(UsageLogEntry.input_tokens), 0),
                func.coalesce(func.sum(UsageLogEntry.output_tokens), 0),
                func.count(UsageLogEntry.id),
                func.coalesce(
                    func.sum(case((UsageLogEntry.error.is_not(None), 1), else_=0)), 0
                ),
                func.avg(UsageLogEntry.duration_ms),
            ),
            firm_id, start, end,
        ).filter(UsageLogEntry.compensates_entry_id.is_(None)).one()
        # Compensations adjust money and tokens but are not calls
        comp_row = self._firm_range(
            self.db.query(
                func.coalesce(func.sum(UsageLogEntry.cost_micro_eur), 0),
                func.coalesce(func.sum(UsageLogEntry.input_tokens), 0),
                func.coalesce(func.sum(UsageLogEntry.output_tokens), 0),
            ),
            firm_id, start, end,
        ).filter(UsageLogEntry.compensates_entry_id.is_not(None)).one()

        total_micro = int(row[0]) + int(comp_row[0])
        start_dt = datetime.fromisoformat(_range_bound(start))
        end_dt = datetime.fromisoformat(_range_bound(end))
        days = max(1, (end_dt - start_dt).days)
        average_daily = micros_to_eur(total_micro // days)

        as_of = as_of or datetime.now(UTC)
        days_in_month = calendar.monthrange(as_of.year, as_of.month)[1]
        days_left = days_in_month - as_of.day
        projected = micros_to_eur(total_micro + (total_micro // days) * days_left)

        return UsageSummary(
            firm_id=firm_id,
            start=_range_bound(start),
            end=_range_bound(end),
            total_cost_eur=micros_to_eur(total_micro),
            input_tokens=int(row[1]) + int(comp_row[1]),
            output_tokens=int(row[2]) + int(comp_row[2]),
            calls=int(row[3]),
            failed_calls=int(row[4]),
            average_latency_ms=round(float(row[5] or 0), 1),
            average_daily_cost_eur=average_daily,
            projected_month_end_eur=projected,
        )

    def _breakdown(self, column, firm_id: str, start, end) -> list[tuple]:
        rows = (
            self._firm_range(
                self.db.query(
                    column,
                    func.coalesce(func.sum(UsageLogEntry.cost_micro_eur), 0),
                    func.coalesce(
                        func.sum(UsageLogEntry.input_tokens + UsageLogEntry.output_tokens), 0
                    ),
                    func.coalesce(
                        func.sum(
                            case((UsageLogEntry.compensates_entry_id.is_(None), 1), else_=0)
                        ),
                        0,
                    ),
                ),
                firm_id, start, end,
            )
            .group_by(column)
            .all()
        )
        return sorted(
            ((key, int(cost), int(tokens), int(calls)) for key, cost, tokens, calls in rows),
            key=lambda r: (-r[1], r[0] or ""),
        )

    def _to_breakdown(self, rows: list[tuple], null_label: str = "") -> list[CostBreakdown]:
        total = sum(r[1] for r in rows)
        return [
            CostBreakdown(
                key=key if key is not None else null_label,
                cost_eur=micros_to_eur(cost),
                tokens=tokens,
                calls=calls,
                percent_of_total=round(cost * 100 / total, 2) if total > 0 else 0.0,
            )
            for key, cost, tokens, calls in rows
        ]

    def costs_by_feature(self, firm_id: str, start, end) -> list[CostBreakdown]:
        """Cost per feature over ``[start, end)``, most expensive first."""
        return self._to_breakdown(
            self._breakdown(UsageLogEntry.feature, firm_id, start, end)
        )

    def costs_by_model(self, firm_id: str, start, end) -> list[CostBreakdown]:
        """Cost per model over ``[start, end)``, most expensive first."""
        return self._to_breakdown(
            self._breakdown(UsageLogEntry.model, firm_id, start, end)
        )

    def costs_by_user(self, firm_id: str, start, end) -> list[CostBreakdown]:
        """Cost per user; entries without a user are reported as batch processing."""
        return self._to_breakdown(
            self._breakdown(UsageLogEntry.user_id, firm_id, start, end),
            null_label=BATCH_USER_LABEL,
        )

    def daily_costs(self, firm_id: str, start, end) -> list[DailyCost]:
        """Cost per UTC calendar day over ``[start, end)``, oldest first.

        Days without usage are omitted.
        """
        day = func.substr(UsageLogEntry.created_at, 1, 10)
        rows = (
            self._firm_range(
                self.db.query(
                    day,
                    func.coalesce(func.sum(UsageLogEntry.cost_micro_eur), 0),
                    func.coalesce(
                        func.sum(UsageLogEntry.input_tokens + UsageLogEntry.output_tokens), 0
                    ),
                    func.count(UsageLogEntry.id),
                ),
                firm_id, start, end,
            )
            .group_by(day)
            .order_by(day)
            .all()
        )
        return [
            DailyCost(day=d, cost_eur=micros_to_eur(int(cost)), tokens=int(tokens), calls=int(calls))
            for d, cost, tokens, calls in rows
        ]

    def summarize_batch_job(self, batch_job_id: str) -> BatchUsageTotals:
        """Sum tokens and cost of every entry attributed to a batch job."""
        tokens, cost, calls = (
            self.db.query(
                func.coalesce(
                    func.sum(UsageLogEntry.input_tokens + UsageLogEntry.output_tokens), 0
                ),
                func.coalesce(func.sum(UsageLogEntry.cost_micro_eur), 0),
                func.count(UsageLogEntry.id),
            )
            .filter(UsageLogEntry.batch_job_id == batch_job_id)
            .one()
        )
        return BatchUsageTotals(
            batch_job_id=batch_job_id,
            total_tokens=int(tokens),
            total_cost_micro_eur=int(cost),
            calls=int(calls),
        )

    def total_for_entity(self, entity_type: str, entity_id: str) -> Decimal:
        """Total EUR cost attributed to one entity (e.g. a conversation)."""
        micros = (
            self.db.query(func.coalesce(func.sum(UsageLogEntry.cost_micro_eur), 0))
            .filter(
                UsageLogEntry.entity_type == entity_type,
                UsageLogEntry.entity_id == entity_id,
            )
            .scalar()
        )
        return micros_to_eur(int(micros))
