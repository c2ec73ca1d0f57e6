"""FastAPI routes for AI usage and cost reporting.

Date ranges are inclusive calendar days in UTC; without explicit bounds
the last 30 days up to and including today are reported.
"""

from datetime import UTC, date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query

from caseassist.api.dependencies import Caller, get_caller, get_ledger
from caseassist.api.schemas import (
    CostBreakdownResponse,
    DailyCostResponse,
    UsageSummaryResponse,
)
from caseassist.services import CostLedger

router = APIRouter(prefix="/usage", tags=["usage"])

DEFAULT_RANGE_DAYS = 30


def date_range(
    start: date | None = Query(None, description="First day (inclusive)"),
    end: date | None = Query(None, description="Last day (inclusive)"),
) -> tuple[date, date]:
    """Resolve query bounds to a half-open ``[start, end)`` day range."""
    last = end or datetime.now(UTC).date()
    first = start or last - timedelta(days=DEFAULT_RANGE_DAYS - 1)
    if first > last:
        raise HTTPException(status_code=422, detail="start must not be after end")
    return first, last + timedelta(days=1)


@router.get("/summary", response_model=UsageSummaryResponse)
def usage_summary(
    bounds: tuple[date, date] = Depends(date_range),
    caller: Caller = Depends(get_caller),
    ledger: CostLedger = Depends(get_ledger),
) -> UsageSummaryResponse:
    """Firm totals, averages and month-end projection."""
    summary = ledger.summarize_firm(caller.firm_id, *bounds)
    return UsageSummaryResponse(
        firm_id=summary.firm_id,
        start=summary.start,
        end=summary.end,
        total_cost_eur=summary.total_cost_eur,
        input_tokens=summary.input_tokens,
        output_tokens=summary.output_tokens,
        total_tokens=summary.total_tokens,
        calls=summary.calls,
        failed_calls=summary.failed_calls,
        average_latency_ms=summary.average_latency_ms,
        average_daily_cost_eur=summary.average_daily_cost_eur,
        projected_month_end_eur=summary.projected_month_end_eur,
    )


@router.get("/by-feature", response_model=list[CostBreakdownResponse])
def usage_by_feature(
    bounds: tuple[date, date] = Depends(date_range),
    caller: Caller = Depends(get_caller),
    ledger: CostLedger = Depends(get_ledger),
) -> list[CostBreakdownResponse]:
    return [
        CostBreakdownResponse.model_validate(row)
        for row in ledger.costs_by_feature(caller.firm_id, *bounds)
    ]


@router.get("/by-model", response_model=list[CostBreakdownResponse])
def usage_by_model(
    bounds: tuple[date, date] = Depends(date_range),
    caller: Caller = Depends(get_caller),
    ledger: CostLedger = Depends(get_ledger),
) -> list[CostBreakdownResponse]:
    return [
        CostBreakdownResponse.model_validate(row)
        for row in ledger.costs_by_model(caller.firm_id, *bounds)
    ]


@router.get("/by-user", response_model=list[CostBreakdownResponse])
def usage_by_user(
    bounds: tuple[date, date] = Depends(date_range),
    caller: Caller = Depends(get_caller),
    ledger: CostLedger = Depends(get_ledger),
) -> list[CostBreakdownResponse]:
    return [
        CostBreakdownResponse.model_validate(row)
        for row in ledger.costs_by_user(caller.firm_id, *bounds)
    ]


@router.get("/daily", response_model=list[DailyCostResponse])
def usage_daily(
    bounds: tuple[date, date] = Depends(date_range),
    caller: Caller = Depends(get_caller),
    ledger: CostLedger = Depends(get_ledger),
) -> list[DailyCostResponse]:
    """Cost per day with usage, oldest first."""
    return [
        DailyCostResponse.model_validate(row)
        for row in ledger.daily_costs(caller.firm_id, *bounds)
    ]
