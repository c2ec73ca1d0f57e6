"""Concurrent batch processing with per-item retries.

BatchRunner opens a BatchJobRun, pushes every item through a handler on a
bounded asyncio worker pool, retries transient provider failures per item
with exponential backoff, and records each item's outcome. One bad item
never sinks the run: it is counted in ``items_failed`` and the pool moves
on. Only a crash of the runner itself completes the job as Failed.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Generic, TypeVar

from sqlalchemy.orm import Session

from caseassist.config import BatchConfig
from caseassist.db.models import BatchJobRun, UsageLogEntry
from caseassist.errors import RateLimitError, TransientProviderError
from caseassist.services.batch_tracker import BatchJobTracker
from caseassist.services.cost_ledger import CostLedger
from caseassist.services.pricing import PricingTable
from caseassist.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchItemContext(Generic[T]):
    """Per-item view handed to a batch handler.

    ``record_usage`` writes a ledger entry attributed to the running job,
    pricing the call from the runner's pricing table.
    """

    job_id: str
    firm_id: str
    feature: str
    index: int
    item: T
    attempt: int
    _record: Callable[..., UsageLogEntry] = field(repr=False)

    def record_usage(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: int = 0,
        user_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        error: str | None = None,
    ) -> UsageLogEntry:
        return self._record(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            error=error,
        )


Handler = Callable[[BatchItemContext], Awaitable[Any]]


class BatchRunner:
    """Runs one batch job over a worker pool.

    Args:
        db: SQLAlchemy session shared by the tracker and the ledger.
        pricing: Pricing table used by ``BatchItemContext.record_usage``.
        config: Pool size and retry policy.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        db: Session,
        pricing: PricingTable,
        config: BatchConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.pricing = pricing
        self.config = config or BatchConfig()
        self.ledger = CostLedger(db)
        self.tracker = BatchJobTracker(db, self.ledger)
        self._sleep = sleep

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based), capped."""
        delay = self.config.base_delay_seconds * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.config.max_delay_seconds)

    async def run(
        self,
        firm_id: str,
        feature: str,
        items: Iterable[T],
        handler: Handler,
    ) -> BatchJobRun:
        """Process every item and return the completed job record.

        Args:
            firm_id: Firm the job runs for.
            feature: Logical capability name, also used for ledger entries.
            items: Items to process.
            handler: Async callable invoked once per attempt with a
                BatchItemContext. Raising TransientProviderError asks for
                a retry; any other exception fails the item.

        Returns:
            The completed BatchJobRun.
        """
        items = list(items)
        job = self.tracker.start_job(firm_id, feature, total_items=len(items))
        job_id = job.id
        semaphore = asyncio.Semaphore(self.config.concurrency)
        db_lock = asyncio.Lock()

        def _record(**kwargs: Any) -> UsageLogEntry:
            cost: Decimal = self.pricing.cost_for(
                kwargs["model"], kwargs["input_tokens"], kwargs["output_tokens"]
            )
            return self.ledger.record_usage(
                feature=feature,
                cost_eur=cost,
                firm_id=firm_id,
                batch_job_id=job_id,
                **kwargs,
            )

        async def _process_item(index: int, item: T) -> None:
            async with semaphore:
                success = False
                for attempt in range(1, self.config.max_attempts + 1):
                    context = BatchItemContext(
                        job_id=job_id,
                        firm_id=firm_id,
                        feature=feature,
                        index=index,
                        item=item,
                        attempt=attempt,
                        _record=_record,
                    )
                    try:
                        await handler(context)
                        success = True
                        break
                    except TransientProviderError as e:
                        if attempt >= self.config.max_attempts:
                            logger.warning(
                                "Batch job %s item %d failed after %d attempts: %s",
                                job_id, index, attempt, e,
                            )
                            break
                        retry_after = e.retry_after if isinstance(e, RateLimitError) else None
                        delay = self.backoff_delay(attempt, retry_after)
                        logger.warning(
                            "Batch job %s item %d transient failure (attempt %d/%d), "
                            "retrying in %.1fs: %s",
                            job_id, index, attempt, self.config.max_attempts, delay, e,
                        )
                        await self._sleep(delay)
                    except Exception as e:
                        logger.warning(
                            "Batch job %s item %d failed: %s",
                            job_id, index, sanitize_error_message(str(e), 500),
                        )
                        break
                async with db_lock:
                    self.tracker.record_item_outcome(job_id, success)

        try:
            results = await asyncio.gather(
                *[_process_item(i, item) for i, item in enumerate(items)],
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            self.tracker.complete_job(job_id, error_message="batch run cancelled")
            raise

        crashes = [r for r in results if isinstance(r, BaseException)]
        if crashes:
            logger.error(
                "Batch job %s crashed in %d worker(s)", job_id, len(crashes),
                exc_info=crashes[0],
            )
            return self.tracker.complete_job(
                job_id, error_message=f"batch runner crashed: {crashes[0]}"
            )
        return self.tracker.complete_job(job_id)
