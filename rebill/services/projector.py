"""Project recurring expense templates into concrete monthly instances.

One pass over the active templates for the reference month. Each template is
handled on its own: a failure is recorded in the run report and the pass
moves on. Only a failure to load the templates at all escapes as
``StoreError``.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TypeVar

from rebill.config import settings
from rebill.dates import due_date_for_month, month_bounds
from rebill.db.models import ExpenseInstance, RecurringTemplate
from rebill.db.store import DuplicateInstanceError, ExpenseStore, StoreError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class ItemError:
    template_id: int | None
    description: str
    message: str

    def to_dict(self) -> dict:
        return {"template_id": self.template_id, "description": self.description, "message": self.message}


@dataclass(slots=True)
class RunReport:
    total_templates: int = 0
    created: int = 0
    skipped: int = 0
    errors: list[ItemError] = field(default_factory=list)
    processed_at: datetime | None = None
    aborted: bool = False

    def to_envelope(self) -> dict:
        envelope: dict = {
            "success": True,
            "message": "Processed recurring expenses",
            "stats": {
                "total": self.total_templates,
                "created": self.created,
                "skipped": self.skipped,
                "errors": len(self.errors),
            },
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }
        if self.errors:
            envelope["errors"] = [e.to_dict() for e in self.errors]
        if self.aborted:
            envelope["aborted"] = True
        return envelope


def failure_envelope(exc: BaseException) -> dict:
    return {"success": False, "error": str(exc) or exc.__class__.__name__}


def _reference_date(now: date | datetime | None) -> date:
    if now is None:
        return date.today()
    if isinstance(now, datetime):
        return now.date()
    return now


async def _with_retries(op: Callable[[], Awaitable[T]], retries: int, backoff: float, what: str) -> T:
    attempt = 0
    while True:
        try:
            return await op()
        except TransientStoreError as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.debug("Retrying %s after transient error (%d/%d): %s", what, attempt, retries, e)
            await asyncio.sleep(backoff)


async def _process_template(
    store: ExpenseStore,
    template: RecurringTemplate,
    reference: date,
    report: RunReport,
    retries: int,
    backoff: float,
    run_id: str,
) -> None:
    extra = {"run_id": run_id, "template_id": template.id, "owner_id": template.owner_id}
    month_start, month_end = month_bounds(reference)

    if template.recurring_start_date and template.recurring_start_date > month_end:
        logger.debug("Skipping %s: starts after this month", template.id, extra=extra)
        report.skipped += 1
        return

    due = due_date_for_month(template.recurring_day, reference)

    try:
        existing = await _with_retries(
            lambda: store.find_instance_for_template_in_month(template.id, month_start, month_end),
            retries,
            backoff,
            "lookup",
        )
    except StoreError as e:
        logger.warning("Lookup failed for %s: %s", template.description, e, extra=extra)
        report.errors.append(ItemError(template.id, template.description, str(e)))
        return

    if existing is not None:
        logger.debug("Skipping %s: already generated for this month", template.id, extra=extra)
        report.skipped += 1
        return

    instance = ExpenseInstance.from_template(template, due)
    try:
        new_id = await _with_retries(
            lambda: store.insert_expense_instance(instance),
            retries,
            backoff,
            "insert",
        )
    except DuplicateInstanceError:
        logger.info("Skipping %s: instance created concurrently", template.id, extra=extra)
        report.skipped += 1
        return
    except StoreError as e:
        logger.warning("Insert failed for %s: %s", template.description, e, extra=extra)
        report.errors.append(ItemError(template.id, template.description, str(e)))
        return

    logger.info("Created expense %s for %s due on %s", new_id, template.description, due, extra=extra)
    report.created += 1


async def _guarded(coro: Awaitable[None], template: RecurringTemplate, report: RunReport, run_id: str) -> None:
    try:
        await coro
    except Exception as e:
        logger.error(
            "Unexpected error processing %s",
            template.description,
            exc_info=True,
            extra={"run_id": run_id, "template_id": template.id},
        )
        report.errors.append(ItemError(template.id, template.description, str(e) or e.__class__.__name__))


async def project_recurring_expenses(
    store: ExpenseStore,
    now: date | datetime | None = None,
    *,
    concurrency: int | None = None,
    retries: int | None = None,
    retry_backoff: float | None = None,
    timeout: float | None = None,
) -> RunReport:
    """Ensure every active template has exactly one instance due in the reference month.

    ``now`` fixes the reference date (defaults to today). With ``concurrency``
    above 1 templates are processed in parallel; duplicates are then caught by
    the store's unique index and counted as skipped. When ``timeout`` elapses
    the report comes back with ``aborted`` set and the counts reached so far.
    """
    concurrency = concurrency or settings.projector_concurrency
    retries = settings.projector_retries if retries is None else retries
    retry_backoff = settings.projector_retry_backoff_seconds if retry_backoff is None else retry_backoff
    timeout = settings.projector_timeout_seconds if timeout is None else timeout

    reference = _reference_date(now)
    run_id = uuid.uuid4().hex[:8]
    report = RunReport()
    started = time.monotonic()
    logger.info("Processing recurring expenses for %02d/%d", reference.month, reference.year, extra={"run_id": run_id})

    try:
        async with asyncio.timeout(timeout if timeout and timeout > 0 else None):
            templates = await store.list_active_recurring_templates(reference)
            report.total_templates = len(templates)
            logger.info("Found %d active recurring templates", len(templates), extra={"run_id": run_id})

            if concurrency <= 1:
                for t in templates:
                    await _guarded(
                        _process_template(store, t, reference, report, retries, retry_backoff, run_id),
                        t,
                        report,
                        run_id,
                    )
            else:
                sem = asyncio.Semaphore(concurrency)

                async def _bounded(t: RecurringTemplate) -> None:
                    async with sem:
                        await _guarded(
                            _process_template(store, t, reference, report, retries, retry_backoff, run_id),
                            t,
                            report,
                            run_id,
                        )

                await asyncio.gather(*(_bounded(t) for t in templates))
    except TimeoutError:
        report.aborted = True
        logger.error("Run aborted after %.1fs timeout", timeout, extra={"run_id": run_id})

    report.processed_at = datetime.now(UTC)
    logger.info(
        "Recurring expenses done: %d created, %d skipped, %d errors",
        report.created,
        report.skipped,
        len(report.errors),
        extra={"run_id": run_id, "latency_ms": round((time.monotonic() - started) * 1000, 1)},
    )
    return report


async def run_projection(store: ExpenseStore, now: date | datetime | None = None, **kwargs) -> dict:
    """Run the projector and wrap the outcome in the success/failure envelope."""
    try:
        report = await project_recurring_expenses(store, now, **kwargs)
    except Exception as e:
        logger.error("Recurring expense generation failed", exc_info=True)
        return failure_envelope(e)
    return report.to_envelope()
