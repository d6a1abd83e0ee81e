"""Per-tenant daily cost ledger and the admission pre-check built on it."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import logging
from zoneinfo import ZoneInfo

from django.db import transaction
from django.db.models import F

from episodes.conf import EpisodesRuntimeConfig
from episodes.models import CostLedgerEntry, GenerationJob, TenantBudget
from episodes.retry import deadline_for


logger = logging.getLogger(__name__)


def ledger_date(now: datetime, config: EpisodesRuntimeConfig) -> date:
    return now.astimezone(ZoneInfo(config.ledger_timezone)).date()


def daily_cap_for(tenant_id: str, config: EpisodesRuntimeConfig) -> Decimal:
    budget = TenantBudget.objects.filter(tenant_id=tenant_id).only("daily_cost_cap").first()
    if budget is not None:
        return Decimal(budget.daily_cost_cap)
    return Decimal(config.daily_cost_cap)


def episode_cap_for(tenant_id: str, config: EpisodesRuntimeConfig) -> Decimal:
    """Most one delivery slot may cost across all of its attempts."""

    budget = TenantBudget.objects.filter(tenant_id=tenant_id).only("episode_cost_cap").first()
    if budget is not None and budget.episode_cost_cap is not None:
        return Decimal(budget.episode_cost_cap)
    return Decimal(config.episode_cost_cap)


def spent_today(tenant_id: str, now: datetime, config: EpisodesRuntimeConfig) -> Decimal:
    entry = (
        CostLedgerEntry.objects.filter(tenant_id=tenant_id, date=ledger_date(now, config))
        .only("total_cost")
        .first()
    )
    return Decimal(entry.total_cost) if entry is not None else Decimal("0")


def admit(tenant_id: str, now: datetime, config: EpisodesRuntimeConfig) -> bool:
    """Pre-check: reject only once today's spend has already reached the cap.

    A job that pushes the total past the cap is still admitted; the ones after it are not.
    """

    total = spent_today(tenant_id, now, config)
    cap = daily_cap_for(tenant_id, config)
    allowed = total < cap
    if not allowed:
        logger.info("admission rejected tenant=%s spent=%s cap=%s", tenant_id, total, cap)
    return allowed


def ensure_ledger_entry(tenant_id: str, day: date) -> CostLedgerEntry:
    entry, _ = CostLedgerEntry.objects.get_or_create(tenant_id=tenant_id, date=day)
    return entry


def record_cost(
    tenant_id: str,
    cost: Decimal,
    now: datetime,
    config: EpisodesRuntimeConfig,
    *,
    count_job: bool = True,
) -> None:
    """Add ``cost`` to the tenant's entry for today.

    Joins the caller's transaction when there is one, so the increment commits
    together with the job write.
    """

    amount = Decimal(str(cost or 0))
    if amount < 0:
        raise ValueError(f"cost must not be negative: {amount}")
    with transaction.atomic():
        entry = ensure_ledger_entry(tenant_id, ledger_date(now, config))
        CostLedgerEntry.objects.filter(pk=entry.pk).update(
            total_cost=F("total_cost") + amount,
            job_count=F("job_count") + (1 if count_job else 0),
        )


def resume_blocked_jobs(now: datetime, config: EpisodesRuntimeConfig) -> tuple[int, int, list[int]]:
    """Move BLOCKED jobs from an earlier ledger day back to PENDING.

    Jobs whose deadline has passed (or whose attempts are used up) go to FAILED.
    Returns ``(resumed, failed, failed_job_ids)``.
    """

    today = ledger_date(now, config)
    resumed = 0
    failed_ids: list[int] = []

    with transaction.atomic():
        jobs = list(
            GenerationJob.objects.select_for_update(skip_locked=True)
            .filter(status=GenerationJob.Status.BLOCKED, blocked_ledger_date__lt=today)
            .order_by("id")
        )
        for tenant_id in sorted({j.tenant_id for j in jobs}):
            ensure_ledger_entry(tenant_id, today)

        for job in jobs:
            exhausted = int(job.attempt_count) >= int(job.max_attempts)
            if now >= deadline_for(job.scheduled_delivery_at, config.safety_margin) or exhausted:
                reason = "attempts exhausted while blocked" if exhausted else "generation window expired while blocked"
                job.transition_to(GenerationJob.Status.FAILED, note=reason)
                job.last_error = reason
                job.finished_at = now
                failed_ids.append(int(job.id))
                logger.warning("job %s failed: %s", job.id, reason)
            else:
                job.transition_to(GenerationJob.Status.PENDING, note=f"ledger reset {today.isoformat()}")
                resumed += 1
            job.blocked_at = None
            job.blocked_ledger_date = None
            job.save(
                update_fields=[
                    "status",
                    "last_error",
                    "finished_at",
                    "blocked_at",
                    "blocked_ledger_date",
                    "event_log",
                    "version",
                    "updated_at",
                ]
            )

    return resumed, len(failed_ids), failed_ids
