"""Durable generation job store.

Every public function here is one atomic unit of work against the database. Row
locks come from ``select_for_update(skip_locked=True)`` so concurrent workers never
wait on each other; backends without row locks (SQLite) serialize the atomic
block instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
import logging
from typing import Iterable

from django.db import IntegrityError
from django.db import transaction
from django.db.models import Exists, F, OuterRef, Q

from episodes.admission import episode_cap_for, ledger_date, record_cost
from episodes.conf import EpisodesRuntimeConfig
from episodes.errors import JobNotFound, StaleJobState
from episodes.models import GenerationJob, ProjectSchedule
from episodes.retry import backoff_delay, should_retry


logger = logging.getLogger(__name__)

Status = GenerationJob.Status

_JOB_WRITE_FIELDS = [
    "status",
    "priority",
    "attempt_count",
    "next_attempt_not_before",
    "claimed_by",
    "claimed_at",
    "claim_expires_at",
    "workflow_handle",
    "processing_started_at",
    "finished_at",
    "blocked_at",
    "blocked_ledger_date",
    "last_error",
    "event_log",
    "result_ref",
    "total_cost",
    "version",
    "updated_at",
]


@dataclass(frozen=True)
class ReleaseSnapshot:
    released_claims: int
    retried_processing: int
    failed_processing: int
    failed_job_ids: tuple[int, ...] = ()
    cancelled_processing: int = 0


def idempotency_key_for(project_id: str, scheduled_delivery_at: datetime) -> str:
    utc = scheduled_delivery_at.astimezone(dt_timezone.utc)
    return f"{project_id}:{utc:%Y-%m-%dT%H:%M}Z"


def _live_job_for_key(key: str) -> GenerationJob | None:
    return GenerationJob.objects.filter(idempotency_key=key).exclude(status=Status.CANCELLED).first()


def _locked_job(job_id: int) -> GenerationJob:
    job = GenerationJob.objects.select_for_update().filter(pk=job_id).first()
    if job is None:
        raise JobNotFound(f"GenerationJob({job_id}) does not exist")
    return job


def insert_if_absent(
    *,
    tenant_id: str,
    project_id: str,
    scheduled_delivery_at: datetime,
    now: datetime,
    config: EpisodesRuntimeConfig,
) -> tuple[GenerationJob, bool]:
    """Create the PENDING job for a delivery slot unless one already exists.

    A concurrent insert of the same slot loses on the unique constraint and gets
    the winner's row back.
    """

    key = idempotency_key_for(project_id, scheduled_delivery_at)
    existing = _live_job_for_key(key)
    if existing is not None:
        return existing, False

    try:
        with transaction.atomic():
            job = GenerationJob.objects.create(
                tenant_id=tenant_id,
                project_id=project_id,
                idempotency_key=key,
                scheduled_delivery_at=scheduled_delivery_at,
                earliest_start_at=scheduled_delivery_at - config.generation_window,
                status=Status.PENDING,
                priority=int(config.standard_priority),
                max_attempts=int(config.max_attempts),
                event_log=f"created {now.isoformat()}",
            )
        return job, True
    except IntegrityError:
        existing = _live_job_for_key(key)
        if existing is None:
            raise
        return existing, False


def _inactive_projects():
    return ProjectSchedule.objects.filter(project_id=OuterRef("project_id")).exclude(
        status=ProjectSchedule.Status.ACTIVE
    )


def _project_is_inactive(project_id: str) -> bool:
    return (
        ProjectSchedule.objects.filter(project_id=project_id)
        .exclude(status=ProjectSchedule.Status.ACTIVE)
        .exists()
    )


def claim_next(*, worker_id: str, now: datetime, config: EpisodesRuntimeConfig) -> GenerationJob | None:
    """Claim the most urgent eligible PENDING job for ``worker_id``.

    Jobs of paused or deleted projects are never claimed. The attempt is charged
    here; it is refunded if the claim never reaches PROCESSING.
    """

    with transaction.atomic():
        job = (
            GenerationJob.objects.select_for_update(skip_locked=True)
            .filter(
                status=Status.PENDING,
                earliest_start_at__lte=now,
                scheduled_delivery_at__gt=now + config.safety_margin,
            )
            .filter(Q(next_attempt_not_before__isnull=True) | Q(next_attempt_not_before__lte=now))
            .filter(~Exists(_inactive_projects()))
            .order_by("-priority", "earliest_start_at", "id")
            .first()
        )
        if job is None:
            return None

        job.transition_to(Status.CLAIMED, note=f"claimed by {worker_id}")
        job.claimed_by = str(worker_id)
        job.claimed_at = now
        job.claim_expires_at = now + config.lease_duration
        job.attempt_count = int(job.attempt_count) + 1
        job.save(update_fields=_JOB_WRITE_FIELDS)
        return job


def mark_processing(*, job_id: int, worker_id: str, workflow_handle: str, now: datetime) -> bool:
    with transaction.atomic():
        job = _locked_job(job_id)
        if job.status != Status.CLAIMED or job.claimed_by != str(worker_id):
            return False
        job.transition_to(Status.PROCESSING, note=f"workflow {workflow_handle}")
        job.workflow_handle = str(workflow_handle or "")
        job.processing_started_at = now
        job.save(update_fields=_JOB_WRITE_FIELDS)
        return True


def renew_lease(*, job_id: int, worker_id: str, now: datetime, config: EpisodesRuntimeConfig) -> bool:
    updated = GenerationJob.objects.filter(
        pk=job_id,
        claimed_by=str(worker_id),
        status__in=[Status.CLAIMED, Status.PROCESSING],
    ).update(claim_expires_at=now + config.lease_duration, version=F("version") + 1)
    return updated == 1


def _check_handle(job: GenerationJob, workflow_handle: str) -> None:
    # An outcome that names a run must belong to the attempt currently processing.
    if workflow_handle and job.workflow_handle != str(workflow_handle):
        raise StaleJobState(
            job.id,
            job.status,
            f"GenerationJob({job.id}) is running {job.workflow_handle or '-'}, not {workflow_handle}",
        )


def mark_succeeded(
    *,
    job_id: int,
    result_ref: str,
    cost: Decimal,
    now: datetime,
    config: EpisodesRuntimeConfig,
    workflow_handle: str = "",
) -> GenerationJob:
    """PROCESSING -> SUCCEEDED and book the cost.

    Raises StaleJobState if the job is no longer PROCESSING, or if ``workflow_handle``
    is given and names an earlier run.
    """

    amount = Decimal(str(cost or 0))
    with transaction.atomic():
        job = _locked_job(job_id)
        if job.status != Status.PROCESSING:
            raise StaleJobState(job.id, job.status)
        _check_handle(job, workflow_handle)
        job.transition_to(Status.SUCCEEDED, note=f"result {result_ref}")
        job.result_ref = str(result_ref or "")
        job.total_cost = Decimal(job.total_cost) + amount
        job.finished_at = now
        job.last_error = ""
        job.clear_claim()
        job.save(update_fields=_JOB_WRITE_FIELDS)
        record_cost(job.tenant_id, amount, now, config)
        episode_cap = episode_cap_for(job.tenant_id, config)
        if job.total_cost > episode_cap:
            logger.warning("job %s succeeded over its episode cost cap: %s > %s", job.id, job.total_cost, episode_cap)
        return job


def _apply_failure(job: GenerationJob, *, error: str, now: datetime, config: EpisodesRuntimeConfig) -> str:
    """Settle one failed attempt in memory and return the job's new status.

    PENDING means a retry was scheduled. A paused or deleted project gets CANCELLED,
    and a job whose spend went past the episode cap gets FAILED with no retry.
    """

    job.last_error = str(error or "")[:4000]
    episode_cap = episode_cap_for(job.tenant_id, config)
    if _project_is_inactive(job.project_id):
        job.transition_to(Status.CANCELLED, note=f"attempt {job.attempt_count} failed, project inactive: {error}")
        job.finished_at = now
        logger.info("job %s cancelled after failed attempt: project %s is inactive", job.id, job.project_id)
    elif Decimal(job.total_cost) > episode_cap:
        job.transition_to(
            Status.FAILED,
            note=f"attempt {job.attempt_count} failed, episode cost {job.total_cost} over cap {episode_cap}: {error}",
        )
        job.finished_at = now
        logger.warning(
            "job %s failed terminally project=%s: episode cost %s over cap %s",
            job.id,
            job.project_id,
            job.total_cost,
            episode_cap,
        )
    else:
        delay = backoff_delay(job.attempt_count, config.backoff_schedule)
        retriable = should_retry(
            attempt_count=job.attempt_count,
            max_attempts=job.max_attempts,
            now=now,
            delay=delay,
            scheduled_delivery_at=job.scheduled_delivery_at,
            safety_margin=config.safety_margin,
        )
        if retriable:
            job.transition_to(Status.PENDING, note=f"attempt {job.attempt_count} failed, retry in {delay}: {error}")
            job.next_attempt_not_before = now + delay
            job.priority = int(config.retry_priority)
        else:
            job.transition_to(Status.FAILED, note=f"attempt {job.attempt_count} failed: {error}")
            job.finished_at = now
            logger.warning(
                "job %s failed terminally project=%s slot=%s attempts=%s error=%s",
                job.id,
                job.project_id,
                job.scheduled_delivery_at.isoformat(),
                job.attempt_count,
                error,
            )
    job.clear_claim()
    job.workflow_handle = ""
    job.processing_started_at = None
    return str(job.status)


def mark_failed(
    *,
    job_id: int,
    error: str,
    cost: Decimal,
    now: datetime,
    config: EpisodesRuntimeConfig,
    worker_id: str | None = None,
    from_statuses: Iterable[str] = (Status.CLAIMED, Status.PROCESSING),
    workflow_handle: str = "",
) -> bool:
    """Record a failed attempt; returns True when the job went back to PENDING for a retry.

    CLAIMED means the workflow could not be started. When ``worker_id`` is given
    the job must still be owned by that worker; when ``workflow_handle`` is given
    it must name the run in progress.
    """

    amount = Decimal(str(cost or 0))
    with transaction.atomic():
        job = _locked_job(job_id)
        if job.status not in tuple(from_statuses):
            raise StaleJobState(job.id, job.status)
        if worker_id is not None and job.claimed_by != str(worker_id):
            raise StaleJobState(job.id, job.status, f"GenerationJob({job.id}) is no longer owned by {worker_id}")
        _check_handle(job, workflow_handle)
        job.total_cost = Decimal(job.total_cost) + amount
        new_status = _apply_failure(job, error=error, now=now, config=config)
        job.save(update_fields=_JOB_WRITE_FIELDS)
        if amount > 0:
            record_cost(job.tenant_id, amount, now, config)
        return new_status == Status.PENDING


def mark_blocked(*, job_id: int, worker_id: str, now: datetime, config: EpisodesRuntimeConfig) -> bool:
    with transaction.atomic():
        job = _locked_job(job_id)
        if job.status != Status.CLAIMED or job.claimed_by != str(worker_id):
            return False
        job.transition_to(Status.BLOCKED, note="daily cost cap reached")
        job.blocked_at = now
        job.blocked_ledger_date = ledger_date(now, config)
        if not config.blocked_counts_as_attempt:
            job.attempt_count = max(0, int(job.attempt_count) - 1)
        job.clear_claim()
        job.save(update_fields=_JOB_WRITE_FIELDS)
        return True


def _cancel_locked(job: GenerationJob, *, now: datetime, reason: str) -> None:
    job.transition_to(Status.CANCELLED, note=reason)
    job.last_error = str(reason or "")
    job.finished_at = now
    job.clear_claim()
    job.save(update_fields=_JOB_WRITE_FIELDS)


def cancel(*, job_id: int, now: datetime, reason: str = "") -> bool:
    with transaction.atomic():
        job = _locked_job(job_id)
        if job.status not in GenerationJob.CANCELLABLE_STATUSES:
            return False
        _cancel_locked(job, now=now, reason=reason or "cancelled")
        return True


def cancel_for_project(
    *,
    project_id: str,
    now: datetime,
    reason: str,
    statuses: Iterable[str] | None = None,
) -> int:
    wanted = list(statuses) if statuses is not None else list(GenerationJob.CANCELLABLE_STATUSES)
    with transaction.atomic():
        jobs = list(
            GenerationJob.objects.select_for_update()
            .filter(project_id=project_id, status__in=wanted)
            .order_by("id")
        )
        for job in jobs:
            _cancel_locked(job, now=now, reason=reason)
    if jobs:
        logger.info("cancelled %s job(s) for project %s: %s", len(jobs), project_id, reason)
    return len(jobs)


def release_expired_claims(*, now: datetime, config: EpisodesRuntimeConfig) -> ReleaseSnapshot:
    """Sweep leases that ran out.

    CLAIMED: the workflow never started, so the job goes back to PENDING with the
    attempt refunded. PROCESSING: the worker died mid-run, which counts as one
    failed attempt.
    """

    released = 0
    retried = 0
    cancelled = 0
    failed_ids: list[int] = []

    with transaction.atomic():
        jobs = list(
            GenerationJob.objects.select_for_update(skip_locked=True)
            .filter(status__in=[Status.CLAIMED, Status.PROCESSING], claim_expires_at__lt=now)
            .order_by("id")
        )
        for job in jobs:
            if job.status == Status.CLAIMED:
                job.transition_to(Status.PENDING, note=f"lease of {job.claimed_by} expired before start")
                job.attempt_count = max(0, int(job.attempt_count) - 1)
                job.clear_claim()
                released += 1
            else:
                new_status = _apply_failure(job, error="lease expired", now=now, config=config)
                if new_status == Status.PENDING:
                    retried += 1
                elif new_status == Status.FAILED:
                    failed_ids.append(int(job.id))
                else:
                    cancelled += 1
            job.save(update_fields=_JOB_WRITE_FIELDS)

    return ReleaseSnapshot(
        released_claims=released,
        retried_processing=retried,
        failed_processing=len(failed_ids),
        failed_job_ids=tuple(failed_ids),
        cancelled_processing=cancelled,
    )


def expire_overdue_jobs(*, now: datetime, config: EpisodesRuntimeConfig) -> list[int]:
    """Fail PENDING jobs whose deadline passed before anyone could claim them.

    Returns the ids of the jobs that were failed.
    """

    failed_ids: list[int] = []
    with transaction.atomic():
        jobs = list(
            GenerationJob.objects.select_for_update(skip_locked=True)
            .filter(status=Status.PENDING, scheduled_delivery_at__lte=now + config.safety_margin)
            .order_by("id")
        )
        for job in jobs:
            job.transition_to(Status.FAILED, note="generation window expired")
            job.last_error = job.last_error or "generation window expired"
            job.finished_at = now
            job.save(update_fields=_JOB_WRITE_FIELDS)
            failed_ids.append(int(job.id))
            logger.warning("job %s failed: generation window expired (slot %s)", job.id, job.scheduled_delivery_at)
    return failed_ids


def get_job(job_id: int) -> GenerationJob:
    job = GenerationJob.objects.filter(pk=job_id).first()
    if job is None:
        raise JobNotFound(f"GenerationJob({job_id}) does not exist")
    return job
