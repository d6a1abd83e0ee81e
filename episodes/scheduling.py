from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import logging

from episodes.admission import resume_blocked_jobs
from episodes.conf import EpisodesRuntimeConfig
from episodes.errors import InvalidRecurrence
from episodes.job_store import expire_overdue_jobs, insert_if_absent, release_expired_claims
from episodes.metrics import observe_job_finished, observe_jobs_created
from episodes.models import GenerationJob, ProjectSchedule
from episodes.recurrence import next_delivery_instant


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerTickSnapshot:
    active_projects: int
    created_jobs: int
    existing_jobs: int
    invalid_projects: int


@dataclass(frozen=True)
class MaintenanceSnapshot:
    released_claims: int
    retried_processing: int
    failed_processing: int
    expired_jobs: int
    resumed_blocked: int
    failed_blocked: int
    next_cycles_created: int
    cancelled_processing: int = 0


def materialize_for_project(
    project: ProjectSchedule,
    *,
    after: datetime,
    now: datetime,
    config: EpisodesRuntimeConfig,
) -> bool:
    """Ensure the job for the project's first delivery slot after ``after`` exists.

    Returns True when a new job was inserted. Raises InvalidRecurrence for a bad cadence.
    """

    slot = next_delivery_instant(project.recurrence, after)
    job, created = insert_if_absent(
        tenant_id=project.tenant_id,
        project_id=project.project_id,
        scheduled_delivery_at=slot,
        now=now,
        config=config,
    )
    if project.next_scheduled_at is None or slot > project.next_scheduled_at:
        ProjectSchedule.objects.filter(pk=project.pk).update(next_scheduled_at=slot)
        project.next_scheduled_at = slot
    if created:
        observe_jobs_created()
        logger.info("materialized job %s for project %s slot %s", job.id, project.project_id, slot.isoformat())
    return created


def materialize_next_cycle(job: GenerationJob, *, now: datetime, config: EpisodesRuntimeConfig) -> bool:
    """Queue the slot that follows ``job``'s, whatever ``job``'s outcome was.

    Nothing happens for projects that are no longer active.
    """

    project = ProjectSchedule.objects.filter(
        project_id=job.project_id,
        status=ProjectSchedule.Status.ACTIVE,
    ).first()
    if project is None:
        return False
    after = max(job.scheduled_delivery_at, now)
    try:
        return materialize_for_project(project, after=after, now=now, config=config)
    except InvalidRecurrence as e:
        logger.warning("project %s: cannot schedule next cycle: %s", project.project_id, e)
        return False


def run_scheduler_tick(*, now: datetime, config: EpisodesRuntimeConfig) -> SchedulerTickSnapshot:
    active = 0
    created = 0
    existing = 0
    invalid = 0

    for project in ProjectSchedule.objects.filter(status=ProjectSchedule.Status.ACTIVE).order_by("id"):
        active += 1
        try:
            if materialize_for_project(project, after=now, now=now, config=config):
                created += 1
            else:
                existing += 1
        except InvalidRecurrence as e:
            invalid += 1
            logger.warning("project %s skipped: %s", project.project_id, e)

    return SchedulerTickSnapshot(
        active_projects=active,
        created_jobs=created,
        existing_jobs=existing,
        invalid_projects=invalid,
    )


def run_maintenance_tick(*, now: datetime, config: EpisodesRuntimeConfig) -> MaintenanceSnapshot:
    """Lease sweeper, overdue expiry and the blocked-job resume, in that order."""

    released = release_expired_claims(now=now, config=config)
    expired_ids = expire_overdue_jobs(now=now, config=config)
    resumed, failed_blocked, blocked_failed_ids = resume_blocked_jobs(now, config)

    next_cycles = 0
    failed_ids = list(released.failed_job_ids) + list(expired_ids) + list(blocked_failed_ids)
    for job in GenerationJob.objects.filter(pk__in=failed_ids).order_by("id"):
        observe_job_finished(status=GenerationJob.Status.FAILED)
        if materialize_next_cycle(job, now=now, config=config):
            next_cycles += 1

    return MaintenanceSnapshot(
        released_claims=released.released_claims,
        retried_processing=released.retried_processing,
        failed_processing=released.failed_processing,
        expired_jobs=len(expired_ids),
        resumed_blocked=resumed,
        failed_blocked=failed_blocked,
        next_cycles_created=next_cycles,
        cancelled_processing=released.cancelled_processing,
    )


def format_snapshot(name: str, snapshot: SchedulerTickSnapshot | MaintenanceSnapshot) -> str:
    """One ``key=value`` log line for a tick snapshot."""

    return name + " " + " ".join(f"{k}={v}" for k, v in asdict(snapshot).items())
