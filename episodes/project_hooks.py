"""Inbound signals from project management.

These are the only writers of ProjectSchedule rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional

from django.db import transaction
from django.utils import timezone

from episodes.conf import EpisodesRuntimeConfig, get_runtime_config
from episodes.errors import ProjectNotFound
from episodes.job_store import cancel_for_project
from episodes.models import GenerationJob, ProjectSchedule
from episodes.recurrence import RecurrenceConfig
from episodes.scheduling import materialize_for_project


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecurrenceChangeResult:
    project_id: str
    cancelled_jobs: int
    created_job: bool
    next_scheduled_at: Optional[datetime]


def _get_project(project_id: str) -> ProjectSchedule:
    project = ProjectSchedule.objects.filter(project_id=project_id).first()
    if project is None:
        raise ProjectNotFound(f"unknown project {project_id!r}")
    return project


def on_project_paused(project_id: str, *, now: Optional[datetime] = None) -> int:
    """Pause the cadence; outstanding jobs that have not started are cancelled."""

    now = now or timezone.now()
    with transaction.atomic():
        project = _get_project(project_id)
        if project.status == ProjectSchedule.Status.DELETED:
            return 0
        project.status = ProjectSchedule.Status.PAUSED
        project.save(update_fields=["status", "updated_at"])
        cancelled = cancel_for_project(project_id=project_id, now=now, reason="project paused")
    logger.info("project %s paused, cancelled=%s", project_id, cancelled)
    return cancelled


def on_project_resumed(
    project_id: str,
    *,
    now: Optional[datetime] = None,
    config: Optional[EpisodesRuntimeConfig] = None,
) -> bool:
    """Re-activate a paused project and queue its next slot right away.

    Returns True when a job was created. Deleted projects stay deleted.
    """

    now = now or timezone.now()
    config = config or get_runtime_config()
    with transaction.atomic():
        project = _get_project(project_id)
        if project.status == ProjectSchedule.Status.DELETED:
            raise ProjectNotFound(f"project {project_id!r} was deleted")
        project.status = ProjectSchedule.Status.ACTIVE
        project.save(update_fields=["status", "updated_at"])
    return materialize_for_project(project, after=now, now=now, config=config)


def on_project_deleted(project_id: str, *, now: Optional[datetime] = None) -> int:
    now = now or timezone.now()
    with transaction.atomic():
        ProjectSchedule.objects.filter(project_id=project_id).update(
            status=ProjectSchedule.Status.DELETED,
            updated_at=now,
        )
        cancelled = cancel_for_project(project_id=project_id, now=now, reason="project deleted")
    logger.info("project %s deleted, cancelled=%s", project_id, cancelled)
    return cancelled


def on_recurrence_changed(
    project_id: str,
    recurrence: RecurrenceConfig,
    *,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
    config: Optional[EpisodesRuntimeConfig] = None,
) -> RecurrenceChangeResult:
    """Store the new cadence, drop not-yet-started jobs, and queue the next slot.

    Unknown projects are registered (``tenant_id`` is then required).
    """

    now = now or timezone.now()
    config = config or get_runtime_config()

    with transaction.atomic():
        project = ProjectSchedule.objects.select_for_update().filter(project_id=project_id).first()
        if project is None:
            if not tenant_id:
                raise ProjectNotFound(f"unknown project {project_id!r} and no tenant_id given")
            project = ProjectSchedule(project_id=project_id, tenant_id=tenant_id)
        elif tenant_id and tenant_id != project.tenant_id:
            raise ValueError(f"project {project_id!r} belongs to another tenant")

        project.apply_recurrence(recurrence)
        project.next_scheduled_at = None
        project.save()

        cancelled = cancel_for_project(
            project_id=project_id,
            now=now,
            reason="recurrence changed",
            statuses=[GenerationJob.Status.PENDING, GenerationJob.Status.BLOCKED],
        )

        created = False
        if project.status == ProjectSchedule.Status.ACTIVE:
            created = materialize_for_project(project, after=now, now=now, config=config)

    return RecurrenceChangeResult(
        project_id=project_id,
        cancelled_jobs=cancelled,
        created_job=created,
        next_scheduled_at=project.next_scheduled_at,
    )
