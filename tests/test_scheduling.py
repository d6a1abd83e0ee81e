from __future__ import annotations

from datetime import timedelta

import pytest

from episodes.models import GenerationJob, ProjectSchedule
from episodes.scheduling import (
    MaintenanceSnapshot,
    SchedulerTickSnapshot,
    format_snapshot,
    materialize_next_cycle,
    run_maintenance_tick,
    run_scheduler_tick,
)

from tests.factories import make_job, make_project, utc


NOW = utc(2025, 6, 12, 6, 0)


@pytest.mark.django_db
def test_scheduler_tick_is_idempotent(config):
    make_project("p1", hour=8)
    make_project("p2", mode="weekly", days=[1, 4], hour=9, tz="Europe/London")

    first = run_scheduler_tick(now=NOW, config=config)
    second = run_scheduler_tick(now=NOW + timedelta(minutes=5), config=config)

    assert first == SchedulerTickSnapshot(active_projects=2, created_jobs=2, existing_jobs=0, invalid_projects=0)
    assert second == SchedulerTickSnapshot(active_projects=2, created_jobs=0, existing_jobs=2, invalid_projects=0)
    assert GenerationJob.objects.count() == 2

    p1 = GenerationJob.objects.get(project_id="p1")
    assert p1.scheduled_delivery_at == utc(2025, 6, 12, 8, 0)
    assert p1.earliest_start_at == utc(2025, 6, 12, 4, 0)
    assert p1.idempotency_key == "p1:2025-06-12T08:00Z"
    assert GenerationJob.objects.get(project_id="p2").scheduled_delivery_at == utc(2025, 6, 12, 8, 0)
    assert ProjectSchedule.objects.get(project_id="p1").next_scheduled_at == utc(2025, 6, 12, 8, 0)


@pytest.mark.django_db
def test_scheduler_tick_skips_inactive_and_counts_invalid(config):
    make_project("paused", status=ProjectSchedule.Status.PAUSED)
    make_project("deleted", status=ProjectSchedule.Status.DELETED)
    make_project("broken", mode="weekly", days=[])
    make_project("ok")

    snap = run_scheduler_tick(now=NOW, config=config)

    assert snap == SchedulerTickSnapshot(active_projects=2, created_jobs=1, existing_jobs=0, invalid_projects=1)
    assert list(GenerationJob.objects.values_list("project_id", flat=True)) == ["ok"]


@pytest.mark.django_db
def test_next_cycle_uses_later_of_slot_and_now(config):
    make_project("p1", hour=8)
    old = make_job(scheduled=utc(2025, 6, 10, 8, 0), status=GenerationJob.Status.FAILED)

    assert materialize_next_cycle(old, now=NOW, config=config) is True
    assert materialize_next_cycle(old, now=NOW, config=config) is False

    nxt = GenerationJob.objects.exclude(pk=old.pk).get()
    assert nxt.scheduled_delivery_at == utc(2025, 6, 12, 8, 0)


@pytest.mark.django_db
def test_next_cycle_skipped_for_paused_project(config):
    make_project("p1", status=ProjectSchedule.Status.PAUSED)
    job = make_job(scheduled=utc(2025, 6, 12, 9, 0), status=GenerationJob.Status.SUCCEEDED)

    assert materialize_next_cycle(job, now=NOW, config=config) is False
    assert GenerationJob.objects.count() == 1


@pytest.mark.django_db
def test_maintenance_tick(config):
    make_project("stale", hour=8)
    make_project("overdue", hour=6)
    make_project("dead", hour=8)

    slot = utc(2025, 6, 12, 8, 0)
    stale_claim = make_job(
        project_id="stale",
        scheduled=slot,
        status=GenerationJob.Status.CLAIMED,
        claimed_by="gone",
        claim_expires_at=NOW - timedelta(minutes=1),
        attempt_count=1,
    )
    overdue = make_job(project_id="overdue", scheduled=NOW + timedelta(minutes=10))
    dead_worker = make_job(
        project_id="dead",
        scheduled=slot,
        status=GenerationJob.Status.PROCESSING,
        claimed_by="gone",
        claim_expires_at=NOW - timedelta(minutes=1),
        attempt_count=3,
    )

    snap = run_maintenance_tick(now=NOW, config=config)

    assert snap == MaintenanceSnapshot(
        released_claims=1,
        retried_processing=0,
        failed_processing=1,
        expired_jobs=1,
        resumed_blocked=0,
        failed_blocked=0,
        next_cycles_created=2,
    )
    for job in (stale_claim, overdue, dead_worker):
        job.refresh_from_db()
    assert stale_claim.status == GenerationJob.Status.PENDING
    assert stale_claim.attempt_count == 0
    assert overdue.status == GenerationJob.Status.FAILED
    assert dead_worker.status == GenerationJob.Status.FAILED
    assert dead_worker.last_error == "lease expired"
    # Both failed slots are followed by their next cycle; the released claim is not.
    assert GenerationJob.objects.filter(project_id="overdue", scheduled_delivery_at=utc(2025, 6, 13, 6, 0)).exists()
    assert GenerationJob.objects.filter(project_id="dead", scheduled_delivery_at=utc(2025, 6, 13, 8, 0)).exists()
    assert GenerationJob.objects.filter(project_id="stale").count() == 1


def test_format_snapshot():
    snap = SchedulerTickSnapshot(active_projects=3, created_jobs=1, existing_jobs=2, invalid_projects=0)
    assert format_snapshot("scheduler", snap) == (
        "scheduler active_projects=3 created_jobs=1 existing_jobs=2 invalid_projects=0"
    )
