from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from episodes import job_store
from episodes.errors import IllegalTransition, JobNotFound, StaleJobState
from episodes.models import CostLedgerEntry, GenerationJob, ProjectSchedule

from tests.factories import make_config, make_job, make_project, utc


Status = GenerationJob.Status
NOW = utc(2025, 6, 12, 6, 0)


def _insert(config, scheduled, project_id="p1"):
    return job_store.insert_if_absent(
        tenant_id="t1",
        project_id=project_id,
        scheduled_delivery_at=scheduled,
        now=NOW,
        config=config,
    )


def _claim_and_start(config, now, worker="w1"):
    job = job_store.claim_next(worker_id=worker, now=now, config=config)
    assert job is not None
    assert job_store.mark_processing(job_id=job.id, worker_id=worker, workflow_handle="h", now=now)
    return job


@pytest.mark.django_db
def test_insert_if_absent_is_idempotent(config):
    slot = utc(2025, 6, 12, 8, 0)
    job, created = _insert(config, slot)
    again, created_again = _insert(config, slot)

    assert created is True
    assert created_again is False
    assert again.id == job.id
    assert job.idempotency_key == "p1:2025-06-12T08:00Z"
    assert job.earliest_start_at == utc(2025, 6, 12, 4, 0)
    assert job.status == Status.PENDING
    assert job.max_attempts == 3
    assert GenerationJob.objects.filter(idempotency_key=job.idempotency_key).count() == 1


@pytest.mark.django_db
def test_cancelled_slot_can_be_recreated_but_failed_slot_cannot(config):
    slot = utc(2025, 6, 12, 8, 0)
    job, _ = _insert(config, slot)
    assert job_store.cancel(job_id=job.id, now=NOW, reason="test") is True

    fresh, created = _insert(config, slot)
    assert created is True
    assert fresh.id != job.id

    GenerationJob.objects.filter(pk=fresh.id).update(status=Status.FAILED)
    _, created_again = _insert(config, slot)
    assert created_again is False


@pytest.mark.django_db
def test_claim_respects_earliest_start_and_charges_attempt(config):
    job = make_job(scheduled=utc(2025, 6, 12, 12, 0))

    assert job_store.claim_next(worker_id="w1", now=utc(2025, 6, 12, 7, 59), config=config) is None

    claimed = job_store.claim_next(worker_id="w1", now=utc(2025, 6, 12, 8, 0), config=config)
    assert claimed.id == job.id
    assert claimed.status == Status.CLAIMED
    assert claimed.claimed_by == "w1"
    assert claimed.attempt_count == 1
    assert claimed.claim_expires_at == utc(2025, 6, 12, 8, 15)

    assert job_store.claim_next(worker_id="w2", now=utc(2025, 6, 12, 8, 0), config=config) is None


@pytest.mark.django_db
def test_claim_respects_next_attempt_not_before(config):
    make_job(scheduled=utc(2025, 6, 12, 8, 0), next_attempt_not_before=utc(2025, 6, 12, 6, 30))

    assert job_store.claim_next(worker_id="w1", now=NOW, config=config) is None
    assert job_store.claim_next(worker_id="w1", now=utc(2025, 6, 12, 6, 30), config=config) is not None


@pytest.mark.django_db
def test_claim_skips_jobs_past_deadline(config):
    make_job(scheduled=utc(2025, 6, 12, 6, 10))
    assert job_store.claim_next(worker_id="w1", now=NOW, config=config) is None


@pytest.mark.django_db
def test_claim_prefers_retries_then_earliest(config):
    later = make_job(project_id="a", scheduled=utc(2025, 6, 12, 9, 0))
    earlier = make_job(project_id="b", scheduled=utc(2025, 6, 12, 8, 0))
    retry = make_job(project_id="c", scheduled=utc(2025, 6, 12, 9, 30), priority=8)

    order = [job_store.claim_next(worker_id="w1", now=NOW, config=config).id for _ in range(3)]
    assert order == [retry.id, earlier.id, later.id]


@pytest.mark.django_db
def test_mark_processing_requires_owner(config):
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0))
    job_store.claim_next(worker_id="w1", now=NOW, config=config)

    assert job_store.mark_processing(job_id=job.id, worker_id="w2", workflow_handle="h", now=NOW) is False
    assert job_store.mark_processing(job_id=job.id, worker_id="w1", workflow_handle="h", now=NOW) is True
    job.refresh_from_db()
    assert job.status == Status.PROCESSING
    assert job.workflow_handle == "h"


@pytest.mark.django_db
def test_mark_processing_unknown_job_raises():
    with pytest.raises(JobNotFound):
        job_store.mark_processing(job_id=999, worker_id="w1", workflow_handle="h", now=NOW)


@pytest.mark.django_db
def test_renew_lease_extends_only_for_owner(config):
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0))
    _claim_and_start(config, NOW)

    later = NOW + timedelta(minutes=10)
    assert job_store.renew_lease(job_id=job.id, worker_id="w2", now=later, config=config) is False
    assert job_store.renew_lease(job_id=job.id, worker_id="w1", now=later, config=config) is True
    job.refresh_from_db()
    assert job.claim_expires_at == later + timedelta(minutes=15)


@pytest.mark.django_db
def test_mark_succeeded_records_cost(config):
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0))
    _claim_and_start(config, NOW)

    job_store.mark_succeeded(job_id=job.id, result_ref="episode://1", cost=Decimal("1.25"), now=NOW, config=config)

    job.refresh_from_db()
    assert job.status == Status.SUCCEEDED
    assert job.result_ref == "episode://1"
    assert job.total_cost == Decimal("1.25")
    assert job.claimed_by == ""
    entry = CostLedgerEntry.objects.get(tenant_id="t1", date=NOW.date())
    assert entry.total_cost == Decimal("1.25")
    assert entry.job_count == 1

    with pytest.raises(StaleJobState):
        job_store.mark_succeeded(job_id=job.id, result_ref="again", cost=Decimal("1"), now=NOW, config=config)


@pytest.mark.django_db
def test_failures_stop_after_max_attempts(config):
    job = make_job(scheduled=NOW + timedelta(hours=4))
    now = NOW
    outcomes = []
    for _ in range(5):
        claimed = job_store.claim_next(worker_id="w1", now=now, config=config)
        if claimed is None:
            break
        job_store.mark_processing(job_id=job.id, worker_id="w1", workflow_handle="h", now=now)
        outcomes.append(
            job_store.mark_failed(job_id=job.id, error="boom", cost=Decimal("0.10"), now=now, config=config)
        )
        job.refresh_from_db()
        if job.status == Status.PENDING:
            now = job.next_attempt_not_before

    assert outcomes == [True, True, False]
    job.refresh_from_db()
    assert job.status == Status.FAILED
    assert job.attempt_count == 3
    assert job.last_error == "boom"
    assert job.total_cost == Decimal("0.30")


@pytest.mark.django_db
def test_failure_not_retried_past_deadline(config):
    job = make_job(scheduled=NOW + timedelta(hours=1))

    _claim_and_start(config, NOW)
    assert job_store.mark_failed(job_id=job.id, error="e1", cost=0, now=NOW, config=config) is True
    job.refresh_from_db()
    assert job.status == Status.PENDING
    assert job.priority == 8
    assert job.next_attempt_not_before == NOW + timedelta(minutes=30)

    second = NOW + timedelta(minutes=30)
    _claim_and_start(config, second)
    # 30m + 60m backoff would land after scheduled - 15m.
    assert job_store.mark_failed(job_id=job.id, error="e2", cost=0, now=second, config=config) is False
    job.refresh_from_db()
    assert job.status == Status.FAILED
    assert job.attempt_count == 2


@pytest.mark.django_db
def test_mark_failed_with_other_owner_is_stale(config):
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0))
    job_store.claim_next(worker_id="w1", now=NOW, config=config)
    with pytest.raises(StaleJobState):
        job_store.mark_failed(job_id=job.id, error="x", cost=0, now=NOW, config=config, worker_id="w2")


@pytest.mark.django_db
def test_mark_blocked_refunds_attempt_by_default(config):
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0))
    job_store.claim_next(worker_id="w1", now=NOW, config=config)

    assert job_store.mark_blocked(job_id=job.id, worker_id="w1", now=NOW, config=config) is True
    job.refresh_from_db()
    assert job.status == Status.BLOCKED
    assert job.attempt_count == 0
    assert job.blocked_ledger_date == NOW.date()
    assert job.claimed_by == ""


@pytest.mark.django_db
def test_mark_blocked_can_count_as_attempt():
    config = make_config(blocked_counts_as_attempt=True)
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0))
    job_store.claim_next(worker_id="w1", now=NOW, config=config)

    job_store.mark_blocked(job_id=job.id, worker_id="w1", now=NOW, config=config)
    job.refresh_from_db()
    assert job.attempt_count == 1


@pytest.mark.django_db
def test_cancel_only_touches_outstanding_jobs(config):
    pending = make_job(project_id="p1", scheduled=utc(2025, 6, 12, 8, 0))
    done = make_job(project_id="p2", scheduled=utc(2025, 6, 12, 8, 0), status=Status.SUCCEEDED)

    assert job_store.cancel(job_id=pending.id, now=NOW, reason="paused") is True
    assert job_store.cancel(job_id=done.id, now=NOW, reason="paused") is False
    pending.refresh_from_db()
    assert pending.status == Status.CANCELLED
    assert "paused" in pending.event_log

    with pytest.raises(JobNotFound):
        job_store.cancel(job_id=12345, now=NOW)


@pytest.mark.django_db
def test_cancel_for_project_skips_processing(config):
    make_job(scheduled=utc(2025, 6, 12, 8, 0))
    make_job(scheduled=utc(2025, 6, 13, 8, 0), status=Status.BLOCKED)
    make_job(scheduled=utc(2025, 6, 11, 8, 0), status=Status.PROCESSING)
    make_job(project_id="other", scheduled=utc(2025, 6, 12, 8, 0))

    assert job_store.cancel_for_project(project_id="p1", now=NOW, reason="paused") == 2
    assert GenerationJob.objects.filter(project_id="p1", status=Status.PROCESSING).count() == 1
    assert GenerationJob.objects.filter(project_id="other", status=Status.PENDING).count() == 1


@pytest.mark.django_db
def test_release_expired_claims(config):
    claimed_only = make_job(project_id="a", scheduled=utc(2025, 6, 12, 10, 0))
    job_store.claim_next(worker_id="w1", now=NOW, config=config)
    running = make_job(project_id="b", scheduled=utc(2025, 6, 12, 10, 0))
    job_store.claim_next(worker_id="w2", now=NOW, config=config)
    job_store.mark_processing(job_id=running.id, worker_id="w2", workflow_handle="h", now=NOW)

    assert job_store.release_expired_claims(now=NOW + timedelta(minutes=5), config=config).released_claims == 0

    snap = job_store.release_expired_claims(now=NOW + timedelta(minutes=16), config=config)
    assert snap.released_claims == 1
    assert snap.retried_processing == 1
    assert snap.failed_processing == 0

    claimed_only.refresh_from_db()
    assert claimed_only.status == Status.PENDING
    assert claimed_only.attempt_count == 0
    assert claimed_only.claimed_by == ""

    running.refresh_from_db()
    assert running.status == Status.PENDING
    assert running.attempt_count == 1
    assert running.last_error == "lease expired"


@pytest.mark.django_db
def test_expire_overdue_jobs(config):
    overdue = make_job(scheduled=NOW + timedelta(minutes=10))
    fine = make_job(project_id="p2", scheduled=NOW + timedelta(hours=2))

    assert job_store.expire_overdue_jobs(now=NOW, config=config) == [overdue.id]
    overdue.refresh_from_db()
    fine.refresh_from_db()
    assert overdue.status == Status.FAILED
    assert fine.status == Status.PENDING


@pytest.mark.django_db
def test_illegal_transition_raises():
    job = make_job(scheduled=utc(2025, 6, 12, 8, 0), status=Status.SUCCEEDED)
    with pytest.raises(IllegalTransition):
        job.transition_to(Status.PENDING)
    with pytest.raises(IllegalTransition):
        make_job(project_id="p2", scheduled=utc(2025, 6, 12, 8, 0)).transition_to(Status.SUCCEEDED)


@pytest.mark.django_db
def test_claim_skips_jobs_of_paused_and_deleted_projects(config):
    make_project("paused", status=ProjectSchedule.Status.PAUSED)
    make_project("gone", status=ProjectSchedule.Status.DELETED)
    make_project("live")
    for project_id in ("paused", "gone", "live", "unregistered"):
        make_job(project_id=project_id, scheduled=utc(2025, 6, 12, 8, 0))

    claimed = {job_store.claim_next(worker_id="w1", now=NOW, config=config).project_id for _ in range(2)}

    assert claimed == {"live", "unregistered"}
    assert job_store.claim_next(worker_id="w1", now=NOW, config=config) is None


@pytest.mark.django_db
def test_expired_lease_of_paused_project_is_cancelled(config):
    make_project("p1", status=ProjectSchedule.Status.PAUSED)
    job = make_job(
        scheduled=utc(2025, 6, 12, 10, 0),
        status=Status.PROCESSING,
        claimed_by="w1",
        claim_expires_at=NOW - timedelta(minutes=1),
        attempt_count=1,
        workflow_handle="run-1",
    )

    snap = job_store.release_expired_claims(now=NOW, config=config)

    assert (snap.retried_processing, snap.failed_processing, snap.cancelled_processing) == (0, 0, 1)
    assert snap.failed_job_ids == ()
    job.refresh_from_db()
    assert job.status == Status.CANCELLED
    assert job.last_error == "lease expired"
    assert job.workflow_handle == ""


@pytest.mark.django_db
def test_outcome_for_another_run_is_stale(config):
    job = make_job(
        scheduled=utc(2025, 6, 12, 8, 0),
        status=Status.PROCESSING,
        claimed_by="w1",
        attempt_count=2,
        workflow_handle="run-2",
    )

    with pytest.raises(StaleJobState):
        job_store.mark_failed(job_id=job.id, error="late", cost=0, now=NOW, config=config, workflow_handle="run-1")
    with pytest.raises(StaleJobState):
        job_store.mark_succeeded(
            job_id=job.id, result_ref="old", cost=Decimal("1"), now=NOW, config=config, workflow_handle="run-1"
        )

    job.refresh_from_db()
    assert job.status == Status.PROCESSING
    assert not CostLedgerEntry.objects.exists()

    job_store.mark_succeeded(
        job_id=job.id, result_ref="episode://2", cost=Decimal("1"), now=NOW, config=config, workflow_handle="run-2"
    )
    job.refresh_from_db()
    assert job.status == Status.SUCCEEDED
