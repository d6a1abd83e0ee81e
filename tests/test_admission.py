from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from episodes import admission, job_store
from episodes.models import CostLedgerEntry, GenerationJob, TenantBudget

from tests.factories import make_config, make_job, utc


NOW = utc(2025, 6, 12, 6, 0)


@pytest.mark.django_db
def test_admit_without_ledger_entry(config):
    assert admission.admit("t1", NOW, config) is True


@pytest.mark.django_db
def test_cap_is_a_pre_check(config):
    """49.90 spent: a 0.20 job still runs, the next one is rejected."""

    CostLedgerEntry.objects.create(tenant_id="t1", date=NOW.date(), total_cost=Decimal("49.90"), job_count=10)

    assert admission.admit("t1", NOW, config) is True
    admission.record_cost("t1", Decimal("0.20"), NOW, config)

    entry = CostLedgerEntry.objects.get(tenant_id="t1", date=NOW.date())
    assert entry.total_cost == Decimal("50.10")
    assert entry.job_count == 11
    assert admission.admit("t1", NOW, config) is False

    # Other tenants and the next day are unaffected.
    assert admission.admit("t2", NOW, config) is True
    assert admission.admit("t1", NOW + timedelta(days=1), config) is True


@pytest.mark.django_db
def test_total_exactly_at_cap_is_rejected(config):
    CostLedgerEntry.objects.create(tenant_id="t1", date=NOW.date(), total_cost=Decimal("50.00"))
    assert admission.admit("t1", NOW, config) is False


@pytest.mark.django_db
def test_tenant_budget_overrides_default_cap(config):
    TenantBudget.objects.create(tenant_id="t1", daily_cost_cap=Decimal("5.00"))
    CostLedgerEntry.objects.create(tenant_id="t1", date=NOW.date(), total_cost=Decimal("5.00"))

    assert admission.daily_cap_for("t1", config) == Decimal("5.00")
    assert admission.daily_cap_for("t2", config) == Decimal("50.00")
    assert admission.admit("t1", NOW, config) is False


@pytest.mark.django_db
def test_record_cost_rejects_negative(config):
    with pytest.raises(ValueError):
        admission.record_cost("t1", Decimal("-1"), NOW, config)


def test_ledger_date_follows_configured_timezone():
    late_evening_new_york = utc(2025, 6, 12, 2, 0)
    assert admission.ledger_date(late_evening_new_york, make_config()) == date(2025, 6, 12)
    assert admission.ledger_date(late_evening_new_york, make_config(ledger_timezone="America/New_York")) == date(
        2025, 6, 11
    )


@pytest.mark.django_db
def test_resume_blocked_jobs(config):
    yesterday = NOW.date() - timedelta(days=1)
    resumable = make_job(
        project_id="a",
        scheduled=NOW + timedelta(hours=3),
        status=GenerationJob.Status.BLOCKED,
        blocked_ledger_date=yesterday,
    )
    expired = make_job(
        project_id="b",
        scheduled=NOW + timedelta(minutes=10),
        status=GenerationJob.Status.BLOCKED,
        blocked_ledger_date=yesterday,
    )
    blocked_today = make_job(
        project_id="c",
        scheduled=NOW + timedelta(hours=3),
        status=GenerationJob.Status.BLOCKED,
        blocked_ledger_date=NOW.date(),
    )

    resumed, failed, failed_ids = admission.resume_blocked_jobs(NOW, config)

    assert (resumed, failed, failed_ids) == (1, 1, [expired.id])
    for job in (resumable, expired, blocked_today):
        job.refresh_from_db()
    assert resumable.status == GenerationJob.Status.PENDING
    assert resumable.blocked_ledger_date is None
    assert expired.status == GenerationJob.Status.FAILED
    assert "blocked" in expired.last_error
    assert blocked_today.status == GenerationJob.Status.BLOCKED
    assert CostLedgerEntry.objects.filter(tenant_id="t1", date=NOW.date()).exists()


@pytest.mark.django_db
def test_resume_fails_blocked_job_with_no_attempts_left():
    config = make_config(blocked_counts_as_attempt=True)
    job = make_job(
        scheduled=NOW + timedelta(hours=3),
        status=GenerationJob.Status.BLOCKED,
        blocked_ledger_date=NOW.date() - timedelta(days=1),
        attempt_count=3,
    )

    assert admission.resume_blocked_jobs(NOW, config)[:2] == (0, 1)
    job.refresh_from_db()
    assert job.status == GenerationJob.Status.FAILED


@pytest.mark.django_db
def test_episode_cap_defaults_and_tenant_override(config):
    TenantBudget.objects.create(tenant_id="t1", daily_cost_cap=Decimal("50.00"), episode_cost_cap=Decimal("1.00"))
    TenantBudget.objects.create(tenant_id="t2", daily_cost_cap=Decimal("20.00"))

    assert admission.episode_cap_for("t1", config) == Decimal("1.00")
    assert admission.episode_cap_for("t2", config) == Decimal("3.00")
    assert admission.episode_cap_for("t3", make_config(episode_cost_cap=Decimal("4.50"))) == Decimal("4.50")


def _fail_attempt(job, cost, now, config):
    claimed = job_store.claim_next(worker_id="w1", now=now, config=config)
    assert claimed.id == job.id
    job_store.mark_processing(job_id=job.id, worker_id="w1", workflow_handle=f"run-{claimed.attempt_count}", now=now)
    return job_store.mark_failed(job_id=job.id, error="render crashed", cost=Decimal(cost), now=now, config=config)


@pytest.mark.django_db
def test_episode_over_its_cost_cap_is_not_retried(config):
    TenantBudget.objects.create(tenant_id="t1", daily_cost_cap=Decimal("50.00"), episode_cost_cap=Decimal("1.00"))
    job = make_job(scheduled=utc(2025, 6, 12, 12, 0))

    assert _fail_attempt(job, "0.60", NOW, config) is True
    assert _fail_attempt(job, "0.60", NOW + timedelta(minutes=30), config) is False

    job.refresh_from_db()
    assert job.status == GenerationJob.Status.FAILED
    assert job.attempt_count == 2
    assert job.total_cost == Decimal("1.20")
    assert "over cap" in job.event_log
    assert CostLedgerEntry.objects.get(tenant_id="t1", date=NOW.date()).total_cost == Decimal("1.20")


@pytest.mark.django_db
def test_single_failed_attempt_over_default_episode_cap(config):
    job = make_job(scheduled=utc(2025, 6, 12, 12, 0))

    assert _fail_attempt(job, "3.50", NOW, config) is False
    job.refresh_from_db()
    assert job.status == GenerationJob.Status.FAILED
    assert job.attempt_count == 1
