from __future__ import annotations

from django.db import models
from django.db.models import Q

from episodes.errors import IllegalTransition
from episodes.recurrence import RecurrenceConfig


class ProjectSchedule(models.Model):
    """Local snapshot of a project's delivery cadence.

    Written only by the inbound project hooks; the scheduler reads it.
    """

    class Status(models.TextChoices):
        ACTIVE = "ACTIVE", "ACTIVE"
        PAUSED = "PAUSED", "PAUSED"
        DELETED = "DELETED", "DELETED"

    project_id = models.CharField(max_length=64, unique=True)
    tenant_id = models.CharField(max_length=64)

    mode = models.CharField(max_length=16, default="weekly")
    days_of_week = models.JSONField(default=list, blank=True)
    delivery_hour = models.IntegerField(default=9)
    timezone = models.CharField(max_length=64, default="Europe/London")

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    next_scheduled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "episodes_project_schedules"
        indexes = [
            models.Index(fields=["status"], name="ep_project_status"),
            models.Index(fields=["tenant_id"], name="ep_project_tenant"),
        ]

    def __str__(self) -> str:
        return f"ProjectSchedule({self.project_id}) {self.status}"

    @property
    def recurrence(self) -> RecurrenceConfig:
        return RecurrenceConfig(
            mode=str(self.mode or ""),
            days_of_week=frozenset(int(d) for d in (self.days_of_week or [])),
            delivery_hour=int(self.delivery_hour),
            timezone=str(self.timezone or ""),
        )

    def apply_recurrence(self, config: RecurrenceConfig) -> None:
        self.mode = config.mode
        self.days_of_week = sorted(int(d) for d in config.days_of_week)
        self.delivery_hour = int(config.delivery_hour)
        self.timezone = config.timezone


class GenerationJob(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING", "PENDING"
        CLAIMED = "CLAIMED", "CLAIMED"
        PROCESSING = "PROCESSING", "PROCESSING"
        SUCCEEDED = "SUCCEEDED", "SUCCEEDED"
        FAILED = "FAILED", "FAILED"
        BLOCKED = "BLOCKED", "BLOCKED"
        CANCELLED = "CANCELLED", "CANCELLED"

    TERMINAL_STATUSES = frozenset({Status.SUCCEEDED, Status.FAILED, Status.CANCELLED})
    CANCELLABLE_STATUSES = frozenset({Status.PENDING, Status.CLAIMED, Status.BLOCKED})

    ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
        Status.PENDING: frozenset({Status.CLAIMED, Status.CANCELLED, Status.FAILED}),
        Status.CLAIMED: frozenset(
            {Status.PROCESSING, Status.BLOCKED, Status.PENDING, Status.CANCELLED, Status.FAILED}
        ),
        Status.PROCESSING: frozenset({Status.SUCCEEDED, Status.PENDING, Status.FAILED, Status.CANCELLED}),
        Status.BLOCKED: frozenset({Status.PENDING, Status.FAILED, Status.CANCELLED}),
        Status.SUCCEEDED: frozenset(),
        Status.FAILED: frozenset(),
        Status.CANCELLED: frozenset(),
    }

    tenant_id = models.CharField(max_length=64)
    project_id = models.CharField(max_length=64)
    idempotency_key = models.CharField(max_length=256)

    scheduled_delivery_at = models.DateTimeField()
    earliest_start_at = models.DateTimeField()

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    priority = models.IntegerField(default=5)
    attempt_count = models.IntegerField(default=0)
    max_attempts = models.IntegerField(default=3)
    next_attempt_not_before = models.DateTimeField(null=True, blank=True)

    claimed_by = models.CharField(max_length=128, blank=True)
    claimed_at = models.DateTimeField(null=True, blank=True)
    claim_expires_at = models.DateTimeField(null=True, blank=True)

    workflow_handle = models.CharField(max_length=256, blank=True)
    processing_started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    blocked_at = models.DateTimeField(null=True, blank=True)
    blocked_ledger_date = models.DateField(null=True, blank=True)

    last_error = models.TextField(blank=True)
    event_log = models.TextField(blank=True)
    result_ref = models.CharField(max_length=512, blank=True)
    total_cost = models.DecimalField(max_digits=12, decimal_places=4, default=0)

    version = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "episodes_generation_jobs"
        constraints = [
            models.UniqueConstraint(
                fields=["idempotency_key"],
                condition=~Q(status="CANCELLED"),
                name="ep_job_unique_live_key",
            )
        ]
        indexes = [
            models.Index(fields=["status", "earliest_start_at"], name="ep_job_status_start"),
            models.Index(fields=["status", "claim_expires_at"], name="ep_job_status_lease"),
            models.Index(fields=["project_id", "status"], name="ep_job_project_status"),
            models.Index(fields=["tenant_id", "status"], name="ep_job_tenant_status"),
        ]

    def __str__(self) -> str:
        return f"GenerationJob({self.id}) {self.status}"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in self.ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, new_status: str, *, note: str = "") -> None:
        if not self.can_transition_to(new_status):
            raise IllegalTransition(self.id, str(self.status), str(new_status))
        line = f"{self.status} -> {new_status}"
        if note:
            line += f": {note}"
        self.event_log = (self.event_log + "\n" if self.event_log else "") + line
        self.status = new_status
        self.version = int(self.version) + 1

    def clear_claim(self) -> None:
        self.claimed_by = ""
        self.claimed_at = None
        self.claim_expires_at = None


class CostLedgerEntry(models.Model):
    tenant_id = models.CharField(max_length=64)
    date = models.DateField()
    total_cost = models.DecimalField(max_digits=12, decimal_places=4, default=0)
    job_count = models.IntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "episodes_cost_ledger"
        constraints = [
            models.UniqueConstraint(fields=["tenant_id", "date"], name="ep_ledger_unique_tenant_date"),
        ]

    def __str__(self) -> str:
        return f"{self.tenant_id} {self.date.isoformat()} {self.total_cost}"


class TenantBudget(models.Model):
    tenant_id = models.CharField(max_length=64, unique=True)
    daily_cost_cap = models.DecimalField(max_digits=12, decimal_places=2)
    # Spend allowed on one delivery slot across all its attempts; NULL uses EPISODES_EPISODE_COST_CAP.
    episode_cost_cap = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "episodes_tenant_budgets"

    def __str__(self) -> str:
        return f"{self.tenant_id} cap={self.daily_cost_cap} episode_cap={self.episode_cost_cap}"


class EpisodeSetting(models.Model):
    key = models.CharField(max_length=128, unique=True)
    value_json = models.JSONField(default=dict, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "episodes_settings"

    def __str__(self) -> str:
        return self.key
