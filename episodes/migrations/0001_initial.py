# Generated manually for the episode job store

from __future__ import annotations

from django.db import migrations, models


_JOB_STATUS_CHOICES = [
    ("PENDING", "PENDING"),
    ("CLAIMED", "CLAIMED"),
    ("PROCESSING", "PROCESSING"),
    ("SUCCEEDED", "SUCCEEDED"),
    ("FAILED", "FAILED"),
    ("BLOCKED", "BLOCKED"),
    ("CANCELLED", "CANCELLED"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="ProjectSchedule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("project_id", models.CharField(max_length=64, unique=True)),
                ("tenant_id", models.CharField(max_length=64)),
                ("mode", models.CharField(default="weekly", max_length=16)),
                ("days_of_week", models.JSONField(blank=True, default=list)),
                ("delivery_hour", models.IntegerField(default=9)),
                ("timezone", models.CharField(default="Europe/London", max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[("ACTIVE", "ACTIVE"), ("PAUSED", "PAUSED"), ("DELETED", "DELETED")],
                        default="ACTIVE",
                        max_length=16,
                    ),
                ),
                ("next_scheduled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "episodes_project_schedules",
                "indexes": [
                    models.Index(fields=["status"], name="ep_project_status"),
                    models.Index(fields=["tenant_id"], name="ep_project_tenant"),
                ],
            },
        ),
        migrations.CreateModel(
            name="GenerationJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tenant_id", models.CharField(max_length=64)),
                ("project_id", models.CharField(max_length=64)),
                ("idempotency_key", models.CharField(max_length=256)),
                ("scheduled_delivery_at", models.DateTimeField()),
                ("earliest_start_at", models.DateTimeField()),
                ("status", models.CharField(choices=_JOB_STATUS_CHOICES, default="PENDING", max_length=16)),
                ("priority", models.IntegerField(default=5)),
                ("attempt_count", models.IntegerField(default=0)),
                ("max_attempts", models.IntegerField(default=3)),
                ("next_attempt_not_before", models.DateTimeField(blank=True, null=True)),
                ("claimed_by", models.CharField(blank=True, max_length=128)),
                ("claimed_at", models.DateTimeField(blank=True, null=True)),
                ("claim_expires_at", models.DateTimeField(blank=True, null=True)),
                ("workflow_handle", models.CharField(blank=True, max_length=256)),
                ("processing_started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("blocked_at", models.DateTimeField(blank=True, null=True)),
                ("blocked_ledger_date", models.DateField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("event_log", models.TextField(blank=True)),
                ("result_ref", models.CharField(blank=True, max_length=512)),
                ("total_cost", models.DecimalField(decimal_places=4, default=0, max_digits=12)),
                ("version", models.IntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "episodes_generation_jobs",
                "indexes": [
                    models.Index(fields=["status", "earliest_start_at"], name="ep_job_status_start"),
                    models.Index(fields=["status", "claim_expires_at"], name="ep_job_status_lease"),
                    models.Index(fields=["project_id", "status"], name="ep_job_project_status"),
                    models.Index(fields=["tenant_id", "status"], name="ep_job_tenant_status"),
                ],
            },
        ),
        migrations.AddConstraint(
            model_name="generationjob",
            constraint=models.UniqueConstraint(
                condition=~models.Q(status="CANCELLED"),
                fields=("idempotency_key",),
                name="ep_job_unique_live_key",
            ),
        ),
        migrations.CreateModel(
            name="CostLedgerEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tenant_id", models.CharField(max_length=64)),
                ("date", models.DateField()),
                ("total_cost", models.DecimalField(decimal_places=4, default=0, max_digits=12)),
                ("job_count", models.IntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "episodes_cost_ledger",
            },
        ),
        migrations.AddConstraint(
            model_name="costledgerentry",
            constraint=models.UniqueConstraint(fields=("tenant_id", "date"), name="ep_ledger_unique_tenant_date"),
        ),
        migrations.CreateModel(
            name="TenantBudget",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tenant_id", models.CharField(max_length=64, unique=True)),
                ("daily_cost_cap", models.DecimalField(decimal_places=2, max_digits=12)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "episodes_tenant_budgets",
            },
        ),
        migrations.CreateModel(
            name="EpisodeSetting",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("key", models.CharField(max_length=128, unique=True)),
                ("value_json", models.JSONField(blank=True, default=dict)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "episodes_settings",
            },
        ),
    ]
