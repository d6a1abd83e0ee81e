from __future__ import annotations

from django.contrib import admin

from .models import CostLedgerEntry, EpisodeSetting, GenerationJob, ProjectSchedule, TenantBudget


@admin.register(EpisodeSetting)
class EpisodeSettingAdmin(admin.ModelAdmin):
    list_display = ("key", "updated_at")
    search_fields = ("key",)


@admin.register(ProjectSchedule)
class ProjectScheduleAdmin(admin.ModelAdmin):
    list_display = ("project_id", "tenant_id", "status", "mode", "delivery_hour", "timezone", "next_scheduled_at")
    list_filter = ("status", "mode")
    search_fields = ("project_id", "tenant_id")


@admin.register(GenerationJob)
class GenerationJobAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "project_id",
        "scheduled_delivery_at",
        "status",
        "attempt_count",
        "priority",
        "claimed_by",
        "total_cost",
    )
    list_filter = ("status",)
    search_fields = ("project_id", "tenant_id", "idempotency_key")
    ordering = ("-scheduled_delivery_at",)
    readonly_fields = ("event_log", "version")


@admin.register(CostLedgerEntry)
class CostLedgerEntryAdmin(admin.ModelAdmin):
    list_display = ("tenant_id", "date", "total_cost", "job_count")
    search_fields = ("tenant_id",)
    ordering = ("-date",)


@admin.register(TenantBudget)
class TenantBudgetAdmin(admin.ModelAdmin):
    list_display = ("tenant_id", "daily_cost_cap", "episode_cost_cap", "updated_at")
    search_fields = ("tenant_id",)
