from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from episodes.errors import InvalidRecurrence
from episodes.project_hooks import on_recurrence_changed
from episodes.recurrence import RecurrenceConfig


class Command(BaseCommand):
    help = "Create or update a sample project schedule for local development."

    def add_arguments(self, parser):
        parser.add_argument("--project-id", default="sample-project", help="ProjectSchedule.project_id")
        parser.add_argument("--tenant-id", default="sample-tenant", help="ProjectSchedule.tenant_id")
        parser.add_argument(
            "--mode",
            default="weekly",
            help="daily | weekly | custom | weekdays",
        )
        parser.add_argument(
            "--days",
            default="1",
            help="Comma separated days, 0=Sunday .. 6=Saturday (default: Monday)",
        )
        parser.add_argument("--delivery-hour", type=int, default=9, help="Local delivery hour 0-23")
        parser.add_argument("--timezone", default="Europe/London", help="IANA timezone name")

    def handle(self, *args, **options):
        try:
            days = [int(d) for d in str(options["days"] or "").split(",") if d.strip()]
        except ValueError:
            raise CommandError(f"Invalid --days: {options['days']!r}")

        try:
            recurrence = RecurrenceConfig.from_json(
                {
                    "mode": options["mode"],
                    "days": days,
                    "deliveryHour": options["delivery_hour"],
                    "timezone": options["timezone"],
                }
            )
        except InvalidRecurrence as e:
            raise CommandError(str(e))

        res = on_recurrence_changed(options["project_id"], recurrence, tenant_id=options["tenant_id"])
        next_at = res.next_scheduled_at.isoformat() if res.next_scheduled_at else "-"
        self.stdout.write(
            f"project_id={res.project_id} created_job={res.created_job} "
            f"cancelled_jobs={res.cancelled_jobs} next_scheduled_at={next_at}"
        )
