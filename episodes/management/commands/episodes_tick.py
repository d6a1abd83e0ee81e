from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from episodes.conf import get_runtime_config
from episodes.scheduling import format_snapshot, run_maintenance_tick, run_scheduler_tick


class Command(BaseCommand):
    help = "Run the scheduler tick and the maintenance sweep once (cron-friendly)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--only",
            choices=["scheduler", "maintenance"],
            default="",
            help="Run just one of the two ticks",
        )

    def handle(self, *args, **options):
        cfg = get_runtime_config(fresh=True)
        only = options.get("only") or ""

        if only in ("", "maintenance"):
            snapshot = run_maintenance_tick(now=timezone.now(), config=cfg)
            self.stdout.write(format_snapshot("maintenance_tick", snapshot))

        if only in ("", "scheduler"):
            snapshot = run_scheduler_tick(now=timezone.now(), config=cfg)
            self.stdout.write(format_snapshot("scheduler_tick", snapshot))
            if snapshot.invalid_projects:
                raise CommandError(f"{snapshot.invalid_projects} project(s) have an invalid recurrence config")
