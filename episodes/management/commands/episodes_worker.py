from __future__ import annotations

import signal
import threading
import time
import uuid

from django.core.management.base import BaseCommand, CommandError
from django.db import connection
from django.utils import timezone

from episodes.conf import get_runtime_config, get_setting_with_source, reload_settings_cache
from episodes.dispatcher import Dispatcher
from episodes.errors import WorkflowError
from episodes.notifier import build_notifier
from episodes.redis_coordination import CoordinationSettings, CoordinationStatus, RedisCoordinator
from episodes.scheduling import format_snapshot, run_maintenance_tick, run_scheduler_tick
from episodes.workflow import build_workflow


# Printed at startup with where each value came from (db, env or default).
_REPORTED_SETTINGS = (
    "EPISODES_DAILY_COST_CAP",
    "EPISODES_EPISODE_COST_CAP",
    "EPISODES_MAX_ATTEMPTS",
    "EPISODES_LEDGER_TIMEZONE",
)


class Command(BaseCommand):
    help = "Run an episode worker: dispatch loop plus scheduler and lease-sweeper timers."

    def add_arguments(self, parser):
        parser.add_argument("--worker-id", default="", help="Explicit worker_id (defaults to NODE_ID + random suffix)")
        parser.add_argument(
            "--run-seconds",
            type=int,
            default=0,
            help="If >0, stop after N seconds (useful for local tests)",
        )
        parser.add_argument(
            "--heartbeat-ttl-seconds",
            type=int,
            default=15,
            help="Heartbeat TTL (seconds)",
        )
        parser.add_argument(
            "--tick-lock-ttl-seconds",
            type=int,
            default=30,
            help="Tick-leader lock TTL (seconds)",
        )
        parser.add_argument(
            "--no-dispatch",
            action="store_true",
            default=False,
            help="Only run the scheduler/sweeper timers",
        )
        parser.add_argument(
            "--no-ticks",
            action="store_true",
            default=False,
            help="Only run the dispatch loop",
        )

    def handle(self, *args, **options):
        cfg = get_runtime_config(fresh=True)
        worker_id = options.get("worker_id") or f"{cfg.node_id}-{uuid.uuid4().hex[:8]}"

        try:
            workflow = build_workflow(cfg)
            notifier = build_notifier(cfg)
        except (WorkflowError, ValueError) as e:
            raise CommandError(str(e))

        stop_event = threading.Event()

        def _request_stop(*_args):
            stop_event.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)

        run_seconds = int(options["run_seconds"])
        if run_seconds > 0:
            stop_timer = threading.Timer(run_seconds, stop_event.set)
            stop_timer.daemon = True
            stop_timer.start()

        coordinator = None
        if cfg.redis_url:
            coordinator = RedisCoordinator(
                redis_url=cfg.redis_url,
                worker_id=worker_id,
                node_id=cfg.node_id,
                settings=CoordinationSettings(
                    heartbeat_ttl_seconds=int(options["heartbeat_ttl_seconds"]),
                    tick_lock_ttl_seconds=int(options["tick_lock_ttl_seconds"]),
                ),
            )

        dispatcher = Dispatcher(worker_id=worker_id, workflow=workflow, notifier=notifier)

        self.stdout.write("episodes worker")
        self.stdout.write(f"worker_id={worker_id}")
        self.stdout.write(f"node_id={cfg.node_id}")
        self.stdout.write(f"redis_url={cfg.redis_url or '-'}")
        self.stdout.write(f"workflow_backend={cfg.workflow_backend} notifier_backend={cfg.notifier_backend}")
        for key in _REPORTED_SETTINGS:
            value, source = get_setting_with_source(key=key, fresh=True)
            self.stdout.write(f"{key}={value} source={source}")

        status_lock = threading.Lock()
        latest_status: CoordinationStatus | None = None

        def _coordination_loop():
            nonlocal latest_status
            last_role = None
            last_error_log_at = 0.0
            while not stop_event.is_set():
                try:
                    status = coordinator.tick(now=time.time(), current_job_id=dispatcher.current_job_id)
                except Exception as e:
                    now_ts = time.time()
                    # Avoid spamming logs if Redis is temporarily unavailable.
                    if (now_ts - last_error_log_at) >= 5.0:
                        self.stdout.write(f"coordination_tick error={type(e).__name__}")
                        last_error_log_at = now_ts
                    with status_lock:
                        latest_status = None
                    stop_event.wait(0.5)
                    continue

                with status_lock:
                    latest_status = status
                role = "TICK_LEADER" if status.is_tick_leader else "WORKER"
                if role != last_role:
                    self.stdout.write(
                        f"role={role} tick_epoch={status.tick_epoch} tick_leader_worker_id={status.tick_leader_worker_id}"
                    )
                    last_role = role
                stop_event.wait(1.0)

        def _runs_ticks() -> bool:
            if coordinator is None:
                return True
            with status_lock:
                status = latest_status
            # Redis down: keep ticking locally; the ticks are idempotent.
            return status is None or status.is_tick_leader

        def _tick_loop():
            last_scheduler_at = 0.0
            last_sweeper_at = 0.0
            last_reload_at = time.time()
            last_error_log_at = 0.0
            try:
                while not stop_event.is_set():
                    # EpisodeSetting overrides are cached per process; pick up edits periodically.
                    if (time.time() - last_reload_at) >= 30.0:
                        reload_settings_cache()
                        last_reload_at = time.time()
                    tick_cfg = get_runtime_config()
                    if _runs_ticks():
                        try:
                            if (time.time() - last_sweeper_at) >= tick_cfg.sweeper_interval_seconds:
                                snapshot = run_maintenance_tick(now=timezone.now(), config=tick_cfg)
                                self.stdout.write(format_snapshot("maintenance_tick", snapshot))
                                last_sweeper_at = time.time()
                            if (time.time() - last_scheduler_at) >= tick_cfg.scheduler_interval_seconds:
                                snapshot = run_scheduler_tick(now=timezone.now(), config=tick_cfg)
                                self.stdout.write(format_snapshot("scheduler_tick", snapshot))
                                last_scheduler_at = time.time()
                        except Exception as e:
                            now_ts = time.time()
                            if (now_ts - last_error_log_at) >= 5.0:
                                self.stdout.write(f"tick error={type(e).__name__} detail={e}")
                                last_error_log_at = now_ts
                    stop_event.wait(1.0)
            finally:
                connection.close()

        threads: list[threading.Thread] = []
        if coordinator is not None:
            threads.append(threading.Thread(target=_coordination_loop, name="coordination", daemon=True))
        if not options["no_ticks"]:
            threads.append(threading.Thread(target=_tick_loop, name="ticks", daemon=True))
        for t in threads:
            t.start()

        try:
            if options["no_dispatch"]:
                while not stop_event.is_set():
                    stop_event.wait(1.0)
            else:
                dispatcher.run_forever(stop_event)
        finally:
            stop_event.set()
            for t in threads:
                t.join(timeout=2.0)
            if coordinator is not None:
                coordinator.shutdown()
            self.stdout.write(f"worker_id={worker_id} stopped")
