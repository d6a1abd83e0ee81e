from __future__ import annotations

from dataclasses import dataclass
import logging
import time

from django.db.models import Count
from django.http import HttpResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

from episodes.conf import get_str


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Metrics:
    jobs_created_total: Counter
    jobs_claimed_total: Counter
    jobs_finished_total: Counter
    admission_rejected_total: Counter
    jobs_by_status: Gauge
    workers_online: Gauge


def _build_metrics() -> _Metrics:
    return _Metrics(
        jobs_created_total=Counter(
            "episodes_jobs_created_total",
            "Number of generation jobs materialized by the scheduler",
        ),
        jobs_claimed_total=Counter(
            "episodes_jobs_claimed_total",
            "Number of generation job claims made by dispatchers",
        ),
        jobs_finished_total=Counter(
            "episodes_jobs_finished_total",
            "Number of generation job attempts that reached an outcome",
            labelnames=["status"],
        ),
        admission_rejected_total=Counter(
            "episodes_admission_rejected_total",
            "Number of claims rejected by the daily cost cap",
        ),
        jobs_by_status=Gauge(
            "episodes_jobs_by_status",
            "Number of generation jobs per status (from DB)",
            labelnames=["status"],
        ),
        workers_online=Gauge(
            "episodes_workers_online",
            "Number of dispatch workers with a live Redis heartbeat",
        ),
    )


METRICS = _build_metrics()


_SYNC_CACHE: dict[str, float] = {"db_ts": 0.0, "redis_ts": 0.0}


def observe_jobs_created(n: int = 1) -> None:
    if n > 0:
        METRICS.jobs_created_total.inc(n)


def observe_job_claimed() -> None:
    METRICS.jobs_claimed_total.inc()


def observe_job_finished(*, status: str) -> None:
    METRICS.jobs_finished_total.labels(status=str(status or "")).inc()


def observe_admission_rejected() -> None:
    METRICS.admission_rejected_total.inc()


def _sync_metrics_from_db() -> None:
    """Refresh the per-status gauge. Throttled; /metrics is served by the web process."""

    now = time.time()
    if (now - _SYNC_CACHE["db_ts"]) < 5.0:
        return
    _SYNC_CACHE["db_ts"] = now

    from episodes.models import GenerationJob

    counts = {str(s): 0 for s in GenerationJob.Status.values}
    for row in GenerationJob.objects.values("status").annotate(c=Count("id")):
        counts[str(row["status"])] = int(row["c"] or 0)
    for status, c in counts.items():
        METRICS.jobs_by_status.labels(status=status).set(float(c))


def _sync_metrics_from_redis() -> None:
    now = time.time()
    if (now - _SYNC_CACHE["redis_ts"]) < 5.0:
        return
    _SYNC_CACHE["redis_ts"] = now

    redis_url = get_str(key="EPISODES_REDIS_URL", default="", fresh=True).strip()
    if not redis_url:
        return

    from redis.exceptions import RedisError

    from episodes.redis_coordination import list_workers

    try:
        workers = list_workers(redis_url)
    except RedisError as e:
        logger.warning("metrics: redis unavailable: %s", e)
        return
    METRICS.workers_online.set(float(sum(1 for w in workers if int(w.heartbeat_ttl_seconds) > 0)))


def _metrics_token_ok(request) -> bool:
    required = get_str(key="EPISODES_METRICS_TOKEN", default="", fresh=True).strip()
    if not required:
        return True
    got = (request.headers.get("X-Episodes-Token") or "").strip()
    return got == required


def metrics_view(request):
    if not _metrics_token_ok(request):
        return HttpResponse("unauthorized", status=401, content_type="text/plain; charset=utf-8")

    _sync_metrics_from_db()
    _sync_metrics_from_redis()

    body = generate_latest()
    return HttpResponse(body, content_type=CONTENT_TYPE_LATEST)
