"""Claim loop: claim -> admission -> start workflow -> await outcome -> apply."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
import threading
import time
from typing import Any, Callable, Optional

from django.utils import timezone

from episodes.admission import admit
from episodes.conf import EpisodesRuntimeConfig, get_runtime_config
from episodes.errors import StaleJobState
from episodes.job_store import (
    claim_next,
    get_job,
    mark_blocked,
    mark_failed,
    mark_processing,
    mark_succeeded,
    renew_lease,
)
from episodes.metrics import observe_admission_rejected, observe_job_claimed, observe_job_finished
from episodes.models import GenerationJob, ProjectSchedule
from episodes.notifier import DeliveryNotifier
from episodes.scheduling import materialize_next_cycle
from episodes.workflow import GenerationWorkflow, WorkflowOutcome


logger = logging.getLogger(__name__)

Status = GenerationJob.Status

RESULT_SUCCEEDED = "succeeded"
RESULT_RETRY = "retry"
RESULT_FAILED = "failed"
RESULT_BLOCKED = "blocked"
RESULT_LOST = "lost"
RESULT_IGNORED = "ignored"
RESULT_CANCELLED = "cancelled"


@dataclass(frozen=True)
class DispatchResult:
    job_id: int
    result: str
    detail: str = ""


def _project_is_active(project_id: str) -> bool:
    return ProjectSchedule.objects.filter(project_id=project_id, status=ProjectSchedule.Status.ACTIVE).exists()


def _settle_unretried(job: GenerationJob, *, now: datetime, config: EpisodesRuntimeConfig) -> str:
    observe_job_finished(status=job.status)
    if job.status == Status.CANCELLED:
        return RESULT_CANCELLED
    materialize_next_cycle(job, now=now, config=config)
    return RESULT_FAILED


def on_workflow_complete(
    job_id: int,
    outcome: WorkflowOutcome,
    *,
    notifier: DeliveryNotifier,
    now: Optional[datetime] = None,
    config: Optional[EpisodesRuntimeConfig] = None,
) -> str:
    """Apply a finished workflow run to its job.

    Safe to call more than once: only a PROCESSING job is changed, anything else
    returns ``RESULT_IGNORED``. So is an outcome whose ``handle`` names an earlier
    run of the job.
    """

    now = now or timezone.now()
    config = config or get_runtime_config()

    if outcome.success:
        try:
            job = mark_succeeded(
                job_id=job_id,
                result_ref=outcome.result_ref,
                cost=outcome.cost,
                now=now,
                config=config,
                workflow_handle=outcome.handle,
            )
        except StaleJobState as e:
            logger.info("job %s: success outcome ignored: %s", job_id, e)
            return RESULT_IGNORED
        observe_job_finished(status=Status.SUCCEEDED)

        if _project_is_active(job.project_id):
            try:
                notifier.notify_ready(job.project_id, job.result_ref)
            except Exception:
                logger.exception("job %s: notify_ready failed for project %s", job.id, job.project_id)
            materialize_next_cycle(job, now=now, config=config)
        return RESULT_SUCCEEDED

    try:
        retriable = mark_failed(
            job_id=job_id,
            error=outcome.error,
            cost=outcome.cost,
            now=now,
            config=config,
            from_statuses=(Status.PROCESSING,),
            workflow_handle=outcome.handle,
        )
    except StaleJobState as e:
        logger.info("job %s: failure outcome ignored: %s", job_id, e)
        return RESULT_IGNORED

    if retriable:
        observe_job_finished(status=Status.PENDING)
        return RESULT_RETRY
    return _settle_unretried(get_job(job_id), now=now, config=config)


class Dispatcher:
    """One worker's claim loop. Any number of these may run against the same store."""

    def __init__(
        self,
        *,
        worker_id: str,
        workflow: GenerationWorkflow,
        notifier: DeliveryNotifier,
        config_provider: Callable[[], EpisodesRuntimeConfig] = get_runtime_config,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], datetime] = timezone.now,
    ):
        self.worker_id = str(worker_id)
        self.workflow = workflow
        self.notifier = notifier
        self._config_provider = config_provider
        self._sleep = sleep
        self._clock = clock
        self.current_job_id: Optional[int] = None

    def process_one(self) -> Optional[DispatchResult]:
        config = self._config_provider()
        job = claim_next(worker_id=self.worker_id, now=self._clock(), config=config)
        if job is None:
            return None
        observe_job_claimed()

        self.current_job_id = int(job.id)
        try:
            return self._dispatch(job, config)
        finally:
            self.current_job_id = None

    def _context(self, job: GenerationJob) -> dict[str, Any]:
        return {
            "tenant_id": job.tenant_id,
            "idempotency_key": job.idempotency_key,
            "scheduled_delivery_at": job.scheduled_delivery_at.isoformat(),
            "attempt": int(job.attempt_count),
        }

    def _dispatch(self, job: GenerationJob, config: EpisodesRuntimeConfig) -> DispatchResult:
        if not admit(job.tenant_id, self._clock(), config):
            observe_admission_rejected()
            if not mark_blocked(job_id=job.id, worker_id=self.worker_id, now=self._clock(), config=config):
                return DispatchResult(job.id, RESULT_LOST, "claim lost before block")
            return DispatchResult(job.id, RESULT_BLOCKED, "daily cost cap reached")

        try:
            handle = self.workflow.start_generation(job.id, job.project_id, self._context(job))
        except Exception as e:
            logger.warning("job %s: workflow start failed: %s", job.id, e)
            return self._fail_claimed(job, f"workflow start failed: {e}", config)

        if not mark_processing(job_id=job.id, worker_id=self.worker_id, workflow_handle=handle, now=self._clock()):
            logger.info("job %s: claim lost before processing (handle %s)", job.id, handle)
            return DispatchResult(job.id, RESULT_LOST, "claim lost before processing")

        outcome = self._await_outcome(job, handle, config)
        if outcome is None:
            return DispatchResult(job.id, RESULT_IGNORED, "outcome applied elsewhere")
        if not outcome.handle:
            outcome = replace(outcome, handle=str(handle or ""))

        result = on_workflow_complete(job.id, outcome, notifier=self.notifier, now=self._clock(), config=config)
        return DispatchResult(job.id, result, outcome.error if not outcome.success else outcome.result_ref)

    def _fail_claimed(self, job: GenerationJob, error: str, config: EpisodesRuntimeConfig) -> DispatchResult:
        now = self._clock()
        try:
            retriable = mark_failed(
                job_id=job.id,
                error=error,
                cost=0,
                now=now,
                config=config,
                worker_id=self.worker_id,
                from_statuses=(Status.CLAIMED,),
            )
        except StaleJobState:
            return DispatchResult(job.id, RESULT_LOST, error)
        if retriable:
            observe_job_finished(status=Status.PENDING)
            return DispatchResult(job.id, RESULT_RETRY, error)
        return DispatchResult(job.id, _settle_unretried(get_job(job.id), now=now, config=config), error)

    def _still_ours(self, job_id: int) -> bool:
        return GenerationJob.objects.filter(
            pk=job_id,
            status=Status.PROCESSING,
            claimed_by=self.worker_id,
        ).exists()

    def _await_outcome(
        self,
        job: GenerationJob,
        handle: str,
        config: EpisodesRuntimeConfig,
    ) -> Optional[WorkflowOutcome]:
        """Poll until the run finishes, times out, or someone else settles the job.

        Holds only the lease while waiting; the lease is renewed on every round.
        """

        started = self._clock()
        timeout = timedelta(seconds=int(config.workflow_timeout_seconds))
        while True:
            try:
                outcome = self.workflow.poll(handle)
            except Exception as e:
                logger.warning("job %s: workflow poll failed: %s", job.id, e)
                return WorkflowOutcome.failed(f"workflow poll failed: {e}")
            if outcome is not None:
                return outcome

            if not self._still_ours(job.id):
                return None

            now = self._clock()
            if now - started >= timeout:
                return WorkflowOutcome.failed("workflow timeout")

            renew_lease(job_id=job.id, worker_id=self.worker_id, now=now, config=config)
            self._sleep(float(config.workflow_poll_seconds))

    def run_forever(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                result = self.process_one()
            except Exception:
                logger.exception("dispatcher %s: dispatch failed", self.worker_id)
                result = None
            if result is None:
                stop_event.wait(self._config_provider().dispatch_idle_seconds)
            else:
                logger.info("dispatcher %s: job=%s result=%s", self.worker_id, result.job_id, result.result)
