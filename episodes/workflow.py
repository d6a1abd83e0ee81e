from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Any, Protocol
import urllib.error
import urllib.parse
import urllib.request

from episodes.conf import EpisodesRuntimeConfig
from episodes.errors import WorkflowError


logger = logging.getLogger(__name__)

_RUNNING_STATES = {"pending", "queued", "running", "in_progress"}
_SUCCESS_STATES = {"success", "succeeded", "completed"}
_FAILURE_STATES = {"failure", "failed", "error"}


def _parse_cost(value: Any) -> Decimal:
    try:
        cost = Decimal(str(value if value not in (None, "") else "0"))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"invalid cost: {value!r}") from e
    if cost < 0:
        raise ValueError(f"cost must not be negative: {value!r}")
    return cost


@dataclass(frozen=True)
class WorkflowOutcome:
    success: bool
    result_ref: str = ""
    error: str = ""
    cost: Decimal = Decimal("0")
    # Run the outcome belongs to; empty when the reporter does not say.
    handle: str = ""

    @classmethod
    def succeeded(cls, result_ref: str, cost: Decimal | str | int = 0, handle: str = "") -> "WorkflowOutcome":
        return cls(success=True, result_ref=str(result_ref or ""), cost=_parse_cost(cost), handle=str(handle or ""))

    @classmethod
    def failed(cls, error: str, cost: Decimal | str | int = 0, handle: str = "") -> "WorkflowOutcome":
        return cls(success=False, error=str(error or "workflow failed"), cost=_parse_cost(cost), handle=str(handle or ""))

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "WorkflowOutcome":
        """Accepts ``{"success": bool, ...}`` or ``{"status": "succeeded"|"failed", ...}``.

        An optional ``"handle"`` names the run the outcome belongs to.
        """

        if not isinstance(data, dict):
            raise ValueError("outcome must be an object")
        if "success" in data:
            ok = bool(data.get("success"))
        else:
            status = str(data.get("status") or "").strip().lower()
            if status in _SUCCESS_STATES:
                ok = True
            elif status in _FAILURE_STATES:
                ok = False
            else:
                raise ValueError(f"unknown outcome status: {status!r}")
        cost = data.get("cost", 0)
        handle = str(data.get("handle") or "").strip()
        if ok:
            return cls.succeeded(data.get("result_ref", data.get("resultRef", "")), cost, handle)
        return cls.failed(data.get("error", ""), cost, handle)


class GenerationWorkflow(Protocol):
    def start_generation(self, job_id: int, project_id: str, context: dict[str, Any]) -> str:
        ...

    def poll(self, handle: str) -> WorkflowOutcome | None:
        """Return the outcome once the run is finished, else None."""
        ...


class DummyWorkflow:
    """Local development backend: every run finishes at once with a synthetic result."""

    def start_generation(self, job_id: int, project_id: str, context: dict[str, Any]) -> str:
        return f"dummy-{job_id}"

    def poll(self, handle: str) -> WorkflowOutcome | None:
        return WorkflowOutcome.succeeded(f"dummy://episodes/{handle}", Decimal("0"))


class HttpGenerationWorkflow:
    """JSON over HTTP.

    - POST {base}/generations  -> {"handle": "..."}
    - GET  {base}/generations/{handle} -> {"status": "running"} or a finished outcome
    """

    def __init__(self, *, base_url: str, token: str = "", timeout_seconds: float = 15.0):
        if not base_url:
            raise WorkflowError("EPISODES_WORKFLOW_URL is required for the http workflow backend")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def _request(self, method: str, url: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        body = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["X-Episodes-Token"] = self.token

        req = urllib.request.Request(url, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:500]
            raise WorkflowError(f"{method} {url} -> HTTP {e.code}: {detail}") from e
        except (urllib.error.URLError, OSError) as e:
            raise WorkflowError(f"{method} {url} failed: {e}") from e

        try:
            data = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WorkflowError(f"{method} {url} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise WorkflowError(f"{method} {url} returned a non-object body")
        return data

    def start_generation(self, job_id: int, project_id: str, context: dict[str, Any]) -> str:
        data = self._request(
            "POST",
            f"{self.base_url}/generations",
            {"job_id": job_id, "project_id": project_id, "context": context},
        )
        handle = str(data.get("handle") or "").strip()
        if not handle:
            raise WorkflowError("workflow start response has no handle")
        return handle

    def poll(self, handle: str) -> WorkflowOutcome | None:
        data = self._request("GET", f"{self.base_url}/generations/{urllib.parse.quote(handle, safe='')}")
        status = str(data.get("status") or "").strip().lower()
        if status in _RUNNING_STATES:
            return None
        try:
            return WorkflowOutcome.from_json(data)
        except ValueError as e:
            raise WorkflowError(f"workflow {handle}: {e}") from e


def build_workflow(config: EpisodesRuntimeConfig) -> GenerationWorkflow:
    backend = (config.workflow_backend or "dummy").strip().lower()
    if backend == "dummy":
        return DummyWorkflow()
    if backend == "http":
        return HttpGenerationWorkflow(base_url=config.workflow_url, token=config.workflow_token)
    raise WorkflowError(f"unknown workflow backend {config.workflow_backend!r}")
