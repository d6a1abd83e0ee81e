from __future__ import annotations

import json
from typing import Any

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from episodes.conf import get_runtime_config, get_str
from episodes.dispatcher import on_workflow_complete
from episodes.errors import InvalidRecurrence, JobNotFound, ProjectNotFound
from episodes.notifier import build_notifier
from episodes.project_hooks import (
    on_project_deleted,
    on_project_paused,
    on_project_resumed,
    on_recurrence_changed,
)
from episodes.recurrence import RecurrenceConfig
from episodes.workflow import WorkflowOutcome


def _get_client_token(request) -> str:
    return (request.headers.get("X-Episodes-Token") or "").strip()


def _is_authenticated(request) -> bool:
    # Token can be overridden via EpisodeSetting (DB). Read fresh to avoid stale auth decisions.
    token_required = get_str(key="EPISODES_API_TOKEN", default="", fresh=True).strip()
    if token_required:
        return _get_client_token(request) == token_required
    return bool(getattr(request, "user", None) and request.user.is_authenticated)


def _unauthorized() -> JsonResponse:
    return JsonResponse({"ok": False, "errors": ["unauthorized"]}, status=401)


def _safe_body_json(request) -> dict[str, Any]:
    try:
        raw = request.body.decode("utf-8") if request.body else ""
        if not raw:
            return {}
        data = json.loads(raw)
        return data if isinstance(data, dict) else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}


@csrf_exempt
@require_POST
def workflow_complete(request):
    if not _is_authenticated(request):
        return _unauthorized()

    data = _safe_body_json(request)
    try:
        job_id = int(data.get("job_id"))
    except (TypeError, ValueError):
        return JsonResponse({"ok": False, "errors": ["job_id is required"]}, status=400)

    try:
        outcome = WorkflowOutcome.from_json(data)
    except ValueError as e:
        return JsonResponse({"ok": False, "errors": [str(e)]}, status=400)

    config = get_runtime_config()
    try:
        result = on_workflow_complete(job_id, outcome, notifier=build_notifier(config), config=config)
    except JobNotFound:
        return JsonResponse({"ok": False, "errors": ["job not found"]}, status=404)

    return JsonResponse({"ok": True, "job_id": job_id, "result": result})


@csrf_exempt
@require_POST
def project_paused(request, project_id: str):
    if not _is_authenticated(request):
        return _unauthorized()
    try:
        cancelled = on_project_paused(project_id)
    except ProjectNotFound:
        return JsonResponse({"ok": False, "errors": ["project not found"]}, status=404)
    return JsonResponse({"ok": True, "project_id": project_id, "cancelled_jobs": cancelled})


@csrf_exempt
@require_POST
def project_resumed(request, project_id: str):
    if not _is_authenticated(request):
        return _unauthorized()
    try:
        created = on_project_resumed(project_id)
    except ProjectNotFound:
        return JsonResponse({"ok": False, "errors": ["project not found"]}, status=404)
    except InvalidRecurrence as e:
        return JsonResponse({"ok": False, "errors": [str(e)]}, status=400)
    return JsonResponse({"ok": True, "project_id": project_id, "created_job": created})


@csrf_exempt
@require_POST
def project_deleted(request, project_id: str):
    if not _is_authenticated(request):
        return _unauthorized()
    cancelled = on_project_deleted(project_id)
    return JsonResponse({"ok": True, "project_id": project_id, "cancelled_jobs": cancelled})


@csrf_exempt
@require_POST
def project_recurrence(request, project_id: str):
    if not _is_authenticated(request):
        return _unauthorized()

    data = _safe_body_json(request)
    try:
        recurrence = RecurrenceConfig.from_json(data)
    except InvalidRecurrence as e:
        return JsonResponse({"ok": False, "errors": [str(e)]}, status=400)

    tenant_id = str(data.get("tenant_id") or "").strip() or None
    try:
        res = on_recurrence_changed(project_id, recurrence, tenant_id=tenant_id)
    except ProjectNotFound as e:
        return JsonResponse({"ok": False, "errors": [str(e)]}, status=404)
    except ValueError as e:
        return JsonResponse({"ok": False, "errors": [str(e)]}, status=400)

    return JsonResponse(
        {
            "ok": True,
            "project_id": project_id,
            "cancelled_jobs": res.cancelled_jobs,
            "created_job": res.created_job,
            "next_scheduled_at": res.next_scheduled_at.isoformat() if res.next_scheduled_at else None,
        }
    )
