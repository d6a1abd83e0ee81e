from __future__ import annotations

import json
import logging
from typing import Protocol
import urllib.error
import urllib.request

from episodes.conf import EpisodesRuntimeConfig


logger = logging.getLogger(__name__)


class DeliveryNotifier(Protocol):
    def notify_ready(self, project_id: str, result_ref: str) -> None:
        ...


class LogNotifier:
    def notify_ready(self, project_id: str, result_ref: str) -> None:
        logger.info("episode ready project=%s result_ref=%s", project_id, result_ref)


class WebhookNotifier:
    """POSTs ``{"project_id", "result_ref"}``. Fire-and-forget: errors are raised, never retried here."""

    def __init__(self, *, url: str, token: str = "", timeout_seconds: float = 10.0):
        if not url:
            raise ValueError("EPISODES_NOTIFIER_URL is required for the webhook notifier backend")
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds

    def notify_ready(self, project_id: str, result_ref: str) -> None:
        body = json.dumps({"project_id": project_id, "result_ref": result_ref}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-Episodes-Token"] = self.token
        req = urllib.request.Request(self.url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            raise RuntimeError(f"notifier POST {self.url} -> HTTP {e.code}") from e


def build_notifier(config: EpisodesRuntimeConfig) -> DeliveryNotifier:
    backend = (config.notifier_backend or "log").strip().lower()
    if backend == "log":
        return LogNotifier()
    if backend == "webhook":
        return WebhookNotifier(url=config.notifier_url, token=config.notifier_token)
    raise ValueError(f"unknown notifier backend {config.notifier_backend!r}")
