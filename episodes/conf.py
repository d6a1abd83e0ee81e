from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
import threading
from typing import Any

from django.conf import settings


# These values are process-local or environment-bound and should not be overridden via DB.
_NON_OVERRIDABLE_KEYS = {
    "EPISODES_NODE_ID",
}


_settings_cache_lock = threading.Lock()
_settings_cache: dict[str, Any] | None = None
_settings_cache_generation: int = 0


def _normalize_setting_value(value_json: Any) -> Any:
    # Prefer {"value": ...} wrapper; primitives stored directly are accepted too.
    if isinstance(value_json, dict) and "value" in value_json and len(value_json) == 1:
        return value_json.get("value")
    return value_json


def _load_settings_overrides_from_db() -> dict[str, Any]:
    try:
        from episodes.models import EpisodeSetting

        rows = EpisodeSetting.objects.all().only("key", "value_json")
        return {str(r.key): _normalize_setting_value(r.value_json) for r in rows}
    except Exception:
        # DB not migrated yet: fall back to settings.py values.
        return {}


def reload_settings_cache() -> int:
    """Clear cached EpisodeSetting overrides.

    Returns new cache generation.
    """

    global _settings_cache, _settings_cache_generation
    with _settings_cache_lock:
        _settings_cache = None
        _settings_cache_generation += 1
        return int(_settings_cache_generation)


def _get_db_overrides(*, fresh: bool = False) -> dict[str, Any]:
    global _settings_cache
    if fresh:
        return _load_settings_overrides_from_db()
    with _settings_cache_lock:
        if _settings_cache is None:
            _settings_cache = _load_settings_overrides_from_db()
        return dict(_settings_cache)


def get_setting(*, key: str, default: Any = None, fresh: bool = False) -> Any:
    if key in _NON_OVERRIDABLE_KEYS:
        return getattr(settings, key, default)
    db = _get_db_overrides(fresh=fresh)
    if key in db:
        return db[key]
    if hasattr(settings, key):
        return getattr(settings, key)
    return default


def get_setting_with_source(*, key: str, default: Any = None, fresh: bool = False) -> tuple[Any, str]:
    if key in _NON_OVERRIDABLE_KEYS:
        return getattr(settings, key, default), "env"
    db = _get_db_overrides(fresh=fresh)
    if key in db:
        return db[key], "db"
    if hasattr(settings, key):
        return getattr(settings, key), "env"
    return default, "default"


def get_str(*, key: str, default: str = "", fresh: bool = False) -> str:
    v = get_setting(key=key, default=default, fresh=fresh)
    return str(v) if v is not None else str(default)


def get_int(*, key: str, default: int = 0, fresh: bool = False) -> int:
    v = get_setting(key=key, default=default, fresh=fresh)
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def get_float(*, key: str, default: float = 0.0, fresh: bool = False) -> float:
    v = get_setting(key=key, default=default, fresh=fresh)
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def get_bool(*, key: str, default: bool = False, fresh: bool = False) -> bool:
    v = get_setting(key=key, default=default, fresh=fresh)
    if isinstance(v, bool):
        return bool(v)
    if isinstance(v, (int, float)):
        return bool(int(v))
    if isinstance(v, str):
        return v.strip() not in {"", "0", "false", "False", "no", "No"}
    return bool(v) if v is not None else bool(default)


def get_decimal(*, key: str, default: str = "0", fresh: bool = False) -> Decimal:
    v = get_setting(key=key, default=default, fresh=fresh)
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return Decimal(str(default))


def parse_backoff_schedule(raw: Any, default: tuple[int, ...] = (1800, 3600, 3600)) -> tuple[int, ...]:
    """Parse "1800,3600" (or a JSON list) into positive delays in seconds."""

    if isinstance(raw, (list, tuple)):
        parts = list(raw)
    else:
        parts = [p for p in str(raw or "").split(",") if p.strip()]
    out: list[int] = []
    for p in parts:
        try:
            n = int(str(p).strip())
        except ValueError:
            return tuple(default)
        if n < 0:
            return tuple(default)
        out.append(n)
    return tuple(out) if out else tuple(default)


@dataclass(frozen=True)
class EpisodesRuntimeConfig:
    node_id: str
    redis_url: str

    generation_window: timedelta
    safety_margin: timedelta
    max_attempts: int
    backoff_schedule: tuple[int, ...]
    lease_duration: timedelta

    daily_cost_cap: Decimal
    episode_cost_cap: Decimal
    ledger_timezone: str
    blocked_counts_as_attempt: bool

    workflow_backend: str
    workflow_url: str
    workflow_token: str
    workflow_poll_seconds: int
    workflow_timeout_seconds: int

    notifier_backend: str
    notifier_url: str
    notifier_token: str

    scheduler_interval_seconds: int
    sweeper_interval_seconds: int
    dispatch_idle_seconds: float

    standard_priority: int = 5
    retry_priority: int = 8


def get_runtime_config(*, fresh: bool = False) -> EpisodesRuntimeConfig:
    return EpisodesRuntimeConfig(
        node_id=str(getattr(settings, "EPISODES_NODE_ID", "")),
        redis_url=get_str(key="EPISODES_REDIS_URL", fresh=fresh).strip(),
        generation_window=timedelta(
            seconds=max(0, get_int(key="EPISODES_GENERATION_WINDOW_SECONDS", default=4 * 3600, fresh=fresh))
        ),
        safety_margin=timedelta(seconds=max(0, get_int(key="EPISODES_SAFETY_MARGIN_SECONDS", default=900, fresh=fresh))),
        max_attempts=max(1, get_int(key="EPISODES_MAX_ATTEMPTS", default=3, fresh=fresh)),
        backoff_schedule=parse_backoff_schedule(get_setting(key="EPISODES_BACKOFF_SCHEDULE_SECONDS", fresh=fresh)),
        lease_duration=timedelta(seconds=max(1, get_int(key="EPISODES_LEASE_SECONDS", default=900, fresh=fresh))),
        daily_cost_cap=get_decimal(key="EPISODES_DAILY_COST_CAP", default="50.00", fresh=fresh),
        episode_cost_cap=get_decimal(key="EPISODES_EPISODE_COST_CAP", default="3.00", fresh=fresh),
        ledger_timezone=get_str(key="EPISODES_LEDGER_TIMEZONE", default="UTC", fresh=fresh).strip() or "UTC",
        blocked_counts_as_attempt=get_bool(key="EPISODES_BLOCKED_COUNTS_AS_ATTEMPT", default=False, fresh=fresh),
        workflow_backend=get_str(key="EPISODES_WORKFLOW_BACKEND", default="dummy", fresh=fresh).strip() or "dummy",
        workflow_url=get_str(key="EPISODES_WORKFLOW_URL", fresh=fresh).strip(),
        workflow_token=get_str(key="EPISODES_WORKFLOW_TOKEN", fresh=fresh).strip(),
        workflow_poll_seconds=max(1, get_int(key="EPISODES_WORKFLOW_POLL_SECONDS", default=15, fresh=fresh)),
        workflow_timeout_seconds=max(1, get_int(key="EPISODES_WORKFLOW_TIMEOUT_SECONDS", default=3600, fresh=fresh)),
        notifier_backend=get_str(key="EPISODES_NOTIFIER_BACKEND", default="log", fresh=fresh).strip() or "log",
        notifier_url=get_str(key="EPISODES_NOTIFIER_URL", fresh=fresh).strip(),
        notifier_token=get_str(key="EPISODES_NOTIFIER_TOKEN", fresh=fresh).strip(),
        scheduler_interval_seconds=max(1, get_int(key="EPISODES_SCHEDULER_INTERVAL_SECONDS", default=300, fresh=fresh)),
        sweeper_interval_seconds=max(1, get_int(key="EPISODES_SWEEPER_INTERVAL_SECONDS", default=60, fresh=fresh)),
        dispatch_idle_seconds=max(0.0, get_float(key="EPISODES_DISPATCH_IDLE_SECONDS", default=5.0, fresh=fresh)),
    )
