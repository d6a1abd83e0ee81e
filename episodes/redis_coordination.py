"""Worker heartbeats and the tick-leader lock.

The lock only keeps the periodic scheduler/sweeper ticks from running on every
worker at once. Ticks are idempotent, so losing or splitting the lock costs
duplicate work, never duplicate jobs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis


def _k_tick_lock() -> str:
    return "episodes:tick:lock"


def _k_tick_epoch() -> str:
    return "episodes:tick:epoch"


def _k_worker_heartbeat(worker_id: str) -> str:
    return f"episodes:worker:{worker_id}:heartbeat"


def _k_worker_info(worker_id: str) -> str:
    return f"episodes:worker:{worker_id}:info"


@dataclass(frozen=True)
class WorkerInfo:
    worker_id: str
    node_id: str
    current_job_id: Optional[int]
    last_seen: float
    heartbeat_ttl_seconds: int
    is_tick_leader: bool


def list_workers(redis_url: str) -> list[WorkerInfo]:
    r = redis.Redis.from_url(redis_url, decode_responses=True)
    leader_worker_id = r.get(_k_tick_lock())

    workers: list[WorkerInfo] = []
    for key in r.scan_iter(match="episodes:worker:*:info"):
        data = r.hgetall(key)
        worker_id = data.get("worker_id")
        raw_last_seen = data.get("last_seen")
        if not worker_id or not raw_last_seen:
            continue

        try:
            last_seen = float(raw_last_seen)
        except ValueError:
            continue

        current_job_id: Optional[int] = None
        raw_job = data.get("current_job_id")
        if raw_job:
            try:
                current_job_id = int(raw_job)
            except ValueError:
                current_job_id = None

        ttl = r.ttl(_k_worker_heartbeat(worker_id))
        workers.append(
            WorkerInfo(
                worker_id=worker_id,
                node_id=data.get("node_id", ""),
                current_job_id=current_job_id,
                last_seen=last_seen,
                heartbeat_ttl_seconds=int(ttl) if ttl is not None and ttl > 0 else 0,
                is_tick_leader=(leader_worker_id == worker_id),
            )
        )

    workers.sort(key=lambda w: w.last_seen, reverse=True)
    return workers


@dataclass(frozen=True)
class CoordinationSettings:
    heartbeat_ttl_seconds: int = 15
    tick_lock_ttl_seconds: int = 30


@dataclass(frozen=True)
class CoordinationStatus:
    is_tick_leader: bool
    tick_epoch: Optional[int]
    tick_leader_worker_id: Optional[str]


_LUA_RENEW_LOCK = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('PEXPIRE', KEYS[1], ARGV[2])
else
  return 0
end
"""


_LUA_RELEASE_LOCK = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
else
  return 0
end
"""


class RedisCoordinator:
    def __init__(
        self,
        *,
        redis_url: str,
        worker_id: str,
        node_id: str,
        settings: CoordinationSettings,
        client: Optional[redis.Redis] = None,
    ):
        self._redis = client if client is not None else redis.Redis.from_url(redis_url, decode_responses=True)
        self._worker_id = worker_id
        self._node_id = node_id
        self._settings = settings

        self._is_leader = False
        self._epoch: Optional[int] = None

        self._renew_lock = self._redis.register_script(_LUA_RENEW_LOCK)
        self._release_lock = self._redis.register_script(_LUA_RELEASE_LOCK)

    @property
    def is_tick_leader(self) -> bool:
        return self._is_leader

    def tick(self, *, now: float, current_job_id: Optional[int] = None) -> CoordinationStatus:
        self._redis.set(
            _k_worker_heartbeat(self._worker_id),
            str(now),
            ex=self._settings.heartbeat_ttl_seconds,
        )
        self._redis.hset(
            _k_worker_info(self._worker_id),
            mapping={
                "worker_id": self._worker_id,
                "node_id": self._node_id,
                "current_job_id": str(current_job_id or ""),
                "last_seen": str(now),
            },
        )
        self._redis.expire(_k_worker_info(self._worker_id), self._settings.heartbeat_ttl_seconds)

        lock_key = _k_tick_lock()
        ttl_ms = str(self._settings.tick_lock_ttl_seconds * 1000)

        # A restarted process with the same worker_id may still own the lock.
        current = self._redis.get(lock_key)
        if not self._is_leader and current == self._worker_id:
            self._is_leader = True
            raw_epoch = self._redis.get(_k_tick_epoch())
            self._epoch = int(raw_epoch) if raw_epoch else None

        if self._is_leader:
            renewed = int(self._renew_lock(keys=[lock_key], args=[self._worker_id, ttl_ms]))
            if renewed <= 0:
                self._is_leader = False
                self._epoch = None
        elif not current:
            acquired = self._redis.set(
                lock_key,
                self._worker_id,
                nx=True,
                ex=self._settings.tick_lock_ttl_seconds,
            )
            if acquired:
                self._is_leader = True
                self._epoch = int(self._redis.incr(_k_tick_epoch()))

        return CoordinationStatus(
            is_tick_leader=self._is_leader,
            tick_epoch=self._epoch if self._is_leader else None,
            tick_leader_worker_id=self._redis.get(lock_key),
        )

    def shutdown(self) -> None:
        if self._is_leader:
            try:
                self._release_lock(keys=[_k_tick_lock()], args=[self._worker_id])
            finally:
                self._is_leader = False
                self._epoch = None
        self._redis.delete(_k_worker_heartbeat(self._worker_id), _k_worker_info(self._worker_id))
