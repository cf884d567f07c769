"""后台清理队列：永久删除的节点以任务形式投递，由 worker 异步物理删除。

- 优先使用 Redis 列表（LPUSH 入队 / RPOP 出队），多进程部署时共享；
- Redis 不可用或显式配置 ``memory`` 时回退到进程内队列；
- 任务携带重试次数与最早执行时间，用于失败后的指数退避。
"""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, List, Optional

import redis

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.logger import logger


@dataclass
class PurgeJob:
    node_id: str
    project_id: Optional[str] = None
    attempts: int = 0
    # 时间戳（秒）；早于该时间的任务不会被执行
    not_before: float = 0.0

    def dumps(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def loads(cls, raw: str) -> "PurgeJob":
        payload = json.loads(raw)
        return cls(
            node_id=payload["node_id"],
            project_id=payload.get("project_id"),
            attempts=int(payload.get("attempts") or 0),
            not_before=float(payload.get("not_before") or 0.0),
        )

    def is_due(self, now: Optional[float] = None) -> bool:
        return self.not_before <= (time.time() if now is None else now)


class PurgeQueue:
    """清理队列接口。"""

    def push(self, job: PurgeJob) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def pop(self) -> Optional[PurgeJob]:  # pragma: no cover
        raise NotImplementedError

    def pending(self) -> List[PurgeJob]:  # pragma: no cover
        raise NotImplementedError

    def __len__(self) -> int:
        return len(self.pending())


class RedisPurgeQueue(PurgeQueue):
    def __init__(self, url: str, key: str = "drive:purge-jobs") -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()
        self._key = key

    def push(self, job: PurgeJob) -> None:
        self._client.lpush(self._key, job.dumps())

    def pop(self) -> Optional[PurgeJob]:
        raw = self._client.rpop(self._key)
        if raw is None:
            return None
        return PurgeJob.loads(raw)

    def pending(self) -> List[PurgeJob]:
        return [PurgeJob.loads(raw) for raw in self._client.lrange(self._key, 0, -1)]


class InMemoryPurgeQueue(PurgeQueue):
    """进程内队列，用于测试或缺少 Redis 时的回退实现。"""

    def __init__(self) -> None:
        self._jobs: Deque[PurgeJob] = deque()
        self._lock = threading.Lock()

    def push(self, job: PurgeJob) -> None:
        with self._lock:
            self._jobs.append(job)

    def pop(self) -> Optional[PurgeJob]:
        with self._lock:
            if not self._jobs:
                return None
            return self._jobs.popleft()

    def pending(self) -> List[PurgeJob]:
        with self._lock:
            return list(self._jobs)


_queue: Optional[PurgeQueue] = None


def get_purge_queue() -> PurgeQueue:
    global _queue
    if _queue is not None:
        return _queue

    settings = get_settings()
    if (settings.purge_queue_backend or "").lower() == "memory":
        _queue = InMemoryPurgeQueue()
        return _queue
    try:
        _queue = RedisPurgeQueue(settings.redis_url)
        logger.info("Purge queue initialized with Redis at %s", settings.redis_url)
    except Exception as exc:  # pragma: no cover - fallback path
        logger.warning("Redis unavailable (%s), falling back to in-memory purge queue", exc)
        _queue = InMemoryPurgeQueue()
    return _queue


def configure_purge_queue(queue: Optional[PurgeQueue]) -> None:
    """替换进程内的清理队列实例（测试时使用）。"""
    global _queue
    _queue = queue


def enqueue_purge(node_id: str, *, project_id: Optional[str] = None) -> PurgeJob:
    job = PurgeJob(node_id=node_id, project_id=project_id)
    get_purge_queue().push(job)
    logger.info("Purge job queued", extra={"node_id": node_id, "project_id": project_id})
    return job
