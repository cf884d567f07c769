"""清理 worker：消费清理队列，失败任务按指数退避重新入队。"""

from __future__ import annotations

import time
from typing import List, Optional, Set

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.enums import NodeStatus, NodeType
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.node import node_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.services.lifecycle_service import PurgeReport, lifecycle_service
from app.packages.drive.services.purge_queue import PurgeJob, get_purge_queue


def backoff_delay(attempts: int) -> float:
    """第 ``attempts`` 次失败后的等待秒数：base * 2**n。"""
    return get_settings().purge_backoff_seconds * (2 ** max(attempts - 1, 0))


def _run_job(job: PurgeJob) -> PurgeReport:
    db = db_session.SessionLocal()
    try:
        return lifecycle_service.purge_node(db, job.node_id)
    finally:
        db.close()


def drain_purge_queue(max_jobs: Optional[int] = None, *, now: Optional[float] = None) -> List[PurgeReport]:
    """处理当前已到期的清理任务，返回成功任务的清理报告。

    未到期的任务原样放回队列；失败任务增加重试次数后延迟重新入队，
    超过 ``PURGE_MAX_ATTEMPTS`` 后丢弃并记录错误，节点保持 DELETED_PENDING 状态。
    """
    settings = get_settings()
    queue = get_purge_queue()
    current = time.time() if now is None else now
    reports: List[PurgeReport] = []
    deferred: List[PurgeJob] = []
    processed = 0

    while max_jobs is None or processed < max_jobs:
        job = queue.pop()
        if job is None:
            break
        if not job.is_due(current):
            deferred.append(job)
            continue
        processed += 1
        try:
            reports.append(_run_job(job))
        except Exception:
            job.attempts += 1
            if job.attempts >= settings.purge_max_attempts:
                logger.exception(
                    "Purge job dropped after %s attempts",
                    job.attempts,
                    extra={"node_id": job.node_id, "project_id": job.project_id, "job_id": job.node_id},
                )
                continue
            job.not_before = current + backoff_delay(job.attempts)
            logger.warning(
                "Purge job failed (attempt %s), retrying in %.1fs",
                job.attempts,
                job.not_before - current,
                exc_info=True,
                extra={"node_id": job.node_id, "project_id": job.project_id, "job_id": job.node_id},
            )
            deferred.append(job)

    for job in deferred:
        queue.push(job)
    return reports


def recover_pending(db: Session) -> int:
    """启动时为没有对应任务的 DELETED_PENDING 根节点重新投递清理任务。"""
    queue = get_purge_queue()
    queued: Set[str] = {job.node_id for job in queue.pending()}
    pending = node_crud.by_status(db, status=NodeStatus.DELETED_PENDING)
    pending_ids = {node.id for node in pending}
    seen_cohorts: Set[tuple] = set()
    recovered = 0

    for node in pending:
        # 父目录本身待清理时，由父目录的任务一并处理
        if node.parent_id and node.parent_id in pending_ids:
            continue
        if node.type == NodeType.FILE.value:
            cohort = (node.project_id, node.parent_id, node.name)
            if cohort in seen_cohorts:
                continue
            seen_cohorts.add(cohort)
            cohort_ids = {row.id for row in node_crud.cohort_of(db, node, include_pending=True)}
            if cohort_ids & queued:
                continue
        elif node.id in queued:
            continue
        queue.push(PurgeJob(node_id=node.id, project_id=node.project_id))
        recovered += 1

    if recovered:
        logger.info("Recovered %s pending purge job(s)", recovered)
    return recovered


def recover_on_startup() -> None:
    """应用启动时恢复遗留的清理任务并尝试处理一轮。"""
    db = db_session.SessionLocal()
    try:
        recover_pending(db)
    finally:
        db.close()
    drain_purge_queue()
