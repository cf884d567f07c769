"""节点生命周期：回收站、恢复、永久删除与物理清理。

状态流转::

    ACTIVE --(trash)--> TRASHED --(restore)--> ACTIVE
    ACTIVE/TRASHED --(permanent delete)--> DELETED_PENDING --(purge)--> 行与对象均被移除

- 文件的各项操作作用于整个版本组（同项目、同目录、同名的全部版本）；
- 目录移入回收站不会级联修改子节点状态，子节点因父目录隐藏而在常规列表中不可见；
- 永久删除只同步把节点置为 DELETED_PENDING 并投递清理任务，物理删除由后台 worker 完成；
- 清理时单个对象删除失败只记录日志，对应的节点行仍会被删除。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.packages.drive.core.constants import HTTP_STATUS_BAD_REQUEST, HTTP_STATUS_CONFLICT, MAX_FOLDER_DEPTH
from app.packages.drive.core.enums import NodeStatus, NodeType
from app.packages.drive.core.exceptions import AppException, NotFoundError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import now as tz_now
from app.packages.drive.crud.node import node_crud
from app.packages.drive.crud.project import project_crud
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project
from app.packages.drive.services.access_policy import (
    Identity,
    ensure_owner_or_admin,
    ensure_project_member,
    ensure_writable,
    is_admin,
    is_node_owner,
)
from app.packages.drive.services.blob_store import BlobStore, get_blob_store
from app.packages.drive.services.node_view import node_to_dict
from app.packages.drive.services.path_resolver import ProjectRef, resolve_project
from app.packages.drive.services.purge_queue import enqueue_purge
from app.packages.drive.services.quota_service import quota_service


@dataclass
class PurgeReport:
    node_id: str
    freed_bytes: int = 0
    deleted_rows: int = 0
    blob_deletes: int = 0
    failed_keys: List[str] = field(default_factory=list)


class LifecycleService:
    def _get_live_node(self, db: Session, node_id: str) -> StorageNode:
        node = node_crud.get(db, node_id)
        if node is None or node.status == NodeStatus.DELETED_PENDING.value:
            raise NotFoundError("节点不存在")
        return node

    def _get_project(self, db: Session, node: StorageNode) -> Project:
        project = project_crud.get(db, node.project_id)
        if project is None:
            raise NotFoundError("项目不存在")
        return project

    # ----------------------------
    # 回收站
    # ----------------------------
    def trash(self, db: Session, identity: Identity, node_id: str) -> StorageNode:
        node = self._get_live_node(db, node_id)
        project = self._get_project(db, node)
        ensure_owner_or_admin(identity, node, action="删除该节点")
        ensure_writable(identity, project)

        trashed_at = tz_now()
        for row in node_crud.cohort_of(db, node):
            row.status = NodeStatus.TRASHED.value
            row.trashed_at = trashed_at
            db.add(row)
        db.commit()
        db.refresh(node)
        logger.info("Node moved to trash", extra={"project_id": node.project_id, "node_id": node.id})
        return node

    def restore(self, db: Session, identity: Identity, node_id: str) -> StorageNode:
        node = self._get_live_node(db, node_id)
        if node.status != NodeStatus.TRASHED.value:
            raise AppException("节点不在回收站中", HTTP_STATUS_BAD_REQUEST)
        project = self._get_project(db, node)
        ensure_owner_or_admin(identity, node, action="恢复该节点")
        ensure_writable(identity, project)

        if node.type == NodeType.FOLDER.value and node_crud.sibling_exists(
            db,
            project_id=node.project_id,
            parent_id=node.parent_id,
            name=node.name,
            type=node.type,
            exclude_ids=[node.id],
        ):
            raise AppException("同一目录下已存在同名文件夹，无法恢复", HTTP_STATUS_CONFLICT)

        for row in node_crud.cohort_of(db, node):
            if row.status != NodeStatus.TRASHED.value:
                continue
            row.status = NodeStatus.ACTIVE.value
            row.trashed_at = None
            db.add(row)
        db.commit()
        db.refresh(node)
        logger.info("Node restored", extra={"project_id": node.project_id, "node_id": node.id})
        return node

    def permanent_delete(self, db: Session, identity: Identity, node_id: str) -> dict:
        """同步置为 DELETED_PENDING 并投递清理任务，不等待对象存储清理。"""
        node = self._get_live_node(db, node_id)
        project = self._get_project(db, node)
        ensure_owner_or_admin(identity, node, action="永久删除该节点")
        ensure_writable(identity, project)

        rows = node_crud.cohort_of(db, node)
        for row in rows:
            row.status = NodeStatus.DELETED_PENDING.value
            db.add(row)
        db.commit()
        enqueue_purge(node.id, project_id=node.project_id)
        return {"id": node.id, "status": NodeStatus.DELETED_PENDING.value, "affected_versions": len(rows)}

    def list_trash(
        self, db: Session, identity: Identity, project_ref: Optional[ProjectRef | str] = None
    ) -> List[dict]:
        """回收站列表：管理员可见全部，普通用户只见自己的节点；文件按版本组只返回最新一条。"""
        project_id = None
        if project_ref:
            project = resolve_project(db, project_ref)
            ensure_project_member(db, identity, project)
            project_id = project.id

        rows = node_crud.by_status(db, status=NodeStatus.TRASHED, project_id=project_id)
        if not is_admin(identity):
            rows = [row for row in rows if is_node_owner(identity, row)]

        latest: Dict[Tuple, StorageNode] = {}
        ordered: List[Tuple] = []
        for row in rows:
            key: Tuple = (row.project_id, row.parent_id, row.name, row.type)
            if row.type == NodeType.FOLDER.value:
                key = key + (row.id,)
            current = latest.get(key)
            if current is None:
                ordered.append(key)
                latest[key] = row
            elif (row.version or 0) > (current.version or 0):
                latest[key] = row
        return [node_to_dict(latest[key]) for key in ordered]

    # ----------------------------
    # 物理清理
    # ----------------------------
    def purge_node(self, db: Session, node_id: str) -> PurgeReport:
        """物理删除一个待清理节点：目录递归清理子树，文件清理整个版本组中待删除的行。"""
        report = PurgeReport(node_id=node_id)
        node = node_crud.get(db, node_id)
        if node is None:
            logger.info("Purge skipped, node already removed", extra={"node_id": node_id})
            return report

        store = get_blob_store()
        project_id = node.project_id
        try:
            if node.type == NodeType.FOLDER.value:
                self._purge_folder(db, store, node, report, depth=0)
            else:
                rows = [
                    row
                    for row in node_crud.cohort_of(db, node, include_pending=True)
                    if row.status == NodeStatus.DELETED_PENDING.value
                ]
                self._purge_rows(db, store, rows, report)
            quota_service.apply(db, project_id, -report.freed_bytes)
            db.commit()
        except Exception:
            db.rollback()
            raise

        if report.failed_keys:
            logger.warning(
                "Purge finished with %s blob failure(s)",
                len(report.failed_keys),
                extra={"project_id": project_id, "node_id": node_id},
            )
        logger.info(
            "Purged %s row(s), freed %s bytes",
            report.deleted_rows,
            report.freed_bytes,
            extra={"project_id": project_id, "node_id": node_id},
        )
        return report

    def _purge_folder(
        self, db: Session, store: BlobStore, folder: StorageNode, report: PurgeReport, *, depth: int
    ) -> None:
        if depth > MAX_FOLDER_DEPTH:
            raise AppException("目录层级异常：超过最大深度或存在环")

        file_groups: Dict[str, List[StorageNode]] = {}
        for child in node_crud.children_of(db, folder.id):
            if child.type == NodeType.FOLDER.value:
                self._purge_folder(db, store, child, report, depth=depth + 1)
            else:
                file_groups.setdefault(child.name, []).append(child)

        for rows in file_groups.values():
            self._purge_rows(db, store, rows, report)

        # 子节点必须先于目录自身删除
        db.flush()
        db.delete(folder)
        db.flush()
        report.deleted_rows += 1

    def _purge_rows(self, db: Session, store: BlobStore, rows: List[StorageNode], report: PurgeReport) -> None:
        for row in rows:
            if row.blob_key:
                report.blob_deletes += 1
                try:
                    store.delete(row.blob_key)
                except Exception:
                    report.failed_keys.append(row.blob_key)
                    logger.warning(
                        "Blob delete failed during purge, removing row anyway",
                        exc_info=True,
                        extra={"project_id": row.project_id, "node_id": row.id, "blob_key": row.blob_key},
                    )
            report.freed_bytes += int(row.size or 0)
            report.deleted_rows += 1
            db.delete(row)


lifecycle_service = LifecycleService()
