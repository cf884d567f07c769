"""StorageNode CRUD：层级节点表的查询与写入。"""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from app.packages.drive.core.enums import NodeStatus, NodeType
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.node import StorageNode


def _filter_parent(query: Query, parent_id: Optional[str]) -> Query:
    # 项目根目录下的节点 parent_id 为 NULL，只能用 IS NULL 匹配
    if parent_id:
        return query.filter(StorageNode.parent_id == parent_id)
    return query.filter(StorageNode.parent_id.is_(None))


class CRUDStorageNode(CRUDBase[StorageNode]):
    def children(
        self,
        db: Session,
        *,
        project_id: str,
        parent_id: Optional[str],
        statuses: Optional[Iterable[NodeStatus]] = None,
    ) -> List[StorageNode]:
        """返回某目录的直接子节点，默认包含全部状态（清理流程需要）。"""
        query = self.query(db).filter(StorageNode.project_id == project_id)
        query = _filter_parent(query, parent_id)
        if statuses is not None:
            query = query.filter(StorageNode.status.in_([s.value for s in statuses]))
        return query.order_by(StorageNode.type.desc(), StorageNode.name.asc(), StorageNode.version.desc()).all()

    def children_of(self, db: Session, node_id: str) -> List[StorageNode]:
        return self.query(db).filter(StorageNode.parent_id == node_id).all()

    def get_folder(
        self,
        db: Session,
        *,
        project_id: str,
        parent_id: Optional[str],
        name: str,
        active_only: bool = True,
    ) -> Optional[StorageNode]:
        query = (
            self.query(db)
            .filter(StorageNode.project_id == project_id)
            .filter(StorageNode.type == NodeType.FOLDER.value)
            .filter(StorageNode.name == name)
        )
        if active_only:
            query = query.filter(StorageNode.status == NodeStatus.ACTIVE.value)
        else:
            query = query.filter(StorageNode.status != NodeStatus.DELETED_PENDING.value)
        query = _filter_parent(query, parent_id)
        return query.order_by(StorageNode.created_at.asc()).first()

    def versions(
        self,
        db: Session,
        *,
        project_id: str,
        parent_id: Optional[str],
        name: str,
        include_pending: bool = False,
    ) -> List[StorageNode]:
        """返回同一版本组的全部行，按 version 倒序（第一个即最新版本）。"""
        query = (
            self.query(db)
            .filter(StorageNode.project_id == project_id)
            .filter(StorageNode.type == NodeType.FILE.value)
            .filter(StorageNode.name == name)
        )
        query = _filter_parent(query, parent_id)
        if not include_pending:
            query = query.filter(StorageNode.status != NodeStatus.DELETED_PENDING.value)
        return query.order_by(StorageNode.version.desc()).all()

    def cohort_of(self, db: Session, node: StorageNode, *, include_pending: bool = False) -> List[StorageNode]:
        if node.type != NodeType.FILE.value:
            return [node]
        return self.versions(
            db,
            project_id=node.project_id,
            parent_id=node.parent_id,
            name=node.name,
            include_pending=include_pending,
        )

    def latest_version(
        self, db: Session, *, project_id: str, parent_id: Optional[str], name: str
    ) -> Optional[StorageNode]:
        rows = self.versions(db, project_id=project_id, parent_id=parent_id, name=name)
        return rows[0] if rows else None

    def sibling_exists(
        self,
        db: Session,
        *,
        project_id: str,
        parent_id: Optional[str],
        name: str,
        type: str,
        exclude_ids: Iterable[str] = (),
        active_only: bool = True,
    ) -> bool:
        """同目录下是否已有同名同类型节点。

        ``active_only=False`` 时回收站与待清理的行也算占用，文件改名/移动用它避免两个版本组合并。
        """
        query = (
            self.query(db)
            .filter(StorageNode.project_id == project_id)
            .filter(StorageNode.name == name)
            .filter(StorageNode.type == type)
        )
        if active_only:
            query = query.filter(StorageNode.status == NodeStatus.ACTIVE.value)
        query = _filter_parent(query, parent_id)
        excluded = list(exclude_ids)
        if excluded:
            query = query.filter(StorageNode.id.notin_(excluded))
        return db.query(query.exists()).scalar()

    def by_status(self, db: Session, *, status: NodeStatus, project_id: Optional[str] = None) -> List[StorageNode]:
        query = self.query(db).filter(StorageNode.status == status.value)
        if project_id:
            query = query.filter(StorageNode.project_id == project_id)
        return query.order_by(StorageNode.updated_at.desc()).all()

    def search(self, db: Session, *, project_id: str, keyword: str, limit: int) -> List[StorageNode]:
        pattern = f"%{keyword.lower()}%"
        return (
            self.query(db)
            .filter(StorageNode.project_id == project_id)
            .filter(StorageNode.status == NodeStatus.ACTIVE.value)
            .filter(func.lower(StorageNode.name).like(pattern))
            .order_by(StorageNode.name.asc(), StorageNode.version.desc())
            .limit(limit)
            .all()
        )

    def first_root_owner_email(self, db: Session, project_id: str) -> Optional[str]:
        """项目根目录下最早创建节点的所有者邮箱，作为项目动态通知的收件人。"""
        row = (
            db.query(StorageNode.owner_email)
            .filter(StorageNode.project_id == project_id)
            .filter(StorageNode.parent_id.is_(None))
            .filter(StorageNode.owner_email.isnot(None))
            .order_by(StorageNode.created_at.asc())
            .first()
        )
        return row[0] if row else None

    def blob_keys_of_project(self, db: Session, project_id: str) -> List[str]:
        rows = (
            db.query(StorageNode.blob_key)
            .filter(StorageNode.project_id == project_id)
            .filter(StorageNode.blob_key.isnot(None))
            .all()
        )
        return [row[0] for row in rows]

    def blob_key_in_use(self, db: Session, blob_key: str) -> bool:
        query = self.query(db).filter(StorageNode.blob_key == blob_key)
        return db.query(query.exists()).scalar()

    def delete_by_project(self, db: Session, project_id: str) -> int:
        return (
            self.query(db)
            .filter(StorageNode.project_id == project_id)
            .delete(synchronize_session=False)
        )

    def sum_file_sizes(self, db: Session, *, project_id: Optional[str] = None) -> int:
        """ACTIVE + TRASHED 文件大小之和，用于配额校准与统计。"""
        query = (
            db.query(func.coalesce(func.sum(StorageNode.size), 0))
            .filter(StorageNode.type == NodeType.FILE.value)
            .filter(StorageNode.status.in_([NodeStatus.ACTIVE.value, NodeStatus.TRASHED.value]))
        )
        if project_id:
            query = query.filter(StorageNode.project_id == project_id)
        return int(query.scalar() or 0)


node_crud = CRUDStorageNode(StorageNode)
