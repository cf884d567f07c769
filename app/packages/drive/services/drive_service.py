"""网盘浏览与节点管理：列表、新建目录、重命名、移动、共享、公开访问、下载与搜索。"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_UNAUTHORIZED,
    SEARCH_RESULT_LIMIT,
)
from app.packages.drive.core.enums import NodeStatus, NodeType, SharingScope
from app.packages.drive.core.exceptions import AppException, ForbiddenError, NotFoundError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import hash_share_password, verify_share_password
from app.packages.drive.crud.node import node_crud
from app.packages.drive.crud.project import project_crud
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project
from app.packages.drive.services.access_policy import (
    Identity,
    ensure_owner_or_admin,
    ensure_project_member,
    ensure_writable,
    is_node_owner,
    is_project_member,
)
from app.packages.drive.services.blob_store import get_blob_store
from app.packages.drive.services.node_view import node_to_dict, project_to_dict
from app.packages.drive.services.path_resolver import (
    Breadcrumb,
    ProjectRef,
    ancestor_chain,
    folder_path,
    is_same_or_descendant,
    require_folder,
    resolve_path,
    resolve_project,
    split_path,
    validate_node_name,
)


def latest_per_cohort(rows: List[StorageNode]) -> List[StorageNode]:
    """同一目录下的文件按名称只保留最大版本；``rows`` 需已按 version 倒序。"""
    seen: set = set()
    result: List[StorageNode] = []
    for row in rows:
        if row.type == NodeType.FILE.value:
            key = (row.parent_id, row.name)
            if key in seen:
                continue
            seen.add(key)
        result.append(row)
    return result


class DriveService:
    def project_for(self, db: Session, identity: Identity, project_ref: ProjectRef | str) -> Project:
        project = resolve_project(db, project_ref)
        ensure_project_member(db, identity, project)
        return project

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
    # 查询
    # ----------------------------
    def list_children(
        self,
        db: Session,
        identity: Identity,
        *,
        project_ref: ProjectRef | str,
        path: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """列出目录内容：目录在前、按名称排序，文件只展示各版本组的最新版本。"""
        project = self.project_for(db, identity, project_ref)

        segments = split_path(path)
        breadcrumbs: List[Breadcrumb] = []
        folder_id: Optional[str] = None
        if segments:
            resolved = resolve_path(db, project, segments)
            folder_id = resolved.folder_id
            breadcrumbs = resolved.breadcrumbs
        elif parent_id:
            folder = require_folder(db, project, parent_id)
            folder_id = folder.id
            breadcrumbs = [Breadcrumb(id=item.id, name=item.name) for item in ancestor_chain(db, folder)]
            breadcrumbs.append(Breadcrumb(id=folder.id, name=folder.name))

        rows = node_crud.children(db, project_id=project.id, parent_id=folder_id, statuses=[NodeStatus.ACTIVE])
        return {
            "nodes": [node_to_dict(row) for row in latest_per_cohort(rows)],
            "current_folder_id": folder_id,
            "breadcrumbs": [asdict(item) for item in breadcrumbs],
            "project": project_to_dict(project),
        }

    def search(self, db: Session, identity: Identity, *, project_ref: ProjectRef | str, keyword: str) -> List[dict]:
        keyword = (keyword or "").strip()
        if not keyword:
            raise AppException("搜索关键字不能为空", HTTP_STATUS_BAD_REQUEST)
        project = self.project_for(db, identity, project_ref)

        rows = node_crud.search(db, project_id=project.id, keyword=keyword, limit=SEARCH_RESULT_LIMIT)
        results = []
        for row in latest_per_cohort(rows):
            item = node_to_dict(row)
            item["path_tokens"] = [parent.name for parent in ancestor_chain(db, row)]
            results.append(item)
        return results

    # ----------------------------
    # 变更
    # ----------------------------
    def create_folder(
        self,
        db: Session,
        identity: Identity,
        *,
        project_ref: ProjectRef | str,
        parent_id: Optional[str],
        name: str,
    ) -> StorageNode:
        """新建目录；同一父目录下已有同名目录时直接返回已有目录。"""
        name = validate_node_name(name)
        project = self.project_for(db, identity, project_ref)
        ensure_writable(identity, project)
        parent = require_folder(db, project, parent_id)
        parent_id = parent.id if parent else None

        existing = node_crud.get_folder(db, project_id=project.id, parent_id=parent_id, name=name, active_only=False)
        if existing is not None:
            if existing.status == NodeStatus.ACTIVE.value:
                return existing
            raise AppException("回收站中存在同名文件夹，请先恢复或彻底删除", HTTP_STATUS_CONFLICT)

        try:
            folder = node_crud.create(
                db,
                {
                    "project_id": project.id,
                    "parent_id": parent_id,
                    "name": name,
                    "type": NodeType.FOLDER.value,
                    "size": 0,
                    "created_by": identity.user_id,
                    "owner_email": identity.email,
                    "sharing_scope": SharingScope.PRIVATE.value,
                    "version": 1,
                },
            )
        except IntegrityError:
            db.rollback()
            existing = node_crud.get_folder(db, project_id=project.id, parent_id=parent_id, name=name)
            if existing is not None:
                return existing
            raise AppException("同名文件夹正在清理中，请稍后重试", HTTP_STATUS_CONFLICT)
        logger.info("Folder created", extra={"project_id": project.id, "node_id": folder.id})
        return folder

    def rename(self, db: Session, identity: Identity, node_id: str, new_name: str) -> StorageNode:
        """重命名；文件会连同全部历史版本一起改名。"""
        new_name = validate_node_name(new_name)
        node = self._get_live_node(db, node_id)
        project = self._get_project(db, node)
        ensure_owner_or_admin(identity, node, action="重命名该节点")
        ensure_writable(identity, project)
        if node.name == new_name:
            return node

        cohort = node_crud.cohort_of(db, node)
        if node_crud.sibling_exists(
            db,
            project_id=node.project_id,
            parent_id=node.parent_id,
            name=new_name,
            type=node.type,
            exclude_ids=[row.id for row in cohort],
            active_only=node.type == NodeType.FOLDER.value,
        ):
            raise AppException("同一目录下已存在同名节点", HTTP_STATUS_CONFLICT)

        for row in cohort:
            row.name = new_name
            db.add(row)
        self._commit_or_conflict(db, "同一目录下已存在同名节点")
        db.refresh(node)
        return node

    def move(self, db: Session, identity: Identity, node_id: str, target_parent_id: Optional[str]) -> StorageNode:
        """移动到同项目的另一个目录（``None`` 为根目录）；文件会连同全部历史版本一起移动。"""
        node = self._get_live_node(db, node_id)
        project = self._get_project(db, node)
        ensure_owner_or_admin(identity, node, action="移动该节点")
        ensure_writable(identity, project)

        target = require_folder(db, project, target_parent_id)
        if target is not None and target.status != NodeStatus.ACTIVE.value:
            raise AppException("目标目录不可用", HTTP_STATUS_BAD_REQUEST)
        if node.type == NodeType.FOLDER.value and is_same_or_descendant(db, target, node.id):
            raise AppException("不能将文件夹移动到自身或其子目录中", HTTP_STATUS_BAD_REQUEST)

        new_parent_id = target.id if target else None
        if new_parent_id == node.parent_id:
            return node

        cohort = node_crud.cohort_of(db, node)
        if node_crud.sibling_exists(
            db,
            project_id=node.project_id,
            parent_id=new_parent_id,
            name=node.name,
            type=node.type,
            exclude_ids=[row.id for row in cohort],
            active_only=node.type == NodeType.FOLDER.value,
        ):
            raise AppException("目标目录下已存在同名节点", HTTP_STATUS_CONFLICT)

        for row in cohort:
            row.parent_id = new_parent_id
            db.add(row)
        self._commit_or_conflict(db, "目标目录下已存在同名节点")
        db.refresh(node)
        return node

    def update_sharing(
        self,
        db: Session,
        identity: Identity,
        node_id: str,
        *,
        scope: str,
        password: Optional[str] = None,
    ) -> StorageNode:
        node = self._get_live_node(db, node_id)
        project = self._get_project(db, node)
        ensure_owner_or_admin(identity, node, action="修改共享设置")
        ensure_writable(identity, project)
        try:
            sharing_scope = SharingScope((scope or "").upper())
        except ValueError as exc:
            raise AppException(f"不支持的共享范围: {scope}", HTTP_STATUS_BAD_REQUEST) from exc

        node.sharing_scope = sharing_scope.value
        if sharing_scope == SharingScope.PUBLIC and password:
            node.share_password = hash_share_password(password)
        elif sharing_scope == SharingScope.PRIVATE or password == "":
            node.share_password = None
        db.add(node)
        db.commit()
        db.refresh(node)
        return node

    def _commit_or_conflict(self, db: Session, msg: str) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise AppException(msg, HTTP_STATUS_CONFLICT) from exc

    # ----------------------------
    # 公开访问与下载
    # ----------------------------
    def _authorize_read(
        self,
        db: Session,
        node: StorageNode,
        identity: Optional[Identity],
        password: Optional[str],
    ) -> bool:
        """返回调用方是否为项目成员；非成员只能访问公开且仍处于 ACTIVE 的节点。"""
        if identity is not None:
            if is_node_owner(identity, node):
                return True
            project = project_crud.get(db, node.project_id)
            if project is not None and is_project_member(db, identity, project):
                return True

        if node.status != NodeStatus.ACTIVE.value:
            raise NotFoundError("节点不存在")
        if node.sharing_scope == SharingScope.PUBLIC.value:
            if node.share_password:
                if not password:
                    raise ForbiddenError("需要访问密码", data={"password_required": True})
                if not verify_share_password(password, node.share_password):
                    raise ForbiddenError("访问密码错误", data={"password_required": True})
            return False
        if identity is None:
            raise AppException("未登录", HTTP_STATUS_UNAUTHORIZED)
        raise ForbiddenError("无权访问该节点")

    def resolve_public_node(
        self,
        db: Session,
        node_id: str,
        *,
        identity: Optional[Identity] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        """共享链接落地：成员额外获得所在目录的路径，便于跳转到网盘视图。"""
        node = self._get_live_node(db, node_id)
        is_member = self._authorize_read(db, node, identity, password)
        data = node_to_dict(node)
        data["is_member"] = is_member
        if is_member:
            folder = node if node.type == NodeType.FOLDER.value else (
                node_crud.get(db, node.parent_id) if node.parent_id else None
            )
            data["project_uuid"] = node.project_id
            data["folder_path"] = "/".join(quote(name, safe="") for name in folder_path(db, folder))
        return data

    def download(
        self,
        db: Session,
        node_id: str,
        *,
        identity: Optional[Identity] = None,
        password: Optional[str] = None,
    ) -> Tuple[StorageNode, Iterator[bytes]]:
        node = self._get_live_node(db, node_id)
        self._authorize_read(db, node, identity, password)
        if node.type != NodeType.FILE.value:
            raise AppException("只能下载文件", HTTP_STATUS_BAD_REQUEST)
        if not node.blob_key:
            raise NotFoundError("该版本已被保留策略淘汰，文件内容不可用")
        return node, get_blob_store().get(node.blob_key)


drive_service = DriveService()
