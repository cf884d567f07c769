"""项目管理：创建、列表、删除、设置与成员维护、配额查询与校准、全局统计。"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import HTTP_STATUS_BAD_REQUEST
from app.packages.drive.core.exceptions import AppException
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.node import node_crud
from app.packages.drive.crud.project import project_crud, project_member_crud
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import DEFAULT_PROJECT_SETTINGS, Project
from app.packages.drive.services.access_policy import (
    Identity,
    ensure_admin,
    ensure_project_manager,
    ensure_project_member,
    is_admin,
)
from app.packages.drive.services.blob_store import get_blob_store
from app.packages.drive.services.node_view import project_to_dict
from app.packages.drive.services.path_resolver import ProjectRef, resolve_project
from app.packages.drive.services.quota_service import quota_service


def _normalize_emails(emails: Optional[Iterable[str]]) -> List[str]:
    result: List[str] = []
    for email in emails or []:
        value = (email or "").strip().lower()
        if value and value not in result:
            result.append(value)
    return result


def _validate_settings(patch: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - set(DEFAULT_PROJECT_SETTINGS)
    if unknown:
        raise AppException(f"不支持的项目设置: {', '.join(sorted(unknown))}", HTTP_STATUS_BAD_REQUEST)
    limit = patch.get("version_retention_limit")
    if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit < 1):
        raise AppException("版本保留数量必须为正整数", HTTP_STATUS_BAD_REQUEST)
    return patch


class ProjectService:
    def create_project(
        self,
        db: Session,
        identity: Identity,
        *,
        name: str,
        description: Optional[str] = None,
        max_storage_bytes: Optional[int] = None,
        members: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        ensure_admin(identity)
        name = (name or "").strip()
        if not name:
            raise AppException("项目名称不能为空", HTTP_STATUS_BAD_REQUEST)
        if max_storage_bytes is not None and max_storage_bytes <= 0:
            raise AppException("存储上限必须大于 0", HTTP_STATUS_BAD_REQUEST)

        project = project_crud.create(
            db,
            {
                "name": name,
                "description": description,
                "max_storage_bytes": max_storage_bytes or get_settings().default_max_storage_bytes,
                "current_storage_bytes": 0,
                "settings": dict(DEFAULT_PROJECT_SETTINGS),
                "created_by": identity.user_id,
            },
            auto_commit=False,
        )
        member_emails = _normalize_emails([identity.email, *(members or [])])
        project_member_crud.add_many(db, project_id=project.id, emails=member_emails)
        db.commit()
        db.refresh(project)
        logger.info("Project created: %s", name, extra={"project_id": project.id})
        return project_to_dict(project, members=member_emails)

    def list_projects(self, db: Session, identity: Identity) -> List[Dict[str, Any]]:
        """管理员可见全部项目，普通用户只见自己创建或加入的项目。"""
        if is_admin(identity):
            projects = project_crud.list_all(db)
        else:
            ids = set(project_member_crud.project_ids_for(db, identity.email))
            projects = [
                project
                for project in project_crud.list_all(db)
                if project.id in ids or project.created_by == identity.user_id
            ]
        return [project_to_dict(project) for project in projects]

    def delete_project(self, db: Session, identity: Identity, project_ref: ProjectRef | str) -> Dict[str, Any]:
        """删除项目：先尽力删除对象存储中的全部文件，再删除节点、成员与项目行。"""
        ensure_admin(identity)
        project = resolve_project(db, project_ref)
        store = get_blob_store()
        failures = 0
        keys = node_crud.blob_keys_of_project(db, project.id)
        for key in keys:
            try:
                store.delete(key)
            except Exception:
                failures += 1
                logger.warning(
                    "Failed to delete blob while removing project",
                    exc_info=True,
                    extra={"project_id": project.id, "blob_key": key},
                )

        # 子节点引用父节点，逐层自底向上删除
        self._delete_nodes_bottom_up(db, project.id)
        project_member_crud.delete_by_project(db, project.id)
        project_crud.hard_delete(db, project, auto_commit=False)
        db.commit()
        logger.info("Project deleted", extra={"project_id": project.id})
        return {"id": project.id, "deleted_blobs": len(keys) - failures, "failed_blobs": failures}

    def _delete_nodes_bottom_up(self, db: Session, project_id: str) -> None:
        rows = node_crud.query(db).filter(StorageNode.project_id == project_id).all()
        children: Dict[Optional[str], List[StorageNode]] = {}
        for row in rows:
            children.setdefault(row.parent_id, []).append(row)

        ordered: List[StorageNode] = []
        stack = list(children.get(None, []))
        while stack:
            row = stack.pop()
            ordered.append(row)
            stack.extend(children.get(row.id, []))
        # 孤立行（父节点不在本项目）也一并删除
        visited = {row.id for row in ordered}
        ordered.extend(row for row in rows if row.id not in visited)

        for row in reversed(ordered):
            db.delete(row)
            db.flush()

    def get_project_settings(self, db: Session, identity: Identity, project_ref: ProjectRef | str) -> Dict[str, Any]:
        project = resolve_project(db, project_ref)
        ensure_project_member(db, identity, project)
        return project_to_dict(project, members=project_member_crud.emails(db, project.id))

    def update_project_settings(
        self,
        db: Session,
        identity: Identity,
        project_ref: ProjectRef | str,
        *,
        settings: Optional[Dict[str, Any]] = None,
        members: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
        max_storage_bytes: Optional[int] = None,
    ) -> Dict[str, Any]:
        """浅合并项目设置；传入 ``members`` 时按差异增删成员，创建者本人操作时不会移除自己。"""
        project = resolve_project(db, project_ref)
        ensure_project_manager(identity, project)

        if settings:
            merged = {**project.effective_settings, **_validate_settings(dict(settings))}
            project.settings = merged
        if description is not None:
            project.description = description
        if max_storage_bytes is not None:
            ensure_admin(identity)
            if max_storage_bytes <= 0:
                raise AppException("存储上限必须大于 0", HTTP_STATUS_BAD_REQUEST)
            project.max_storage_bytes = max_storage_bytes
        db.add(project)

        if members is not None:
            desired = set(_normalize_emails(members))
            current = set(project_member_crud.emails(db, project.id))
            if project.created_by == identity.user_id:
                desired.add(identity.email)
            project_member_crud.add_many(db, project_id=project.id, emails=sorted(desired - current))
            project_member_crud.remove_many(db, project_id=project.id, emails=sorted(current - desired))

        db.commit()
        db.refresh(project)
        return project_to_dict(project, members=project_member_crud.emails(db, project.id))

    def reconcile_usage(self, db: Session, identity: Identity, project_ref: ProjectRef | str) -> Dict[str, Any]:
        project = resolve_project(db, project_ref)
        ensure_project_manager(identity, project)
        return quota_service.reconcile(db, project).to_dict()

    def stats(self, db: Session, identity: Identity) -> Dict[str, Any]:
        ensure_admin(identity)
        projects: List[Project] = project_crud.list_all(db)
        return {
            "project_count": len(projects),
            "total_storage_bytes": project_crud.total_usage(db),
            "total_file_bytes": node_crud.sum_file_sizes(db),
            "projects": [
                {
                    "id": project.id,
                    "name": project.name,
                    "current_storage_bytes": int(project.current_storage_bytes or 0),
                    "max_storage_bytes": int(project.max_storage_bytes or 0),
                }
                for project in projects
            ],
        }


project_service = ProjectService()
