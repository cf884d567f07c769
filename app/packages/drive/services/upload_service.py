"""上传流程：申请上传地址、服务端代理写入、上传完成登记，以及版本回滚。

一次上传分三步：
1. ``plan_upload``：权限与只读校验 -> 冲突判定 -> 配额快速失败 -> 生成对象 key，签发上传地址
   与登记凭证（commit token，绑定 key、目录、文件名、大小与目标版本）；
2. 客户端把文件 PUT 到上传地址（S3 预签名地址，或 LOCAL 存储的服务端代理接口），请求体大小须与申请一致；
3. ``commit_write``：校验登记凭证 -> HEAD 校验对象存在且大小一致 -> 重新判定（目标版本变化则 409）
   -> 写节点行并累加配额（同一事务） -> 覆盖写时提交成功后再删除旧对象。

提交后的版本保留与动态通知由 ``run_post_commit`` 在后台执行，失败只记录日志。
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    BLOB_KEY_ROOT,
    COMMIT_TOKEN_PURPOSE,
    DEFAULT_CONTENT_TYPE,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_UNAUTHORIZED,
    UPLOAD_TOKEN_PURPOSE,
)
from app.packages.drive.core.enums import ActivityAction, NodeStatus, NodeType, SharingScope, WriteDecision, WriteResolution
from app.packages.drive.core.exceptions import (
    AppException,
    BlobIntegrityError,
    ForbiddenError,
    NotFoundError,
    WriteConflictError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import create_temporary_token, decode_and_verify_token
from app.packages.drive.core.timezone import now as tz_now
from app.packages.drive.crud.node import node_crud
from app.packages.drive.crud.project import project_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project
from app.packages.drive.services.access_policy import (
    Identity,
    ensure_owner_or_admin,
    ensure_project_member,
    ensure_whitelisted,
    ensure_writable,
)
from app.packages.drive.services.blob_store import get_blob_store
from app.packages.drive.services.notification_service import ActivityEvent, notification_service
from app.packages.drive.services.path_resolver import (
    ProjectRef,
    folder_path,
    require_folder,
    resolve_project,
    validate_node_name,
)
from app.packages.drive.services.quota_service import quota_service
from app.packages.drive.services.retention_service import retention_service
from app.packages.drive.services.version_resolver import (
    WritePlan,
    conflict_payload,
    parse_resolution,
    plan_write,
)

_UNSAFE_NAME_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def sanitize_project_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name or "").lower()


def build_blob_key(project_name: str, folder_names: List[str], version: int, filename: str) -> str:
    """``projects/{项目名}/{目录路径/}{随机前缀}_v{版本}_{文件名}``，每次上传都会得到新的 key。"""
    folder = "".join(f"{name}/" for name in folder_names)
    prefix = uuid.uuid4().hex[:8]
    return f"{BLOB_KEY_ROOT}/{sanitize_project_name(project_name)}/{folder}{prefix}_v{version}_{filename}"


@dataclass
class CommitResult:
    node: StorageNode
    plan: WritePlan
    project_id: str
    action: ActivityAction


class UploadService:
    def _prepare(
        self,
        db: Session,
        identity: Identity,
        project_ref: ProjectRef | str,
        parent_id: Optional[str],
    ):
        ensure_whitelisted(identity)
        project = resolve_project(db, project_ref)
        ensure_project_member(db, identity, project)
        ensure_writable(identity, project)
        parent = require_folder(db, project, parent_id)
        if parent is not None and parent.status != NodeStatus.ACTIVE.value:
            raise AppException("目标目录不可用", HTTP_STATUS_BAD_REQUEST)
        return project, parent

    def plan_upload(
        self,
        db: Session,
        identity: Identity,
        *,
        project_ref: ProjectRef | str,
        parent_id: Optional[str],
        filename: str,
        file_size: int,
        file_type: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> Dict[str, Any]:
        filename = validate_node_name(filename)
        if file_size is None or file_size < 0:
            raise AppException("文件大小不合法", HTTP_STATUS_BAD_REQUEST)
        project, parent = self._prepare(db, identity, project_ref, parent_id)
        requested = parse_resolution(resolution)

        plan = plan_write(
            db,
            project_id=project.id,
            parent_id=parent.id if parent else None,
            filename=filename,
            incoming_size=file_size,
            resolution=requested,
            identity=identity,
        )
        if plan.decision == WriteDecision.CONFLICT:
            raise WriteConflictError(plan.conflict)
        quota_service.check_and_reserve(project, plan.size_delta)

        key = build_blob_key(project.name, folder_path(db, parent), plan.target_version, filename)
        ttl = get_settings().upload_url_ttl_seconds
        url = get_blob_store().issue_upload_url(key, file_type or DEFAULT_CONTENT_TYPE, ttl, size=file_size)
        commit_token = create_temporary_token(
            {
                "purpose": COMMIT_TOKEN_PURPOSE,
                "user_id": identity.user_id,
                "project_id": project.id,
                "parent_id": parent.id if parent else None,
                "filename": filename,
                "key": key,
                "size": file_size,
                "version": plan.target_version,
                "resolution": requested.value if requested else None,
            },
            expires_seconds=ttl,
        )
        return {
            "url": url,
            "key": key,
            "commit_token": commit_token,
            "resolved_project_id": project.id,
            "target_version": plan.target_version,
            "overwrite_node_id": plan.overwrite_node_id,
            "size_delta": plan.size_delta,
            "decision": plan.decision.value,
        }

    def receive_proxy_upload(
        self, db: Session, token: str, body: bytes, content_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """LOCAL 存储的代理上传：凭短期令牌把请求体写入令牌中指定的 key。

        请求体大小必须等于申请时的大小；key 一旦登记到节点表，令牌即失效。
        """
        payload = decode_and_verify_token(token or "")
        if not payload or payload.get("purpose") != UPLOAD_TOKEN_PURPOSE or not payload.get("key"):
            raise AppException("上传地址无效或已过期", HTTP_STATUS_UNAUTHORIZED)
        key = payload["key"]
        planned = payload.get("size")
        if planned is not None and len(body) != int(planned):
            raise AppException(
                f"上传内容大小与申请时不一致（申请 {planned}，实际 {len(body)}）", HTTP_STATUS_BAD_REQUEST
            )
        if node_crud.blob_key_in_use(db, key):
            raise AppException("该上传地址已完成登记，不能重复写入", HTTP_STATUS_CONFLICT)
        get_blob_store().put(key, body, content_type or payload.get("content_type"))
        logger.info("Proxy upload stored %s bytes", len(body), extra={"blob_key": key})
        return {"key": key, "size": len(body)}

    def _verify_commit_token(self, token: str, identity: Identity) -> Dict[str, Any]:
        payload = decode_and_verify_token(token or "")
        if not payload or payload.get("purpose") != COMMIT_TOKEN_PURPOSE:
            raise AppException("上传凭证无效或已过期", HTTP_STATUS_BAD_REQUEST)
        if payload.get("user_id") != identity.user_id:
            raise ForbiddenError("上传凭证不属于当前用户")
        return payload

    def commit_write(
        self,
        db: Session,
        identity: Identity,
        *,
        project_ref: ProjectRef | str,
        parent_id: Optional[str],
        key: str,
        filename: str,
        size: int,
        commit_token: str,
        mime_type: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> CommitResult:
        filename = validate_node_name(filename)
        project, parent = self._prepare(db, identity, project_ref, parent_id)
        parent_id = parent.id if parent else None
        requested = parse_resolution(resolution)

        ticket = self._verify_commit_token(commit_token, identity)
        if (
            ticket.get("key") != key
            or ticket.get("project_id") != project.id
            or ticket.get("parent_id") != parent_id
            or ticket.get("filename") != filename
            or ticket.get("resolution") != (requested.value if requested else None)
        ):
            raise AppException("提交参数与上传凭证不符", HTTP_STATUS_BAD_REQUEST)
        planned_size = int(ticket.get("size") or 0)
        if size != planned_size:
            raise BlobIntegrityError(key, f"大小与申请时不一致（申请 {planned_size}，提交 {size}）")
        if node_crud.blob_key_in_use(db, key):
            raise AppException("该对象已被登记", HTTP_STATUS_CONFLICT)

        store = get_blob_store()
        head = store.head(key)
        if head is None:
            raise BlobIntegrityError(key)
        if head.size != size:
            raise BlobIntegrityError(key, f"大小不一致（声明 {size}，实际 {head.size}）")

        plan = plan_write(
            db,
            project_id=project.id,
            parent_id=parent_id,
            filename=filename,
            incoming_size=size,
            resolution=requested,
            identity=identity,
        )
        if plan.decision == WriteDecision.CONFLICT:
            raise WriteConflictError(plan.conflict)
        if plan.target_version != int(ticket.get("version") or 0):
            # 申请之后同名文件又有了新的写入，key 中的版本号已过时，需要重新申请
            if plan.latest is not None:
                raise WriteConflictError(conflict_payload(plan.latest, identity))
            raise AppException("文件版本已变化，请重新申请上传", HTTP_STATUS_CONFLICT)
        quota_service.check_and_reserve(project, plan.size_delta)

        old_blob_key: Optional[str] = None
        try:
            if plan.decision == WriteDecision.OVERWRITE:
                node = node_crud.get(db, plan.overwrite_node_id)
                if node.blob_key != key:
                    old_blob_key = node.blob_key
                node.blob_key = key
                node.size = size
                node.mime_type = mime_type or node.mime_type
                db.add(node)
                db.flush()
            else:
                node = node_crud.create(
                    db,
                    {
                        "project_id": project.id,
                        "parent_id": parent_id,
                        "name": filename,
                        "type": NodeType.FILE.value,
                        "blob_key": key,
                        "size": size,
                        "mime_type": mime_type or head.content_type or DEFAULT_CONTENT_TYPE,
                        "created_by": identity.user_id,
                        "owner_email": identity.email,
                        "sharing_scope": SharingScope.PRIVATE.value,
                        "version": plan.target_version,
                    },
                    auto_commit=False,
                )
            quota_service.apply(db, project.id, plan.size_delta)
            db.commit()
        except IntegrityError as exc:
            # 并发写入抢占了同一版本号：回到冲突判定，由调用方重新选择处理方式
            db.rollback()
            latest = node_crud.latest_version(db, project_id=project.id, parent_id=parent_id, name=filename)
            if latest is None:
                raise AppException("并发写入冲突，请重试", HTTP_STATUS_CONFLICT) from exc
            raise WriteConflictError(conflict_payload(latest, identity)) from exc
        db.refresh(node)

        if old_blob_key:
            try:
                store.delete(old_blob_key)
            except Exception:
                logger.warning(
                    "Failed to delete replaced blob after overwrite",
                    exc_info=True,
                    extra={"project_id": project.id, "node_id": node.id, "blob_key": old_blob_key},
                )

        if plan.decision == WriteDecision.OVERWRITE:
            action = ActivityAction.OVERWRITTEN
        elif requested == WriteResolution.UPDATE:
            action = ActivityAction.VERSION_UPDATED
        else:
            action = ActivityAction.UPLOADED
        logger.info(
            "Upload committed: %s v%s (%s)",
            filename,
            node.version,
            plan.decision.value,
            extra={"project_id": project.id, "node_id": node.id, "blob_key": key},
        )
        return CommitResult(node=node, plan=plan, project_id=project.id, action=action)

    def rollback_to_version(self, db: Session, identity: Identity, node_id: str) -> StorageNode:
        """把某个历史版本恢复为新的最新版本：复制对象到新 key 并追加一行，旧版本保持不变。"""
        target = node_crud.get(db, node_id)
        if target is None or target.status == NodeStatus.DELETED_PENDING.value:
            raise NotFoundError("版本不存在")
        if target.type != NodeType.FILE.value:
            raise AppException("只有文件支持版本回滚", HTTP_STATUS_BAD_REQUEST)
        project = project_crud.get(db, target.project_id)
        if project is None:
            raise NotFoundError("项目不存在")
        ensure_project_member(db, identity, project)
        ensure_owner_or_admin(identity, target, action="回滚该文件")
        ensure_writable(identity, project)
        if not target.blob_key:
            raise AppException("该版本已被保留策略淘汰，无法回滚", HTTP_STATUS_BAD_REQUEST)

        size = int(target.size or 0)
        plan = plan_write(
            db,
            project_id=project.id,
            parent_id=target.parent_id,
            filename=target.name,
            incoming_size=size,
            resolution=WriteResolution.UPDATE,
            identity=identity,
        )
        quota_service.check_and_reserve(project, plan.size_delta)

        parent = node_crud.get(db, target.parent_id) if target.parent_id else None
        new_key = build_blob_key(project.name, folder_path(db, parent), plan.target_version, target.name)
        store = get_blob_store()
        store.copy(target.blob_key, new_key)

        try:
            node = node_crud.create(
                db,
                {
                    "project_id": project.id,
                    "parent_id": target.parent_id,
                    "name": target.name,
                    "type": NodeType.FILE.value,
                    "blob_key": new_key,
                    "size": size,
                    "mime_type": target.mime_type,
                    "created_by": identity.user_id,
                    "owner_email": identity.email,
                    "sharing_scope": SharingScope.PRIVATE.value,
                    "version": plan.target_version,
                },
                auto_commit=False,
            )
            quota_service.apply(db, project.id, plan.size_delta)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            try:
                store.delete(new_key)
            except Exception:
                logger.warning("Failed to clean up copied blob", exc_info=True, extra={"blob_key": new_key})
            raise AppException("并发写入冲突，请重试", HTTP_STATUS_CONFLICT) from exc
        db.refresh(node)
        logger.info(
            "Rolled back %s from v%s to new v%s",
            target.name,
            target.version,
            node.version,
            extra={"project_id": project.id, "node_id": node.id},
        )
        return node

    def list_versions(self, db: Session, identity: Identity, node_id: str) -> List[StorageNode]:
        node = node_crud.get(db, node_id)
        if node is None or node.status == NodeStatus.DELETED_PENDING.value:
            raise NotFoundError("节点不存在")
        project = project_crud.get(db, node.project_id)
        if project is None:
            raise NotFoundError("项目不存在")
        ensure_project_member(db, identity, project)
        return node_crud.cohort_of(db, node)

    def check_quota(
        self, db: Session, identity: Identity, *, project_ref: ProjectRef | str, size_delta: int = 0
    ) -> Dict[str, Any]:
        project = resolve_project(db, project_ref)
        ensure_project_member(db, identity, project)
        current = quota_service.status(project)
        data = current.to_dict()
        data["allowed"] = size_delta <= 0 or current.current_storage_bytes + size_delta <= current.max_storage_bytes
        return data


def _notify_activity(db: Session, project: Project, *, user_id: str, user_email: str, filename: str, action: ActivityAction) -> None:
    if not project.effective_settings.get("notify_on_activity"):
        return
    if project.created_by and project.created_by == user_id:
        return
    recipient = node_crud.first_root_owner_email(db, project.id)
    if not recipient:
        return
    notification_service.notify(
        ActivityEvent(
            to=recipient,
            project_id=project.id,
            project_name=project.name,
            user_email=user_email,
            action=action,
            file_name=filename,
            timestamp=tz_now().isoformat(),
        )
    )


def run_post_commit(
    *,
    project_id: str,
    parent_id: Optional[str],
    filename: str,
    user_id: str,
    user_email: str,
    action: ActivityAction,
    silent: bool = False,
) -> None:
    """上传完成后的异步收尾：版本保留与动态通知。使用独立会话，失败只记录日志。"""
    db = db_session.SessionLocal()
    try:
        project = project_crud.get(db, project_id)
        if project is None:
            return
        limit = project.effective_settings.get("version_retention_limit")
        try:
            retention_service.enforce_retention(
                db, project_id=project_id, parent_id=parent_id, filename=filename, limit=limit
            )
        except Exception:
            db.rollback()
            logger.exception("Version retention failed for %s", filename, extra={"project_id": project_id})

        if not silent:
            try:
                _notify_activity(db, project, user_id=user_id, user_email=user_email, filename=filename, action=action)
            except Exception:
                logger.exception("Activity notification failed", extra={"project_id": project_id})
    finally:
        db.close()


upload_service = UploadService()
