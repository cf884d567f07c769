"""访问策略：集中维护管理员、项目成员、节点所有者与只读项目的判定。

所有变更类操作在落库/写对象存储之前调用这里的 ``ensure_*`` 方法，
失败时抛出 ForbiddenError，保证不会出现部分生效的情况。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.enums import WhitelistRole
from app.packages.drive.core.exceptions import ForbiddenError
from app.packages.drive.crud.project import project_member_crud
from app.packages.drive.crud.whitelist import whitelist_crud
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project


@dataclass(frozen=True)
class Identity:
    """当前请求的调用者身份（由外部认证服务签发的令牌解析而来）。"""

    user_id: str
    email: str
    is_admin: bool = False
    is_whitelisted: bool = False


def load_identity(db: Session, *, user_id: str, email: str) -> Identity:
    entry = whitelist_crud.get_by_email(db, email)
    return Identity(
        user_id=str(user_id),
        email=(email or "").strip().lower(),
        is_admin=entry is not None and (entry.role or "").lower() == WhitelistRole.ADMIN.value,
        is_whitelisted=entry is not None,
    )


def is_admin(identity: Optional[Identity]) -> bool:
    return bool(identity and identity.is_admin)


def is_project_owner(identity: Optional[Identity], project: Project) -> bool:
    return bool(identity and project.created_by and project.created_by == identity.user_id)


def is_project_member(db: Session, identity: Optional[Identity], project: Project) -> bool:
    if identity is None:
        return False
    if is_admin(identity) or is_project_owner(identity, project):
        return True
    return project_member_crud.is_member(db, project_id=project.id, email=identity.email)


def is_node_owner(identity: Optional[Identity], node: StorageNode) -> bool:
    if identity is None:
        return False
    if node.created_by and node.created_by == identity.user_id:
        return True
    return bool(node.owner_email and node.owner_email.lower() == identity.email)


def is_owner_or_admin(identity: Optional[Identity], node: StorageNode) -> bool:
    return is_admin(identity) or is_node_owner(identity, node)


def ensure_whitelisted(identity: Identity) -> None:
    if not identity.is_whitelisted:
        raise ForbiddenError("访问被拒绝：当前账号不在白名单中")


def ensure_admin(identity: Identity) -> None:
    if not is_admin(identity):
        raise ForbiddenError("仅管理员可执行该操作")


def ensure_project_member(db: Session, identity: Identity, project: Project) -> None:
    if not is_project_member(db, identity, project):
        raise ForbiddenError("无权访问该项目")


def ensure_project_manager(identity: Identity, project: Project) -> None:
    """项目设置类操作：项目创建者或管理员。"""
    if not (is_admin(identity) or is_project_owner(identity, project)):
        raise ForbiddenError("仅项目所有者或管理员可执行该操作")


def ensure_writable(identity: Identity, project: Project) -> None:
    """只读项目拒绝非管理员的一切变更。"""
    if project.effective_settings.get("read_only") and not is_admin(identity):
        raise ForbiddenError("该项目处于只读模式")


def ensure_owner_or_admin(identity: Identity, node: StorageNode, *, action: str = "操作") -> None:
    if not is_owner_or_admin(identity, node):
        raise ForbiddenError(f"仅所有者或管理员可{action}")
