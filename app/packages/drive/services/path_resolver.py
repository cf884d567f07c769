"""路径解析：把项目引用与以 '/' 分隔的目录路径翻译为节点 ID 链。

- 项目引用可以是 UUID 或项目名称，在 API 边界处一次性解析为 ``ById``/``ByName``；
- 每个路径段先做百分号解码，再在“同项目 + 上一级目录 + 类型为 FOLDER”范围内精确匹配；
- 任一段不存在即返回 404，不会自动创建；
- 本模块无副作用，可重复调用，不做缓存。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Union
from urllib.parse import unquote

from sqlalchemy.orm import Session

from app.packages.drive.core.constants import MAX_FOLDER_DEPTH
from app.packages.drive.core.enums import NodeStatus, NodeType
from app.packages.drive.core.exceptions import AppException, NotFoundError
from app.packages.drive.crud.node import node_crud
from app.packages.drive.crud.project import project_crud
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass(frozen=True)
class ById:
    project_id: str


@dataclass(frozen=True)
class ByName:
    name: str


ProjectRef = Union[ById, ByName]


def parse_project_ref(raw: str) -> ProjectRef:
    value = (raw or "").strip()
    if not value:
        raise AppException("缺少项目上下文")
    if _UUID_RE.match(value):
        return ById(value.lower())
    return ByName(unquote(value))


def resolve_project(db: Session, ref: ProjectRef | str) -> Project:
    """把项目引用解析为项目实体；同名项目存在多个时取最早创建的一个。"""
    if isinstance(ref, str):
        ref = parse_project_ref(ref)
    if isinstance(ref, ById):
        project = project_crud.get(db, ref.project_id)
    else:
        project = project_crud.first_by_name(db, ref.name)
    if project is None:
        raise NotFoundError("项目不存在")
    return project


@dataclass
class Breadcrumb:
    id: str
    name: str


@dataclass
class ResolvedPath:
    project: Project
    folder_id: Optional[str]
    breadcrumbs: List[Breadcrumb] = field(default_factory=list)


def split_path(path: Optional[str]) -> List[str]:
    return [unquote(segment) for segment in (path or "").split("/") if segment]


def validate_node_name(raw: Optional[str]) -> str:
    """节点名称：去除首尾空白，不能为空、不能包含 '/'，也不能是 '.' 或 '..'。"""
    name = (raw or "").strip()
    if not name:
        raise AppException("名称不能为空")
    if "/" in name or name in {".", ".."}:
        raise AppException("名称包含非法字符")
    if len(name) > 255:
        raise AppException("名称过长")
    return name


def resolve_path(db: Session, project: Project, segments: List[str]) -> ResolvedPath:
    parent_id: Optional[str] = None
    chain: List[Breadcrumb] = []
    for segment in segments:
        folder = node_crud.get_folder(db, project_id=project.id, parent_id=parent_id, name=segment)
        if folder is None:
            raise NotFoundError(f"目录 '{segment}' 在项目中不存在")
        parent_id = folder.id
        chain.append(Breadcrumb(id=folder.id, name=folder.name))
    return ResolvedPath(project=project, folder_id=parent_id, breadcrumbs=chain)


def require_folder(db: Session, project: Project, folder_id: Optional[str]) -> Optional[StorageNode]:
    """校验目标目录属于当前项目且仍可用；``None`` 表示项目根目录。"""
    if not folder_id:
        return None
    folder = node_crud.get(db, folder_id)
    if (
        folder is None
        or folder.project_id != project.id
        or folder.type != NodeType.FOLDER.value
        or folder.status == NodeStatus.DELETED_PENDING.value
    ):
        raise NotFoundError("目标目录不存在")
    return folder


def ancestor_chain(db: Session, node: StorageNode) -> List[StorageNode]:
    """返回从项目根到 ``node`` 父目录的祖先链（不含自身），并校验不跨项目。"""
    chain: List[StorageNode] = []
    parent_id = node.parent_id
    depth = 0
    while parent_id:
        if depth >= MAX_FOLDER_DEPTH:
            raise AppException("目录层级异常：超过最大深度或存在环")
        parent = node_crud.get(db, parent_id)
        if parent is None:
            break
        if parent.project_id != node.project_id:
            raise AppException("目录层级异常：祖先节点跨越项目边界")
        chain.append(parent)
        parent_id = parent.parent_id
        depth += 1
    chain.reverse()
    return chain


def folder_path(db: Session, folder: Optional[StorageNode]) -> List[str]:
    """目录名称序列（根 -> folder），根目录返回空列表。"""
    if folder is None:
        return []
    return [item.name for item in ancestor_chain(db, folder)] + [folder.name]


def is_same_or_descendant(db: Session, candidate: Optional[StorageNode], ancestor_id: str) -> bool:
    """判断 ``candidate`` 是否就是 ``ancestor_id`` 或位于其子树中（移动时防止成环）。"""
    if candidate is None:
        return False
    if candidate.id == ancestor_id:
        return True
    return any(item.id == ancestor_id for item in ancestor_chain(db, candidate))
