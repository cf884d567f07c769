"""节点与项目的对外序列化。"""

from __future__ import annotations

from typing import Any, Dict, Optional

from app.packages.drive.core.timezone import isoformat
from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project


def node_to_dict(node: StorageNode) -> Dict[str, Any]:
    # 共享密码只暴露“是否设置”，不回传哈希；对象 key 同样只给出是否存在
    return {
        "id": node.id,
        "project_id": node.project_id,
        "parent_id": node.parent_id,
        "name": node.name,
        "type": node.type,
        "size": int(node.size or 0),
        "mime_type": node.mime_type,
        "has_blob": bool(node.blob_key),
        "version": node.version or 1,
        "status": node.status,
        "owner_email": node.owner_email,
        "created_by": node.created_by,
        "sharing_scope": node.sharing_scope,
        "has_share_password": bool(node.share_password),
        "trashed_at": isoformat(node.trashed_at),
        "created_at": isoformat(node.created_at),
        "updated_at": isoformat(node.updated_at),
    }


def project_to_dict(project: Project, *, members: Optional[list[str]] = None) -> Dict[str, Any]:
    data = {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "max_storage_bytes": int(project.max_storage_bytes or 0),
        "current_storage_bytes": int(project.current_storage_bytes or 0),
        "settings": project.effective_settings,
        "created_by": project.created_by,
        "created_at": isoformat(project.created_at),
        "updated_at": isoformat(project.updated_at),
    }
    if members is not None:
        data["members"] = members
    return data
