"""版本与冲突判定：决定一次写入是新建文件、新版本还是覆盖最新版本。

判定规则（同一项目 + 同一父目录 + 同名文件构成一个版本组）：
- 组内没有可见版本：CREATE，version=1，配额增量为文件大小；
- 存在最新版本且调用方未给出处理方式：CONFLICT，由调用方带上处理方式重新提交，绝不静默覆盖；
- ``update``：NEW_VERSION，version=最新+1，旧版本保留，配额按文件大小全额累加；
- ``overwrite``：仅所有者或管理员，OVERWRITE，version 不变，配额增量为新旧大小之差。

版本号永不复用：仍在等待后台清理（DELETED_PENDING）的旧行也参与编号。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.enums import NodeStatus, WriteDecision, WriteResolution
from app.packages.drive.core.exceptions import AppException, ForbiddenError
from app.packages.drive.crud.node import node_crud
from app.packages.drive.models.node import StorageNode
from app.packages.drive.services.access_policy import Identity, is_owner_or_admin


@dataclass
class WritePlan:
    decision: WriteDecision
    target_version: int
    size_delta: int
    overwrite_node_id: Optional[str] = None
    latest: Optional[StorageNode] = None
    conflict: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "target_version": self.target_version,
            "overwrite_node_id": self.overwrite_node_id,
            "size_delta": self.size_delta,
        }


def parse_resolution(raw: Optional[str]) -> Optional[WriteResolution]:
    if raw is None or raw == "":
        return None
    try:
        return WriteResolution(raw.strip().lower())
    except ValueError as exc:
        raise AppException(f"不支持的冲突处理方式: {raw}") from exc


def conflict_payload(latest: StorageNode, identity: Optional[Identity]) -> dict:
    return {
        "id": latest.id,
        "name": latest.name,
        "latest_version": latest.version or 1,
        "owner": latest.owner_email,
        "is_owner_or_admin": is_owner_or_admin(identity, latest),
    }


def plan_write(
    db: Session,
    *,
    project_id: str,
    parent_id: Optional[str],
    filename: str,
    incoming_size: int,
    resolution: Optional[WriteResolution] = None,
    identity: Optional[Identity] = None,
) -> WritePlan:
    rows = node_crud.versions(
        db, project_id=project_id, parent_id=parent_id, name=filename, include_pending=True
    )
    visible = [row for row in rows if row.status != NodeStatus.DELETED_PENDING.value]
    latest = visible[0] if visible else None

    if latest is None:
        highest = max((row.version or 0 for row in rows), default=0)
        return WritePlan(decision=WriteDecision.CREATE, target_version=highest + 1, size_delta=incoming_size)

    if resolution is None:
        return WritePlan(
            decision=WriteDecision.CONFLICT,
            target_version=latest.version or 1,
            size_delta=0,
            latest=latest,
            conflict=conflict_payload(latest, identity),
        )

    if resolution == WriteResolution.UPDATE:
        highest = max(row.version or 0 for row in rows)
        return WritePlan(
            decision=WriteDecision.NEW_VERSION,
            target_version=highest + 1,
            size_delta=incoming_size,
            latest=latest,
        )

    if not is_owner_or_admin(identity, latest):
        raise ForbiddenError("仅所有者或管理员可覆盖该文件")
    return WritePlan(
        decision=WriteDecision.OVERWRITE,
        target_version=latest.version or 1,
        size_delta=incoming_size - int(latest.size or 0),
        overwrite_node_id=latest.id,
        latest=latest,
    )
