"""版本保留策略：版本数超过上限时淘汰最旧的版本。

被淘汰的版本只删除对象存储中的文件，并把 ``blob_key`` 置空、``size`` 归零；
版本行本身保留，版本历史中仍能看到该占位记录（“已淘汰”区别于“已清除”）。
单个对象删除失败只记录日志，不影响其余版本的处理。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.logger import logger
from app.packages.drive.crud.node import node_crud
from app.packages.drive.services.blob_store import get_blob_store
from app.packages.drive.services.quota_service import quota_service


@dataclass
class RetentionReport:
    retired_versions: List[int] = field(default_factory=list)
    freed_bytes: int = 0
    failed_keys: List[str] = field(default_factory=list)


class RetentionService:
    def enforce_retention(
        self,
        db: Session,
        *,
        project_id: str,
        parent_id: Optional[str],
        filename: str,
        limit: Optional[int],
    ) -> RetentionReport:
        report = RetentionReport()
        if not limit or limit <= 0:
            return report

        versions = node_crud.versions(db, project_id=project_id, parent_id=parent_id, name=filename)
        if len(versions) <= limit:
            return report

        store = get_blob_store()
        for node in versions[limit:]:
            if not node.blob_key:
                continue
            try:
                store.delete(node.blob_key)
            except Exception:
                report.failed_keys.append(node.blob_key)
                logger.warning(
                    "Failed to purge blob of %s v%s, row is retired anyway",
                    filename,
                    node.version,
                    exc_info=True,
                    extra={"project_id": project_id, "node_id": node.id, "blob_key": node.blob_key},
                )
            report.freed_bytes += int(node.size or 0)
            report.retired_versions.append(node.version)
            node.blob_key = None
            node.size = 0
            db.add(node)

        if report.retired_versions:
            quota_service.apply(db, project_id, -report.freed_bytes)
            db.commit()
            logger.info(
                "Retired %s old version(s) of %s, freed %s bytes",
                len(report.retired_versions),
                filename,
                report.freed_bytes,
                extra={"project_id": project_id},
            )
        return report


retention_service = RetentionService()
