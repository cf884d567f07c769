"""配额记账：按项目校验与累计存储用量。

``current_storage_bytes`` 是近似计数器：
- 写入前用 ``check_and_reserve`` 做快速失败校验（尚未上传任何数据）；
- ``apply`` 优先使用单条 UPDATE 原子累加，并与节点写入落在同一事务中；
  若原子更新失败则退化为“读-改-写”，并发场景下可能产生漂移；
- ``reconcile`` 按 ACTIVE+TRASHED 文件大小求和重新校准。
计数器在任何情况下都不会小于 0。
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.packages.drive.core.exceptions import NotFoundError, QuotaExceededError
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.node import node_crud
from app.packages.drive.crud.project import project_crud
from app.packages.drive.models.project import Project


@dataclass
class QuotaStatus:
    project_id: str
    max_storage_bytes: int
    current_storage_bytes: int

    @property
    def available_bytes(self) -> int:
        return max(self.max_storage_bytes - self.current_storage_bytes, 0)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "max_storage_bytes": self.max_storage_bytes,
            "current_storage_bytes": self.current_storage_bytes,
            "available_bytes": self.available_bytes,
        }


class QuotaService:
    def status(self, project: Project) -> QuotaStatus:
        return QuotaStatus(
            project_id=project.id,
            max_storage_bytes=int(project.max_storage_bytes or 0),
            current_storage_bytes=int(project.current_storage_bytes or 0),
        )

    def check_and_reserve(self, project: Project, size_delta: int) -> QuotaStatus:
        """超出上限时抛出 QuotaExceededError；释放空间（负增量）总是允许。"""
        current = self.status(project)
        if size_delta > 0 and current.current_storage_bytes + size_delta > current.max_storage_bytes:
            raise QuotaExceededError(
                max_storage_bytes=current.max_storage_bytes,
                current_storage_bytes=current.current_storage_bytes,
                size_delta=size_delta,
            )
        return current

    def _atomic_increment(self, db: Session, project_id: str, size_delta: int) -> None:
        column = Project.current_storage_bytes
        stmt = (
            update(Project)
            .where(Project.id == project_id)
            .values(current_storage_bytes=case((column + size_delta < 0, 0), else_=column + size_delta))
            .execution_options(synchronize_session=False)
        )
        db.execute(stmt)

    def apply(self, db: Session, project_id: str, size_delta: int, *, auto_commit: bool = False) -> None:
        """累加用量（可为负）。默认不提交，由调用方与节点写入一起提交。"""
        if not size_delta:
            return
        try:
            # 失败时只回滚到保存点，外层事务（节点写入）仍可继续
            with db.begin_nested():
                self._atomic_increment(db, project_id, size_delta)
        except SQLAlchemyError:
            logger.warning(
                "Atomic storage update failed for project %s, falling back to read-modify-write",
                project_id,
                exc_info=True,
                extra={"project_id": project_id},
            )
            project = project_crud.get(db, project_id)
            if project is None:
                raise NotFoundError("项目不存在")
            project.current_storage_bytes = max(int(project.current_storage_bytes or 0) + size_delta, 0)
            db.add(project)

        # 同一会话中已加载的项目对象需要重新读取计数器
        project = db.get(Project, project_id)
        if project is not None:
            db.expire(project, ["current_storage_bytes"])
        if auto_commit:
            db.commit()

    def reconcile(self, db: Session, project: Project) -> QuotaStatus:
        """按节点表重新计算用量并覆盖计数器。"""
        actual = node_crud.sum_file_sizes(db, project_id=project.id)
        previous = int(project.current_storage_bytes or 0)
        project.current_storage_bytes = actual
        db.add(project)
        db.commit()
        db.refresh(project)
        if previous != actual:
            logger.info(
                "Reconciled storage usage for project %s: %s -> %s",
                project.id,
                previous,
                actual,
                extra={"project_id": project.id},
            )
        return self.status(project)


quota_service = QuotaService()
