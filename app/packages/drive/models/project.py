"""项目模型：配额与命名空间边界，以及项目成员映射表。"""

from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.drive.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

DEFAULT_PROJECT_SETTINGS: dict[str, Any] = {
    "notify_on_activity": False,
    "version_retention_limit": None,
    "read_only": False,
}


class Project(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """项目。

    ``current_storage_bytes`` 是随节点写入同步更新的近似计数器，并非权威值；
    可通过按 ACTIVE+TRASHED 文件大小求和的方式重新校准。
    """

    __tablename__ = "projects"

    # 名称可作为人类可读的项目引用，但数据库层面不强制唯一
    name: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    max_storage_bytes: Mapped[int] = mapped_column(BigInteger)
    current_storage_bytes: Mapped[int] = mapped_column(
        BigInteger, default=0, server_default=expression.text("0")
    )
    settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    @property
    def effective_settings(self) -> dict[str, Any]:
        return {**DEFAULT_PROJECT_SETTINGS, **(self.settings or {})}


class ProjectMember(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "user_email", name="uq_project_members_project_email"),
    )

    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), index=True)
    user_email: Mapped[str] = mapped_column(String(255), index=True)
