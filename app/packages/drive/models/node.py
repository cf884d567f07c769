"""统一的存储节点模型（文件与目录合并）。

存储规则：
- parent_id 为空表示项目根目录下的节点，所有节点都必须归属某个项目；
- type 创建后不可变更；目录的 blob_key 为空、size 恒为 0；
- 同一 (project_id, parent_id, name, type=FILE) 组成一个“版本组”，各行 version 不同，
  最大 version 即为最新版本；被保留策略淘汰的旧版本 blob_key 为空、size 为 0，但行保留；
- status：ACTIVE -> TRASHED -> DELETED_PENDING，DELETED_PENDING 由后台清理物理删除。
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.drive.core.enums import NodeStatus, SharingScope
from app.packages.drive.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class StorageNode(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "storage_nodes"

    # 不使用级联删除：目录必须在其子节点（及对象存储中的文件）清理完成后才能删除
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("storage_nodes.id"), nullable=True, index=True
    )
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), index=True)
    type: Mapped[str] = mapped_column(String(16))
    blob_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, default=0, server_default=expression.text("0"))
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    sharing_scope: Mapped[str] = mapped_column(String(16), default=SharingScope.PRIVATE.value)
    # bcrypt 哈希，空表示公开链接无需密码
    share_password: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, server_default=expression.text("1"))
    status: Mapped[str] = mapped_column(String(32), default=NodeStatus.ACTIVE.value, index=True)
    trashed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # 并发创建同名同版本时由数据库拒绝，调用方据此重新走冲突判定
        UniqueConstraint(
            "project_id", "parent_id", "name", "type", "version",
            name="uq_storage_nodes_cohort_version",
        ),
        # 根目录下 parent_id 为 NULL，上面的唯一约束不生效，文件版本号由部分唯一索引兜底
        Index(
            "uq_storage_nodes_root_file_version",
            "project_id", "name", "type", "version",
            unique=True,
            postgresql_where=text("parent_id IS NULL AND type = 'FILE'"),
            sqlite_where=text("parent_id IS NULL AND type = 'FILE'"),
        ),
        Index("ix_storage_nodes_cohort", "project_id", "parent_id", "name", "type"),
    )
