"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.drive.models.node import StorageNode
from app.packages.drive.models.project import Project, ProjectMember
from app.packages.drive.models.whitelist import WhitelistUser

__all__ = [
    "StorageNode",
    "Project",
    "ProjectMember",
    "WhitelistUser",
]
