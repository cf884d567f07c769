"""枚举定义：约束节点类型、状态、共享范围以及写入决策的可选值。"""

from enum import Enum


class NodeType(str, Enum):
    FOLDER = "FOLDER"
    FILE = "FILE"


class NodeStatus(str, Enum):
    """节点生命周期状态：ACTIVE -> TRASHED -> DELETED_PENDING -> 物理移除。"""

    ACTIVE = "ACTIVE"
    TRASHED = "TRASHED"
    DELETED_PENDING = "DELETED_PENDING"


class SharingScope(str, Enum):
    PRIVATE = "PRIVATE"
    PUBLIC = "PUBLIC"


class WhitelistRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class WriteResolution(str, Enum):
    """同名文件冲突时调用方给出的处理方式。"""

    UPDATE = "update"
    OVERWRITE = "overwrite"


class WriteDecision(str, Enum):
    CREATE = "CREATE"
    NEW_VERSION = "NEW_VERSION"
    OVERWRITE = "OVERWRITE"
    CONFLICT = "CONFLICT"


class ActivityAction(str, Enum):
    UPLOADED = "UPLOADED"
    VERSION_UPDATED = "VERSION_UPDATED"
    OVERWRITTEN = "OVERWRITTEN"
