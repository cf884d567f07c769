"""白名单模型：允许使用系统的邮箱及其角色（admin/user）。"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.core.enums import WhitelistRole
from app.packages.drive.models.base import Base, TimestampMixin


class WhitelistUser(TimestampMixin, Base):
    __tablename__ = "whitelist"

    email: Mapped[str] = mapped_column(String(255), primary_key=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default=WhitelistRole.USER.value)
