"""时区工具方法：支持根据配置动态获取当前时区。"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from zoneinfo import ZoneInfo

from app.packages.drive.core.config import get_settings


def get_timezone() -> ZoneInfo:
    return get_settings().timezone_info


def now() -> datetime:
    """返回当前时区的时间。"""
    return datetime.now(get_timezone())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """序列化节点/项目上的时间戳；SQLite 读回的无时区时间按配置时区解释。"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=get_timezone())
    return value.isoformat()
