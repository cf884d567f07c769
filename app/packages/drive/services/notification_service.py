"""项目动态通知：上传完成后告知项目所有者。

发送是“发出即忘”的：配置了 ``NOTIFY_WEBHOOK_URL`` 时以 JSON POST 到 webhook，
否则仅记录日志；任何失败都只记录警告，不影响调用方。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

import httpx

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.enums import ActivityAction
from app.packages.drive.core.logger import logger


@dataclass
class ActivityEvent:
    to: str
    project_id: str
    project_name: str
    user_email: str
    action: ActivityAction
    file_name: str
    timestamp: str

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["action"] = self.action.value
        return payload


class NotificationService:
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout

    @property
    def webhook_url(self) -> Optional[str]:
        return self._webhook_url or get_settings().notify_webhook_url

    def notify(self, event: ActivityEvent) -> bool:
        """发送通知，返回是否成功投递到 webhook。"""
        url = self.webhook_url
        if not url:
            logger.info(
                "Activity %s on %s by %s (no webhook configured)",
                event.action.value,
                event.file_name,
                event.user_email,
                extra={"project_id": event.project_id},
            )
            return False
        try:
            resp = httpx.post(url, json=event.to_payload(), timeout=self._timeout)
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning(
                "Activity notification to %s failed",
                event.to,
                exc_info=True,
                extra={"project_id": event.project_id},
            )
            return False
        return True


notification_service = NotificationService()
