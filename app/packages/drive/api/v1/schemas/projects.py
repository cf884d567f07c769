"""项目管理接口请求/响应模型。"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class ProjectSettingsPayload(BaseModel):
    notify_on_activity: Optional[bool] = None
    version_retention_limit: Optional[int] = Field(None, ge=1)
    read_only: Optional[bool] = None


class ProjectCreateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1024)
    max_storage_bytes: Optional[int] = Field(None, gt=0)
    members: list[str] = Field(default_factory=list)


class ProjectSettingsBody(BaseModel):
    settings: Optional[ProjectSettingsPayload] = None
    members: Optional[list[str]] = None
    description: Optional[str] = Field(None, max_length=1024)
    max_storage_bytes: Optional[int] = Field(None, gt=0)


ProjectResponse = ResponseEnvelope[dict]
ProjectListResponse = ResponseEnvelope[list]
ProjectMutationResponse = ResponseEnvelope[Any]
