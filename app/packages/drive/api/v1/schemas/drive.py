"""网盘接口请求/响应模型：字段命名沿用前端约定的 camelCase。"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class FolderCreateBody(BaseModel):
    projectId: str = Field(..., min_length=1)
    parentId: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)


class RenameBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class MoveBody(BaseModel):
    # None 表示移动到项目根目录
    targetParentId: Optional[str] = None


class SharingBody(BaseModel):
    scope: str = Field(..., min_length=1)  # PRIVATE | PUBLIC
    password: Optional[str] = None


class UploadInitBody(BaseModel):
    filename: str = Field(..., min_length=1)
    fileSize: int = Field(..., ge=0)
    fileType: Optional[str] = None
    parentId: Optional[str] = None
    projectId: str = Field(..., min_length=1)
    resolution: Optional[str] = Field(None, pattern=r"^(update|overwrite)$")
    silent: bool = False


class UploadCompleteBody(BaseModel):
    key: str = Field(..., min_length=1)
    # upload/init 返回的 commit_token
    commitToken: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    type: Optional[str] = None
    projectId: str = Field(..., min_length=1)
    parentId: Optional[str] = None
    resolution: Optional[str] = Field(None, pattern=r"^(update|overwrite)$")
    silent: bool = False


class RollbackBody(BaseModel):
    nodeId: str = Field(..., min_length=1)


class PublicNodeBody(BaseModel):
    id: str = Field(..., min_length=1)
    password: Optional[str] = None


DriveListResponse = ResponseEnvelope[dict]
NodeResponse = ResponseEnvelope[dict]
NodeListResponse = ResponseEnvelope[list]
DriveMutationResponse = ResponseEnvelope[Any]
