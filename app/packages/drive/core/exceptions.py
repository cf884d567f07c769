"""异常处理模块：定义统一的业务异常与响应格式。

业务异常与错误分类一一对应：
- NotFoundError：项目、目录段或节点不存在；
- ForbiddenError：权限校验失败（非所有者/管理员，或项目处于只读模式）；
- QuotaExceededError：写入前的配额校验失败；
- BlobIntegrityError：上传完成后对象存储中找不到对象或大小不符；
- WriteConflictError：同名文件未给出处理方式，属于正常分支，不记录错误日志。
"""

from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.packages.drive.core.logger import logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST, data: Any = None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data


class NotFoundError(AppException):
    def __init__(self, msg: str = "资源不存在", data: Any = None) -> None:
        super().__init__(msg, status.HTTP_404_NOT_FOUND, data)


class ForbiddenError(AppException):
    def __init__(self, msg: str = "无权执行该操作", data: Any = None) -> None:
        super().__init__(msg, status.HTTP_403_FORBIDDEN, data)


class QuotaExceededError(AppException):
    def __init__(self, *, max_storage_bytes: int, current_storage_bytes: int, size_delta: int) -> None:
        max_gb = max_storage_bytes / 1073741824
        super().__init__(
            f"存储空间不足，项目上限 {max_gb:.2f} GB",
            status.HTTP_403_FORBIDDEN,
            {
                "max_storage_bytes": max_storage_bytes,
                "current_storage_bytes": current_storage_bytes,
                "size_delta": size_delta,
            },
        )


class BlobIntegrityError(AppException):
    def __init__(self, key: str, reason: Optional[str] = None) -> None:
        super().__init__(
            "文件校验失败：对象存储中不存在该文件" if reason is None else f"文件校验失败：{reason}",
            status.HTTP_404_NOT_FOUND,
            {"key": key},
        )


class WriteConflictError(AppException):
    """同名文件冲突，``data`` 携带最新版本信息，调用方需带上处理方式重新提交。"""

    def __init__(self, conflict: dict) -> None:
        super().__init__("存在同名文件，请选择更新版本或覆盖", status.HTTP_409_CONFLICT, {"conflict": True, "existing": conflict})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
