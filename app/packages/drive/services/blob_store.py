"""对象存储适配层：统一封装本地目录与 S3 兼容存储的对象操作。

对外只按不透明的对象 key 寻址（key 由本服务生成，从不直接使用客户端路径）：
put / head / get / delete / copy，以及签发限时上传地址。
"""

from __future__ import annotations

import mimetypes
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from fastapi import status

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    DEFAULT_CONTENT_TYPE,
    HTTP_STATUS_BAD_REQUEST,
    UPLOAD_TOKEN_PURPOSE,
)
from app.packages.drive.core.exceptions import AppException, NotFoundError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import create_temporary_token

_CHUNK_SIZE = 64 * 1024


def _norm_mime(path: str) -> str:
    mime, _ = mimetypes.guess_type(path)
    return mime or DEFAULT_CONTENT_TYPE


@dataclass
class BlobHead:
    size: int
    content_type: Optional[str]


class BlobStore:
    """对象存储接口。"""

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        raise NotImplementedError

    def head(self, key: str) -> Optional[BlobHead]:
        """返回对象元信息，不存在时返回 ``None``。"""
        raise NotImplementedError

    def get(self, key: str) -> Iterator[bytes]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def copy(self, src_key: str, dst_key: str) -> None:
        raise NotImplementedError

    def issue_upload_url(
        self, key: str, content_type: Optional[str], ttl_seconds: int, *, size: Optional[int] = None
    ) -> str:
        raise NotImplementedError


# ------------------------------------------
# 本地文件系统实现
# ------------------------------------------


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        if not self.root.exists():
            try:
                self.root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - 极端情况下可能失败
                raise AppException(f"无法创建本地存储根目录: {exc}", status.HTTP_500_INTERNAL_SERVER_ERROR) from exc

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, key: str) -> Path:
        rel = key.strip().lstrip("/")
        if not rel:
            raise AppException("非法对象 key", HTTP_STATUS_BAD_REQUEST)
        candidate = (self.root / rel).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise AppException("非法对象 key: 越权访问", HTTP_STATUS_BAD_REQUEST) from exc
        return candidate

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as f:
            f.write(data)

    def head(self, key: str) -> Optional[BlobHead]:
        target = self._resolve(key)
        if not target.is_file():
            return None
        return BlobHead(size=int(target.stat().st_size), content_type=_norm_mime(str(target)))

    def get(self, key: str) -> Iterator[bytes]:
        target = self._resolve(key)
        if not target.is_file():
            raise NotFoundError("文件不存在")

        def _iter() -> Iterator[bytes]:
            with open(target, "rb") as f:
                while True:
                    chunk = f.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        return _iter()

    def delete(self, key: str) -> None:
        target = self._resolve(key)
        # 允许幂等：不存在则忽略
        if target.is_file():
            target.unlink()

    def copy(self, src_key: str, dst_key: str) -> None:
        src = self._resolve(src_key)
        if not src.is_file():
            raise NotFoundError(f"源对象不存在: {src_key}")
        dst = self._resolve(dst_key)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)

    def issue_upload_url(
        self, key: str, content_type: Optional[str], ttl_seconds: int, *, size: Optional[int] = None
    ) -> str:
        # 本地存储没有原生预签名能力，改为签发指向服务端代理上传接口的短期令牌
        payload = {"purpose": UPLOAD_TOKEN_PURPOSE, "key": key, "content_type": content_type or DEFAULT_CONTENT_TYPE}
        if size is not None:
            payload["size"] = int(size)
        token = create_temporary_token(payload, expires_seconds=ttl_seconds)
        return f"{get_settings().api_v1_str}/drive/upload/proxy?t={token}"


# ------------------------------------------
# S3 实现（boto3）
# ------------------------------------------


class S3BlobStore(BlobStore):
    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: Optional[str] = None,
    ):
        try:
            import boto3  # type: ignore
            from botocore.exceptions import ClientError  # type: ignore
        except ImportError as exc:
            raise AppException(
                "S3 功能不可用：缺少依赖 boto3，请在后端安装后重试",
                status.HTTP_500_INTERNAL_SERVER_ERROR,
            ) from exc

        self.bucket = bucket
        self._client_error = ClientError
        self._client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def _is_not_found(self, exc: Exception) -> bool:
        if not isinstance(exc, self._client_error):
            return False
        code = str(exc.response.get("Error", {}).get("Code", ""))
        return code in {"404", "NoSuchKey", "NotFound"}

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or DEFAULT_CONTENT_TYPE,
        )

    def head(self, key: str) -> Optional[BlobHead]:
        try:
            resp = self._client.head_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            if self._is_not_found(exc):
                return None
            raise
        return BlobHead(size=int(resp.get("ContentLength") or 0), content_type=resp.get("ContentType"))

    def get(self, key: str) -> Iterator[bytes]:
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            if self._is_not_found(exc):
                raise NotFoundError("文件不存在") from exc
            raise
        return resp["Body"].iter_chunks(chunk_size=_CHUNK_SIZE)

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)

    def copy(self, src_key: str, dst_key: str) -> None:
        self._client.copy_object(
            Bucket=self.bucket,
            Key=dst_key,
            CopySource={"Bucket": self.bucket, "Key": src_key},
        )

    def issue_upload_url(
        self, key: str, content_type: Optional[str], ttl_seconds: int, *, size: Optional[int] = None
    ) -> str:
        params = {"Bucket": self.bucket, "Key": key, "ContentType": content_type or DEFAULT_CONTENT_TYPE}
        if size is not None:
            # 签入 Content-Length，S3 会拒绝与申请大小不一致的请求体
            params["ContentLength"] = int(size)
        try:
            return self._client.generate_presigned_url("put_object", Params=params, ExpiresIn=ttl_seconds)
        except Exception as exc:
            raise AppException(f"预签名 URL 生成失败: {exc}", status.HTTP_500_INTERNAL_SERVER_ERROR) from exc


def build_blob_store(
    *,
    type: str,
    bucket_name: Optional[str] = None,
    region: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
    local_root_path: Optional[str | Path] = None,
) -> BlobStore:
    t = (type or "").upper()
    if t == "LOCAL":
        if not local_root_path:
            raise AppException("缺少本地存储根目录配置", HTTP_STATUS_BAD_REQUEST)
        return LocalBlobStore(local_root_path)
    if t == "S3":
        if not (bucket_name and access_key_id and secret_access_key):
            raise AppException("S3 配置不完整", HTTP_STATUS_BAD_REQUEST)
        return S3BlobStore(
            bucket=bucket_name,
            region=region or "auto",
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            endpoint_url=endpoint_url,
        )
    raise AppException("不支持的存储类型", HTTP_STATUS_BAD_REQUEST)


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """返回进程内共享的对象存储实例，首次调用时按配置构建。"""
    global _blob_store
    if _blob_store is not None:
        return _blob_store

    settings = get_settings()
    _blob_store = build_blob_store(
        type=settings.blob_store_type,
        bucket_name=settings.s3_bucket_name,
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        local_root_path=settings.local_blob_directory,
    )
    logger.info("Blob store initialized: %s", type(_blob_store).__name__)
    return _blob_store


def configure_blob_store(store: Optional[BlobStore]) -> None:
    """替换进程内的对象存储实例（测试或自定义部署时使用）。"""
    global _blob_store
    _blob_store = store
