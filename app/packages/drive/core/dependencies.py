"""依赖注入模块：数据库会话与当前调用者身份。"""

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.packages.drive.core.constants import ACCESS_TOKEN_TYPE
from app.packages.drive.core.security import decode_and_verify_token
from app.packages.drive.db import session as db_session
from app.packages.drive.services.access_policy import Identity, load_identity

security_scheme = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _identity_from_credentials(
    credentials: Optional[HTTPAuthorizationCredentials], db: Session
) -> Identity:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少认证信息")

    if credentials.scheme.lower() != ACCESS_TOKEN_TYPE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="认证类型无效")

    payload = decode_and_verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token 无效或已过期")

    user_id = payload.get("user_id")
    email = payload.get("email")
    if user_id is None or not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token 无效")

    return load_identity(db, user_id=str(user_id), email=str(email))


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    db: Session = Depends(get_db),
) -> Identity:
    """解析 ``Authorization`` 头部，返回调用者身份（管理员标记来自白名单）。"""
    return _identity_from_credentials(credentials, db)


def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    db: Session = Depends(get_db),
) -> Optional[Identity]:
    """公开链接等匿名可访问的接口：未携带令牌时返回 ``None``，携带了非法令牌仍返回 401。"""
    if not credentials:
        return None
    return _identity_from_credentials(credentials, db)
