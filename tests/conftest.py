"""测试夹具：为 pytest 提供数据库、对象存储、清理队列与客户端的共享配置。"""

import os
import tempfile
import uuid
from typing import Generator

# 必须在导入应用之前设置，保证配置单例读取到测试环境
_TMP_ROOT = tempfile.mkdtemp(prefix="project_drive_tests_")
os.environ["PURGE_QUEUE_BACKEND"] = "memory"
os.environ["BLOB_STORE_TYPE"] = "LOCAL"
os.environ["LOCAL_BLOB_ROOT"] = os.path.join(_TMP_ROOT, "blobs")
os.environ["LOG_DIR"] = os.path.join(_TMP_ROOT, "log")
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["JWT_SECRET_KEY"] = "test-secret"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.packages.drive.core.dependencies import get_db
from app.packages.drive.core.security import create_access_token
from app.packages.drive.crud.project import project_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.db.init_db import init_db
from app.packages.drive.models.base import Base
from app.packages.drive.models.whitelist import WhitelistUser
from app.packages.drive.services.access_policy import Identity
from app.packages.drive.services.blob_store import LocalBlobStore, configure_blob_store
from app.packages.drive.services.project_service import project_service
from app.packages.drive.services.purge_queue import InMemoryPurgeQueue, configure_purge_queue
from app.packages.drive.services.upload_service import upload_service

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"
ADMIN_EMAIL = "admin@example.com"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    init_db()
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def reset_tables() -> Generator[None, None, None]:
    """每个用例前清空业务表并重新写入管理员白名单。"""
    session = db_session.SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()
    init_db()
    yield


@pytest.fixture(autouse=True)
def blob_store(tmp_path) -> Generator[LocalBlobStore, None, None]:
    store = LocalBlobStore(tmp_path / "blobs")
    configure_blob_store(store)
    yield store
    configure_blob_store(None)


@pytest.fixture(autouse=True)
def purge_queue() -> Generator[InMemoryPurgeQueue, None, None]:
    queue = InMemoryPurgeQueue()
    configure_purge_queue(queue)
    yield queue
    configure_purge_queue(None)


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db):
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def admin() -> Identity:
    return Identity(user_id="admin-1", email=ADMIN_EMAIL, is_admin=True, is_whitelisted=True)


@pytest.fixture()
def make_user(db):
    """写入白名单并返回对应的调用者身份。"""
    def _make(email: str, *, user_id: str | None = None, whitelisted: bool = True) -> Identity:
        if whitelisted:
            db.add(WhitelistUser(email=email, role="user"))
            db.commit()
        return Identity(
            user_id=user_id or f"user-{email.split('@')[0]}",
            email=email,
            is_admin=False,
            is_whitelisted=whitelisted,
        )

    return _make


@pytest.fixture()
def make_project(db, admin):
    def _make(name: str | None = None, *, members=(), max_storage_bytes=None, settings=None):
        data = project_service.create_project(
            db,
            admin,
            name=name or f"proj-{uuid.uuid4().hex[:8]}",
            members=list(members),
            max_storage_bytes=max_storage_bytes,
        )
        project = project_crud.get(db, data["id"])
        if settings:
            project.settings = {**project.effective_settings, **settings}
            db.add(project)
            db.commit()
            db.refresh(project)
        return project

    return _make


@pytest.fixture()
def put_file(db, blob_store):
    """走完 申请地址 -> 写入对象 -> 完成登记 的上传流程，返回新节点。"""
    def _put(identity: Identity, project, filename: str, data: bytes, *, parent_id=None, resolution=None):
        plan = upload_service.plan_upload(
            db,
            identity,
            project_ref=project.id,
            parent_id=parent_id,
            filename=filename,
            file_size=len(data),
            resolution=resolution,
        )
        blob_store.put(plan["key"], data)
        result = upload_service.commit_write(
            db,
            identity,
            project_ref=project.id,
            parent_id=parent_id,
            key=plan["key"],
            filename=filename,
            size=len(data),
            commit_token=plan["commit_token"],
            resolution=resolution,
        )
        return result.node

    return _put


@pytest.fixture()
def auth_headers():
    def _headers(identity: Identity) -> dict[str, str]:
        token = create_access_token({"user_id": identity.user_id, "email": identity.email})
        return {"Authorization": f"Bearer {token}"}

    return _headers
