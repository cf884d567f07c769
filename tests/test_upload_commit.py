"""上传完成登记：凭证绑定、重复登记、大小与版本校验。"""

from __future__ import annotations

import pytest

from app.packages.drive.core.enums import NodeStatus
from app.packages.drive.core.exceptions import (
    AppException,
    BlobIntegrityError,
    ForbiddenError,
    QuotaExceededError,
    WriteConflictError,
)
from app.packages.drive.crud.node import node_crud
from app.packages.drive.services.lifecycle_service import lifecycle_service
from app.packages.drive.services.purge_worker import drain_purge_queue
from app.packages.drive.services.upload_service import upload_service


def _plan(db, identity, project, filename, size, *, resolution=None):
    return upload_service.plan_upload(
        db,
        identity,
        project_ref=project.id,
        parent_id=None,
        filename=filename,
        file_size=size,
        resolution=resolution,
    )


def _commit(db, identity, project, plan, filename, size, *, key=None, resolution=None):
    return upload_service.commit_write(
        db,
        identity,
        project_ref=project.id,
        parent_id=None,
        key=key or plan["key"],
        filename=filename,
        size=size,
        commit_token=plan["commit_token"],
        resolution=resolution,
    )


def test_member_cannot_register_another_users_blob(db, make_user, make_project, put_file, blob_store):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    project = make_project(members=[alice.email, bob.email])
    secret = put_file(alice, project, "secret.txt", b"top secret")
    alice_key = secret.blob_key

    own_plan = _plan(db, bob, project, "mine.txt", 10)
    with pytest.raises(AppException) as excinfo:
        _commit(db, bob, project, own_plan, "mine.txt", 10, key=alice_key)
    assert excinfo.value.status_code == 400

    alice_plan = _plan(db, alice, project, "other.txt", 10)
    blob_store.put(alice_plan["key"], b"0123456789")
    with pytest.raises(ForbiddenError):
        _commit(db, bob, project, alice_plan, "other.txt", 10)

    assert node_crud.blob_key_in_use(db, alice_key)
    assert [row.name for row in node_crud.by_status(db, status=NodeStatus.ACTIVE, project_id=project.id)] == ["secret.txt"]

    # 即使 bob 删除自己的文件，alice 的对象也不受影响
    mine = put_file(bob, project, "mine.txt", b"bob's file")
    lifecycle_service.permanent_delete(db, bob, mine.id)
    drain_purge_queue()
    assert blob_store.head(alice_key).size == len(b"top secret")


def test_commit_cannot_be_replayed(db, admin, make_project, blob_store):
    project = make_project()
    plan = _plan(db, admin, project, "a.txt", 3)
    blob_store.put(plan["key"], b"abc")
    _commit(db, admin, project, plan, "a.txt", 3)

    with pytest.raises(AppException) as excinfo:
        _commit(db, admin, project, plan, "a.txt", 3, resolution=None)
    assert excinfo.value.status_code == 409


def test_commit_parameters_must_match_the_plan(db, admin, make_project, blob_store):
    project = make_project()
    plan = _plan(db, admin, project, "a.txt", 3)
    blob_store.put(plan["key"], b"abc")

    with pytest.raises(AppException) as excinfo:
        _commit(db, admin, project, plan, "renamed.txt", 3)
    assert excinfo.value.status_code == 400
    with pytest.raises(AppException) as excinfo:
        _commit(db, admin, project, plan, "a.txt", 3, resolution="update")
    assert excinfo.value.status_code == 400
    with pytest.raises(AppException) as excinfo:
        upload_service.commit_write(
            db,
            admin,
            project_ref=project.id,
            parent_id=None,
            key=plan["key"],
            filename="a.txt",
            size=3,
            commit_token="not-a-token",
        )
    assert excinfo.value.status_code == 400


def test_commit_larger_than_planned_is_rejected(db, admin, make_project, blob_store):
    project = make_project(max_storage_bytes=100)
    plan = _plan(db, admin, project, "tiny.bin", 1)
    blob_store.put(plan["key"], b"x" * 5000)

    with pytest.raises(BlobIntegrityError):
        _commit(db, admin, project, plan, "tiny.bin", 5000)
    db.refresh(project)
    assert project.current_storage_bytes == 0
    assert node_crud.latest_version(db, project_id=project.id, parent_id=None, name="tiny.bin") is None


def test_quota_is_checked_again_at_commit(db, admin, make_project, blob_store):
    project = make_project(max_storage_bytes=100)
    first = _plan(db, admin, project, "a.bin", 60)
    second = _plan(db, admin, project, "b.bin", 60)
    blob_store.put(first["key"], b"a" * 60)
    blob_store.put(second["key"], b"b" * 60)

    _commit(db, admin, project, first, "a.bin", 60)
    with pytest.raises(QuotaExceededError):
        _commit(db, admin, project, second, "b.bin", 60)
    db.refresh(project)
    assert project.current_storage_bytes == 60


def test_commit_after_concurrent_update_is_conflict(db, admin, make_project, put_file, blob_store):
    project = make_project()
    put_file(admin, project, "notes.md", b"v1")
    slow = _plan(db, admin, project, "notes.md", 2, resolution="update")
    fast = _plan(db, admin, project, "notes.md", 3, resolution="update")
    assert slow["target_version"] == fast["target_version"] == 2
    assert slow["key"].endswith("_v2_notes.md")

    blob_store.put(fast["key"], b"v2!")
    _commit(db, admin, project, fast, "notes.md", 3, resolution="update")

    blob_store.put(slow["key"], b"v2")
    with pytest.raises(WriteConflictError) as excinfo:
        _commit(db, admin, project, slow, "notes.md", 2, resolution="update")
    assert excinfo.value.status_code == 409
    versions = node_crud.versions(db, project_id=project.id, parent_id=None, name="notes.md")
    assert [row.version for row in versions] == [2, 1]
