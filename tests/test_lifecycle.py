"""回收站、永久删除与后台清理。"""

from __future__ import annotations

import pytest

from app.packages.drive.core.enums import NodeStatus
from app.packages.drive.core.exceptions import AppException, ForbiddenError
from app.packages.drive.crud.node import node_crud
from app.packages.drive.services.blob_store import LocalBlobStore, configure_blob_store
from app.packages.drive.services.drive_service import drive_service
from app.packages.drive.services.lifecycle_service import lifecycle_service
from app.packages.drive.services.purge_worker import backoff_delay, drain_purge_queue, recover_pending


class RecordingBlobStore(LocalBlobStore):
    """记录删除调用，并可对指定 key 模拟删除失败。"""

    def __init__(self, root, fail_keys=()):
        super().__init__(root)
        self.deleted: list[str] = []
        self.fail_keys = set(fail_keys)

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        if key in self.fail_keys:
            raise OSError(f"simulated failure for {key}")
        super().delete(key)


@pytest.fixture()
def recording_store(blob_store):
    store = RecordingBlobStore(blob_store.root)
    configure_blob_store(store)
    return store


def _folder(db, identity, project, name, parent_id=None):
    return drive_service.create_folder(db, identity, project_ref=project.id, parent_id=parent_id, name=name)


def test_trash_and_restore_apply_to_whole_cohort(db, admin, make_project, put_file):
    project = make_project()
    put_file(admin, project, "plan.md", b"v1")
    v2 = put_file(admin, project, "plan.md", b"v2!", resolution="update")

    lifecycle_service.trash(db, admin, v2.id)
    rows = node_crud.cohort_of(db, v2)
    assert {row.status for row in rows} == {NodeStatus.TRASHED.value}
    assert all(row.trashed_at is not None for row in rows)

    listing = drive_service.list_children(db, admin, project_ref=project.id)
    assert listing["nodes"] == []
    trash = lifecycle_service.list_trash(db, admin, project.id)
    assert [(item["name"], item["version"]) for item in trash] == [("plan.md", 2)]

    lifecycle_service.restore(db, admin, v2.id)
    assert {row.status for row in node_crud.cohort_of(db, v2)} == {NodeStatus.ACTIVE.value}
    listing = drive_service.list_children(db, admin, project_ref=project.id)
    assert [(item["name"], item["version"]) for item in listing["nodes"]] == [("plan.md", 2)]


def test_folder_trash_does_not_cascade(db, admin, make_project, put_file):
    project = make_project()
    folder = _folder(db, admin, project, "docs")
    child = put_file(admin, project, "a.txt", b"a", parent_id=folder.id)

    lifecycle_service.trash(db, admin, folder.id)
    db.refresh(child)
    assert child.status == NodeStatus.ACTIVE.value
    assert drive_service.list_children(db, admin, project_ref=project.id)["nodes"] == []


def test_restore_folder_conflicts_with_active_sibling(db, admin, make_project):
    project = make_project()
    original = _folder(db, admin, project, "a")
    lifecycle_service.trash(db, admin, original.id)
    other = _folder(db, admin, project, "b")
    drive_service.rename(db, admin, other.id, "a")

    with pytest.raises(AppException) as excinfo:
        lifecycle_service.restore(db, admin, original.id)
    assert excinfo.value.status_code == 409


def test_restore_requires_trashed_node(db, admin, make_project, put_file):
    project = make_project()
    node = put_file(admin, project, "x.txt", b"x")
    with pytest.raises(AppException) as excinfo:
        lifecycle_service.restore(db, admin, node.id)
    assert excinfo.value.status_code == 400


def test_only_owner_or_admin_can_trash(db, admin, make_project, make_user, put_file):
    user = make_user("member@example.com")
    project = make_project(members=[user.email])
    node = put_file(admin, project, "x.txt", b"x")

    with pytest.raises(ForbiddenError):
        lifecycle_service.trash(db, user, node.id)


def test_read_only_project_blocks_member_mutations(db, admin, make_project, make_user, put_file):
    user = make_user("member@example.com")
    project = make_project(members=[user.email], settings={"read_only": True})
    own = put_file(admin, project, "x.txt", b"x")
    own.created_by = user.user_id
    own.owner_email = user.email
    db.commit()

    with pytest.raises(ForbiddenError):
        lifecycle_service.trash(db, user, own.id)
    lifecycle_service.trash(db, admin, own.id)


def test_permanent_delete_of_folder_tree_removes_everything(db, admin, make_project, put_file, recording_store, purge_queue):
    project = make_project()
    parent = _folder(db, admin, project, "parent")
    sub = _folder(db, admin, project, "sub", parent_id=parent.id)
    v1 = put_file(admin, project, "f.txt", b"one", parent_id=sub.id)
    v2 = put_file(admin, project, "f.txt", b"two!", parent_id=sub.id, resolution="update")
    ids = [parent.id, sub.id, v1.id, v2.id]

    result = lifecycle_service.permanent_delete(db, admin, parent.id)
    assert result["status"] == NodeStatus.DELETED_PENDING.value
    assert len(purge_queue) == 1
    assert drive_service.list_children(db, admin, project_ref=project.id)["nodes"] == []

    reports = drain_purge_queue()
    assert len(reports) == 1
    assert reports[0].deleted_rows == 4
    assert reports[0].freed_bytes == 7
    assert len(recording_store.deleted) == 2

    db.expire_all()
    assert all(node_crud.get(db, node_id) is None for node_id in ids)
    db.refresh(project)
    assert project.current_storage_bytes == 0


def test_permanent_delete_of_file_removes_cohort(db, admin, make_project, put_file, recording_store):
    project = make_project()
    put_file(admin, project, "f.txt", b"one")
    v2 = put_file(admin, project, "f.txt", b"two", resolution="update")

    result = lifecycle_service.permanent_delete(db, admin, v2.id)
    assert result["affected_versions"] == 2
    drain_purge_queue()
    db.expire_all()
    assert node_crud.versions(db, project_id=project.id, parent_id=None, name="f.txt", include_pending=True) == []
    assert len(recording_store.deleted) == 2


def test_blob_failure_does_not_block_purge(db, admin, make_project, put_file, blob_store):
    project = make_project()
    folder = _folder(db, admin, project, "tree")
    bad = put_file(admin, project, "bad.txt", b"bad", parent_id=folder.id)
    put_file(admin, project, "good.txt", b"good", parent_id=folder.id)

    bad_key = bad.blob_key
    folder_id = folder.id
    store = RecordingBlobStore(blob_store.root, fail_keys=[bad_key])
    configure_blob_store(store)

    lifecycle_service.permanent_delete(db, admin, folder_id)
    reports = drain_purge_queue()
    assert reports[0].failed_keys == [bad_key]
    assert reports[0].deleted_rows == 3

    db.expire_all()
    assert node_crud.children_of(db, folder_id) == []
    assert node_crud.get(db, folder_id) is None


def test_failed_job_is_retried_with_backoff_and_dropped(db, admin, make_project, put_file, purge_queue, monkeypatch):
    project = make_project()
    node = put_file(admin, project, "f.txt", b"x")
    lifecycle_service.permanent_delete(db, admin, node.id)

    def boom(session, node_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(lifecycle_service, "purge_node", boom)

    assert drain_purge_queue(now=1000.0) == []
    job = purge_queue.pending()[0]
    assert job.attempts == 1
    assert job.not_before == 1000.0 + backoff_delay(1)

    # 未到期的任务原样保留
    drain_purge_queue(now=1000.5)
    assert purge_queue.pending()[0].attempts == 1

    now = 1000.0
    for _ in range(10):
        now += 10_000
        drain_purge_queue(now=now)
        if not len(purge_queue):
            break
    assert len(purge_queue) == 0

    db.expire_all()
    assert node_crud.get(db, node.id).status == NodeStatus.DELETED_PENDING.value


def test_backoff_doubles():
    assert backoff_delay(2) == backoff_delay(1) * 2
    assert backoff_delay(3) == backoff_delay(1) * 4


def test_recover_pending_requeues_roots_once(db, admin, make_project, put_file, purge_queue):
    project = make_project()
    folder = _folder(db, admin, project, "old")
    inner = put_file(admin, project, "inner.txt", b"i", parent_id=folder.id)
    put_file(admin, project, "loose.txt", b"1")
    loose_v2 = put_file(admin, project, "loose.txt", b"2", resolution="update")

    for row in [folder, inner, *node_crud.cohort_of(db, loose_v2)]:
        row.status = NodeStatus.DELETED_PENDING.value
    db.commit()

    assert recover_pending(db) == 2
    assert {job.node_id for job in purge_queue.pending()} >= {folder.id}
    assert recover_pending(db) == 0

    drain_purge_queue()
    db.expire_all()
    assert node_crud.by_status(db, status=NodeStatus.DELETED_PENDING) == []
