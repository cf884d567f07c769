"""项目引用与目录路径解析。"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from app.packages.drive.core.enums import NodeStatus, NodeType
from app.packages.drive.core.exceptions import AppException, NotFoundError
from app.packages.drive.crud.node import node_crud
from app.packages.drive.services.drive_service import drive_service
from app.packages.drive.services.lifecycle_service import lifecycle_service
from app.packages.drive.services.path_resolver import (
    ById,
    ByName,
    folder_path,
    parse_project_ref,
    resolve_path,
    resolve_project,
    split_path,
    validate_node_name,
)


def test_parse_project_ref_distinguishes_uuid_and_name():
    ref = parse_project_ref("3F2504E0-4F89-11D3-9A0C-0305E82C3301")
    assert ref == ById("3f2504e0-4f89-11d3-9a0c-0305e82c3301")
    assert parse_project_ref("Marketing%20Team") == ByName("Marketing Team")
    with pytest.raises(AppException):
        parse_project_ref("  ")


def test_resolve_project_by_id_and_name(db, make_project):
    project = make_project("Design Assets")
    assert resolve_project(db, project.id).id == project.id
    assert resolve_project(db, "Design%20Assets").id == project.id
    with pytest.raises(NotFoundError):
        resolve_project(db, "missing-project")


def test_resolve_path_walks_folders_with_decoded_segments(db, admin, make_project):
    project = make_project()
    top = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=None, name="2024 reports")
    inner = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=top.id, name="Q1")

    resolved = resolve_path(db, project, split_path("/2024%20reports/Q1/"))
    assert resolved.folder_id == inner.id
    assert [crumb.name for crumb in resolved.breadcrumbs] == ["2024 reports", "Q1"]
    assert folder_path(db, inner) == ["2024 reports", "Q1"]

    assert resolve_path(db, project, []).folder_id is None


def test_resolve_path_missing_segment_is_not_found(db, admin, make_project):
    project = make_project()
    drive_service.create_folder(db, admin, project_ref=project.id, parent_id=None, name="a")
    with pytest.raises(NotFoundError):
        resolve_path(db, project, ["a", "b"])


def test_resolve_path_ignores_trashed_folders(db, admin, make_project):
    project = make_project()
    folder = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=None, name="old")
    lifecycle_service.trash(db, admin, folder.id)
    with pytest.raises(NotFoundError):
        resolve_path(db, project, ["old"])


@pytest.mark.parametrize("raw", ["", "   ", "a/b", ".", ".."])
def test_validate_node_name_rejects_invalid(raw):
    with pytest.raises(AppException):
        validate_node_name(raw)


def test_validate_node_name_strips_whitespace():
    assert validate_node_name("  notes.txt ") == "notes.txt"


def test_move_folder_into_its_descendant_is_rejected(db, admin, make_project):
    project = make_project()
    outer = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=None, name="outer")
    inner = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=outer.id, name="inner")

    with pytest.raises(AppException) as excinfo:
        drive_service.move(db, admin, outer.id, inner.id)
    assert excinfo.value.status_code == 400
    with pytest.raises(AppException):
        drive_service.move(db, admin, outer.id, outer.id)


def test_move_and_rename_carry_whole_cohort(db, admin, make_project, put_file):
    project = make_project()
    target = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=None, name="archive")
    put_file(admin, project, "log.txt", b"1")
    v2 = put_file(admin, project, "log.txt", b"22", resolution="update")

    drive_service.rename(db, admin, v2.id, "log-2024.txt")
    drive_service.move(db, admin, v2.id, target.id)

    versions = drive_service.list_children(db, admin, project_ref=project.id, path="archive")["nodes"]
    assert [(item["name"], item["version"]) for item in versions] == [("log-2024.txt", 2)]
    assert drive_service.list_children(db, admin, project_ref=project.id)["nodes"][0]["name"] == "archive"


def test_rename_collision_is_conflict(db, admin, make_project, put_file):
    project = make_project()
    put_file(admin, project, "a.txt", b"a")
    b = put_file(admin, project, "b.txt", b"b")
    with pytest.raises(AppException) as excinfo:
        drive_service.rename(db, admin, b.id, "a.txt")
    assert excinfo.value.status_code == 409


def test_rename_onto_trashed_file_name_is_conflict(db, admin, make_project, put_file):
    project = make_project()
    old = put_file(admin, project, "a.txt", b"old")
    lifecycle_service.trash(db, admin, old.id)
    b = put_file(admin, project, "b.txt", b"new")

    with pytest.raises(AppException) as excinfo:
        drive_service.rename(db, admin, b.id, "a.txt")
    assert excinfo.value.status_code == 409

    db.expire_all()
    rows = node_crud.versions(db, project_id=project.id, parent_id=None, name="a.txt", include_pending=True)
    assert [(row.version, row.status) for row in rows] == [(1, NodeStatus.TRASHED.value)]


def test_move_onto_pending_file_name_at_root_is_conflict(db, admin, make_project, put_file):
    project = make_project()
    folder = drive_service.create_folder(db, admin, project_ref=project.id, parent_id=None, name="inbox")
    pending = put_file(admin, project, "report.pdf", b"v1")
    lifecycle_service.permanent_delete(db, admin, pending.id)
    nested = put_file(admin, project, "report.pdf", b"v1", parent_id=folder.id)

    with pytest.raises(AppException) as excinfo:
        drive_service.move(db, admin, nested.id, None)
    assert excinfo.value.status_code == 409


def test_root_file_versions_are_unique(db, admin, make_project, put_file):
    project = make_project()
    node = put_file(admin, project, "a.txt", b"a")
    duplicate = {
        "project_id": project.id,
        "parent_id": None,
        "name": "a.txt",
        "type": NodeType.FILE.value,
        "blob_key": "projects/dup/a.txt",
        "size": 1,
        "version": node.version,
    }
    with pytest.raises(IntegrityError):
        node_crud.create(db, duplicate)
    db.rollback()
