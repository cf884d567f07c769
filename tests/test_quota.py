"""配额计数器：快速失败、非负与校准。"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from app.packages.drive.core.exceptions import QuotaExceededError
from app.packages.drive.services.lifecycle_service import lifecycle_service
from app.packages.drive.services.quota_service import quota_service
from app.packages.drive.services.upload_service import upload_service


def test_plan_upload_fails_fast_when_quota_exceeded(db, admin, make_project, put_file):
    project = make_project(max_storage_bytes=100)
    put_file(admin, project, "a.bin", b"x" * 80)

    with pytest.raises(QuotaExceededError) as excinfo:
        upload_service.plan_upload(
            db, admin, project_ref=project.id, parent_id=None, filename="b.bin", file_size=30
        )
    assert excinfo.value.status_code == 403
    assert excinfo.value.data["current_storage_bytes"] == 80


def test_overwrite_with_smaller_file_is_allowed_when_full(db, admin, make_project, put_file):
    project = make_project(max_storage_bytes=100)
    put_file(admin, project, "a.bin", b"x" * 100)

    put_file(admin, project, "a.bin", b"y" * 40, resolution="overwrite")
    db.refresh(project)
    assert project.current_storage_bytes == 40


def test_counter_never_goes_negative(db, make_project):
    project = make_project()
    quota_service.apply(db, project.id, 50, auto_commit=True)
    quota_service.apply(db, project.id, -500, auto_commit=True)
    db.refresh(project)
    assert project.current_storage_bytes == 0


def test_reconcile_recomputes_from_active_and_trashed_files(db, admin, make_project, put_file):
    project = make_project()
    put_file(admin, project, "keep.txt", b"a" * 10)
    trashed = put_file(admin, project, "old.txt", b"b" * 7)
    lifecycle_service.trash(db, admin, trashed.id)

    quota_service.apply(db, project.id, 999, auto_commit=True)
    status = quota_service.reconcile(db, project)
    assert status.current_storage_bytes == 17


def test_check_quota_reports_allowed(db, admin, make_project):
    project = make_project(max_storage_bytes=100)
    data = upload_service.check_quota(db, admin, project_ref=project.id, size_delta=101)
    assert data["allowed"] is False
    assert data["available_bytes"] == 100
    assert upload_service.check_quota(db, admin, project_ref=project.name, size_delta=100)["allowed"] is True


def test_apply_falls_back_when_atomic_update_fails(db, make_project, monkeypatch):
    project = make_project()
    project.description = "pending change"
    db.flush()

    def broken_increment(session, project_id, size_delta):
        session.execute(text("UPDATE missing_table SET size = size + 1"))

    monkeypatch.setattr(quota_service, "_atomic_increment", broken_increment)
    quota_service.apply(db, project.id, 42)
    db.commit()

    db.refresh(project)
    assert project.current_storage_bytes == 42
    assert project.description == "pending change"
