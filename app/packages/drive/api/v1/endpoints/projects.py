"""项目管理路由：项目增删查、设置与成员、配额查询与校准、全局统计。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.projects import (
    ProjectCreateBody,
    ProjectListResponse,
    ProjectMutationResponse,
    ProjectResponse,
    ProjectSettingsBody,
)
from app.packages.drive.core.dependencies import get_current_identity, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.services.access_policy import Identity
from app.packages.drive.services.project_service import project_service
from app.packages.drive.services.upload_service import upload_service

router = APIRouter(tags=["projects"])


@router.get("/projects", response_model=ProjectListResponse)
def list_projects(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("获取项目列表成功", project_service.list_projects(db, identity))


@router.post("/projects", response_model=ProjectResponse)
def create_project(
    payload: ProjectCreateBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    data = project_service.create_project(
        db,
        identity,
        name=payload.name,
        description=payload.description,
        max_storage_bytes=payload.max_storage_bytes,
        members=payload.members,
    )
    return create_response("项目创建成功", data)


@router.delete("/projects/{project_ref}", response_model=ProjectMutationResponse)
def delete_project(
    project_ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("项目已删除", project_service.delete_project(db, identity, project_ref))


@router.get("/projects/{project_ref}/settings", response_model=ProjectResponse)
def get_project_settings(
    project_ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("获取项目设置成功", project_service.get_project_settings(db, identity, project_ref))


@router.patch("/projects/{project_ref}/settings", response_model=ProjectResponse)
def update_project_settings(
    project_ref: str,
    payload: ProjectSettingsBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    data = project_service.update_project_settings(
        db,
        identity,
        project_ref,
        settings=payload.settings.model_dump(exclude_unset=True) if payload.settings else None,
        members=payload.members,
        description=payload.description,
        max_storage_bytes=payload.max_storage_bytes,
    )
    return create_response("项目设置已更新", data)


@router.get("/projects/{project_ref}/quota", response_model=ProjectResponse)
def check_quota(
    project_ref: str,
    size_delta: int = Query(0, alias="sizeDelta"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    data = upload_service.check_quota(db, identity, project_ref=project_ref, size_delta=size_delta)
    return create_response("获取配额成功", data)


@router.post("/projects/{project_ref}/quota/reconcile", response_model=ProjectResponse)
def reconcile_quota(
    project_ref: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("配额已校准", project_service.reconcile_usage(db, identity, project_ref))


@router.get("/stats", response_model=ProjectResponse)
def storage_stats(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("获取统计成功", project_service.stats(db, identity))
