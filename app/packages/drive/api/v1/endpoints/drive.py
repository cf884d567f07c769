"""网盘路由：目录浏览、节点管理、回收站、上传、版本、搜索与公开访问。

变更类接口在返回前只完成同步部分；永久删除的物理清理、上传后的版本保留与通知
通过 ``BackgroundTasks`` 在响应之后执行。
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.drive import (
    DriveListResponse,
    DriveMutationResponse,
    FolderCreateBody,
    MoveBody,
    NodeListResponse,
    NodeResponse,
    PublicNodeBody,
    RenameBody,
    RollbackBody,
    SharingBody,
    UploadCompleteBody,
    UploadInitBody,
)
from app.packages.drive.core.dependencies import get_current_identity, get_db, get_optional_identity
from app.packages.drive.core.enums import ActivityAction
from app.packages.drive.core.responses import create_response
from app.packages.drive.services.access_policy import Identity, ensure_admin
from app.packages.drive.services.drive_service import drive_service
from app.packages.drive.services.lifecycle_service import lifecycle_service
from app.packages.drive.services.node_view import node_to_dict
from app.packages.drive.services.purge_worker import drain_purge_queue
from app.packages.drive.services.upload_service import run_post_commit, upload_service

router = APIRouter(tags=["drive"])


@router.get("/drive", response_model=DriveListResponse)
def list_children(
    project: str = Query(..., min_length=1),
    path: Optional[str] = Query(None),
    parent_id: Optional[str] = Query(None, alias="parentId"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    data = drive_service.list_children(db, identity, project_ref=project, path=path, parent_id=parent_id)
    return create_response("获取目录内容成功", data)


@router.post("/drive/folders", response_model=NodeResponse)
def create_folder(
    payload: FolderCreateBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    folder = drive_service.create_folder(
        db, identity, project_ref=payload.projectId, parent_id=payload.parentId, name=payload.name
    )
    return create_response("新建文件夹成功", node_to_dict(folder))


@router.patch("/drive/nodes/{node_id}/rename", response_model=NodeResponse)
def rename_node(
    node_id: str,
    payload: RenameBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    node = drive_service.rename(db, identity, node_id, payload.name)
    return create_response("重命名成功", node_to_dict(node))


@router.patch("/drive/nodes/{node_id}/move", response_model=NodeResponse)
def move_node(
    node_id: str,
    payload: MoveBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    node = drive_service.move(db, identity, node_id, payload.targetParentId)
    return create_response("移动成功", node_to_dict(node))


@router.patch("/drive/nodes/{node_id}/sharing", response_model=NodeResponse)
def update_sharing(
    node_id: str,
    payload: SharingBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    node = drive_service.update_sharing(db, identity, node_id, scope=payload.scope, password=payload.password)
    return create_response("共享设置已更新", node_to_dict(node))


@router.post("/drive/nodes/{node_id}/trash", response_model=NodeResponse)
def trash_node(
    node_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    node = lifecycle_service.trash(db, identity, node_id)
    return create_response("已移入回收站", node_to_dict(node))


@router.post("/drive/nodes/{node_id}/restore", response_model=NodeResponse)
def restore_node(
    node_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    node = lifecycle_service.restore(db, identity, node_id)
    return create_response("已恢复", node_to_dict(node))


@router.delete("/drive/nodes/{node_id}", response_model=DriveMutationResponse)
def delete_node(
    node_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """永久删除：节点立即从所有列表中消失，物理清理在后台完成。"""
    data = lifecycle_service.permanent_delete(db, identity, node_id)
    background_tasks.add_task(drain_purge_queue)
    return create_response("已提交永久删除", data)


@router.get("/drive/nodes/{node_id}/download")
def download_node(
    node_id: str,
    password: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(get_optional_identity),
):
    node, stream = drive_service.download(db, node_id, identity=identity, password=password)
    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quote(node.name)}"}
    return StreamingResponse(stream, media_type=node.mime_type or "application/octet-stream", headers=headers)


@router.get("/drive/trash", response_model=NodeListResponse)
def list_trash(
    project: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("获取回收站成功", lifecycle_service.list_trash(db, identity, project))


@router.post("/drive/purge/drain", response_model=DriveMutationResponse)
def drain_purge_jobs(
    max_jobs: int = Query(100, alias="maxJobs", ge=1, le=1000),
    identity: Identity = Depends(get_current_identity),
):
    """运维接口：立即处理已到期的清理任务。"""
    ensure_admin(identity)
    reports = drain_purge_queue(max_jobs)
    return create_response(
        "清理任务已处理",
        [
            {
                "node_id": report.node_id,
                "freed_bytes": report.freed_bytes,
                "deleted_rows": report.deleted_rows,
                "failed_keys": report.failed_keys,
            }
            for report in reports
        ],
    )


# ----------------------------
# 上传
# ----------------------------


@router.post("/drive/upload/init", response_model=DriveMutationResponse)
def upload_init(
    payload: UploadInitBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """申请上传地址；同名文件且未指定处理方式时返回 409 及最新版本信息。"""
    data = upload_service.plan_upload(
        db,
        identity,
        project_ref=payload.projectId,
        parent_id=payload.parentId,
        filename=payload.filename,
        file_size=payload.fileSize,
        file_type=payload.fileType,
        resolution=payload.resolution,
    )
    return create_response("上传地址已生成", data)


@router.put("/drive/upload/proxy", response_model=DriveMutationResponse)
async def upload_proxy(request: Request, t: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """LOCAL 存储的上传地址：凭短期令牌写入对象，无需登录态。"""
    body = await request.body()
    data = upload_service.receive_proxy_upload(db, t, body, request.headers.get("content-type"))
    return create_response("上传成功", data)


@router.post("/drive/upload/complete", response_model=NodeResponse)
def upload_complete(
    payload: UploadCompleteBody,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    result = upload_service.commit_write(
        db,
        identity,
        project_ref=payload.projectId,
        parent_id=payload.parentId,
        key=payload.key,
        filename=payload.filename,
        size=payload.size,
        commit_token=payload.commitToken,
        mime_type=payload.type,
        resolution=payload.resolution,
    )
    node = result.node
    background_tasks.add_task(
        run_post_commit,
        project_id=result.project_id,
        parent_id=node.parent_id,
        filename=node.name,
        user_id=identity.user_id,
        user_email=identity.email,
        action=result.action,
        silent=payload.silent,
    )
    return create_response("上传完成", node_to_dict(node))


# ----------------------------
# 版本
# ----------------------------


@router.get("/drive/versions", response_model=NodeListResponse)
def list_versions(
    node_id: str = Query(..., alias="nodeId"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    versions = upload_service.list_versions(db, identity, node_id)
    return create_response("获取版本历史成功", [node_to_dict(item) for item in versions])


@router.post("/drive/versions/rollback", response_model=NodeResponse)
def rollback_version(
    payload: RollbackBody,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    node = upload_service.rollback_to_version(db, identity, payload.nodeId)
    background_tasks.add_task(
        run_post_commit,
        project_id=node.project_id,
        parent_id=node.parent_id,
        filename=node.name,
        user_id=identity.user_id,
        user_email=identity.email,
        action=ActivityAction.VERSION_UPDATED,
        silent=True,
    )
    return create_response("已回滚为新版本", node_to_dict(node))


# ----------------------------
# 搜索与公开访问
# ----------------------------


@router.get("/drive/search", response_model=NodeListResponse)
def search_nodes(
    q: str = Query(..., min_length=1),
    project_id: str = Query(..., alias="projectId", min_length=1),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return create_response("搜索成功", drive_service.search(db, identity, project_ref=project_id, keyword=q))


@router.post("/drive/public-node", response_model=NodeResponse)
def public_node(
    payload: PublicNodeBody,
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(get_optional_identity),
):
    data = drive_service.resolve_public_node(db, payload.id, identity=identity, password=payload.password)
    return create_response("获取节点成功", data)
