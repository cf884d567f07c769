"""API v1 汇总路由：统一挂载网盘与项目管理子路由。"""

from fastapi import APIRouter

from app.packages.drive.api.v1.endpoints import drive, projects

api_router = APIRouter()
api_router.include_router(drive.router)
api_router.include_router(projects.router)
