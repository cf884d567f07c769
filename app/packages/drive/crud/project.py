"""项目与项目成员 CRUD 封装。"""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.project import Project, ProjectMember


class CRUDProject(CRUDBase[Project]):
    def first_by_name(self, db: Session, name: str) -> Optional[Project]:
        """按名称查找项目；名称不唯一时取最早创建的一个。"""
        return (
            self.query(db)
            .filter(Project.name == name)
            .order_by(Project.created_at.asc(), Project.id.asc())
            .first()
        )

    def list_all(self, db: Session) -> List[Project]:
        return self.query(db).order_by(Project.created_at.desc()).all()

    def list_by_ids(self, db: Session, ids: Iterable[str]) -> List[Project]:
        id_list = list(ids)
        if not id_list:
            return []
        return self.query(db).filter(Project.id.in_(id_list)).order_by(Project.created_at.desc()).all()

    def total_usage(self, db: Session) -> int:
        return int(db.query(func.coalesce(func.sum(Project.current_storage_bytes), 0)).scalar() or 0)


class CRUDProjectMember(CRUDBase[ProjectMember]):
    def emails(self, db: Session, project_id: str) -> List[str]:
        rows = (
            db.query(ProjectMember.user_email)
            .filter(ProjectMember.project_id == project_id)
            .order_by(ProjectMember.user_email.asc())
            .all()
        )
        return [row[0] for row in rows]

    def project_ids_for(self, db: Session, email: str) -> List[str]:
        rows = db.query(ProjectMember.project_id).filter(func.lower(ProjectMember.user_email) == email.lower()).all()
        return [row[0] for row in rows]

    def is_member(self, db: Session, *, project_id: str, email: str) -> bool:
        query = (
            self.query(db)
            .filter(ProjectMember.project_id == project_id)
            .filter(func.lower(ProjectMember.user_email) == email.lower())
        )
        return db.query(query.exists()).scalar()

    def add_many(self, db: Session, *, project_id: str, emails: Iterable[str]) -> None:
        for email in emails:
            db.add(ProjectMember(project_id=project_id, user_email=email))
        db.flush()

    def remove_many(self, db: Session, *, project_id: str, emails: Iterable[str]) -> None:
        email_list = list(emails)
        if not email_list:
            return
        (
            self.query(db)
            .filter(ProjectMember.project_id == project_id)
            .filter(ProjectMember.user_email.in_(email_list))
            .delete(synchronize_session=False)
        )

    def delete_by_project(self, db: Session, project_id: str) -> None:
        self.query(db).filter(ProjectMember.project_id == project_id).delete(synchronize_session=False)


project_crud = CRUDProject(Project)
project_member_crud = CRUDProjectMember(ProjectMember)
