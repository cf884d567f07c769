"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.enums import WhitelistRole
from app.packages.drive.crud.whitelist import whitelist_crud
from app.packages.drive.db import session as db_session
from app.packages.drive.models import StorageNode, Project, ProjectMember, WhitelistUser  # noqa: F401 - table registration
from app.packages.drive.models.base import Base

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create all database tables if they do not exist and seed the admin whitelist."""
    Base.metadata.create_all(bind=db_session.engine)

    session = db_session.SessionLocal()
    try:
        _seed_admin_whitelist(session)
        session.commit()
    except Exception:  # pragma: no cover - initialization failures should surface
        session.rollback()
        logger.exception("Failed to seed default data during database initialization")
        raise
    finally:
        session.close()


def _seed_admin_whitelist(session: Session) -> None:
    """把 ``ADMIN_EMAILS`` 中的邮箱写入白名单并提升为管理员，已存在的条目只更新角色。"""
    for email in get_settings().admin_emails:
        entry = whitelist_crud.get_by_email(session, email)
        if entry is None:
            session.add(WhitelistUser(email=email, role=WhitelistRole.ADMIN.value, description="bootstrap admin"))
            logger.info("Seeded admin whitelist entry for %s", email)
        elif entry.role != WhitelistRole.ADMIN.value:
            entry.role = WhitelistRole.ADMIN.value
            session.add(entry)
