"""白名单 CRUD。"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.whitelist import WhitelistUser


class CRUDWhitelist(CRUDBase[WhitelistUser]):
    def get_by_email(self, db: Session, email: Optional[str]) -> Optional[WhitelistUser]:
        if not email:
            return None
        return self.query(db).filter(func.lower(WhitelistUser.email) == email.strip().lower()).first()


whitelist_crud = CRUDWhitelist(WhitelistUser)
