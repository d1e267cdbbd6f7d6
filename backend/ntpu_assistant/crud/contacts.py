"""
Contact CRUD Operations
"""
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ntpu_assistant.crud.common import like_pattern, upsert_rows
from ntpu_assistant.models.contact import Contact
from ntpu_assistant.schemas import cache as schemas


def save_contacts(db: Session, contacts: List[schemas.Contact], cached_at: int) -> int:
    """批次寫入通訊錄（同一批內重複的 uid 以最後一筆為準）"""
    by_uid = {}
    for c in contacts:
        row = c.model_dump()
        row["cached_at"] = cached_at
        by_uid[c.uid] = row
    return upsert_rows(db, Contact, list(by_uid.values()), ["uid"])


def get_contact_by_uid(db: Session, uid: str) -> Optional[Contact]:
    return db.get(Contact, uid)


def search_contacts(db: Session, keyword: str, limit: int = 50) -> List[Contact]:
    """
    名稱 / 英文名 / 單位 / 職稱 模糊查詢

    單位排在個人之前，方便先列出單位資訊
    """
    pattern = like_pattern(keyword)
    stmt = (
        select(Contact)
        .where(or_(
            Contact.name.like(pattern, escape="\\"),
            Contact.name_en.like(pattern, escape="\\"),
            Contact.organization.like(pattern, escape="\\"),
            Contact.title.like(pattern, escape="\\"),
        ))
        .order_by(Contact.type.desc(), Contact.organization, Contact.name)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def get_contacts_by_organization(db: Session, organization: str) -> List[Contact]:
    stmt = (
        select(Contact)
        .where(Contact.organization == organization, Contact.type == "individual")
        .order_by(Contact.name)
    )
    return list(db.execute(stmt).scalars())
