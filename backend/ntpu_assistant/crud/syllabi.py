"""
Syllabus CRUD Operations
"""
from typing import Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ntpu_assistant.crud.common import upsert_rows
from ntpu_assistant.models.syllabus import Syllabus
from ntpu_assistant.schemas import cache as schemas


def save_syllabi(db: Session, syllabi: List[schemas.Syllabus], cached_at: int) -> int:
    """批次寫入大綱，content_hash 一律由內容重新計算"""
    rows = {}
    for s in syllabi:
        row = s.with_hash().model_dump()
        row["cached_at"] = cached_at
        rows[s.uid] = row
    return upsert_rows(db, Syllabus, list(rows.values()), ["uid"])


def get_syllabus_by_uid(db: Session, uid: str) -> Optional[Syllabus]:
    return db.get(Syllabus, uid)


def get_content_hash(db: Session, uid: str) -> str:
    value = db.execute(select(Syllabus.content_hash).where(Syllabus.uid == uid)).scalar_one_or_none()
    return value or ""


def iter_indexable_syllabi(db: Session, batch_size: int = 500) -> Iterator[Syllabus]:
    """依 uid 排序逐批讀出有內容的大綱（BM25 重建使用）"""
    last_uid = ""
    while True:
        stmt = (
            select(Syllabus)
            .where(Syllabus.content_hash != "", Syllabus.uid > last_uid)
            .order_by(Syllabus.uid)
            .limit(batch_size)
        )
        rows = list(db.execute(stmt).scalars())
        if not rows:
            return
        yield from rows
        last_uid = rows[-1].uid


def count_indexable_syllabi(db: Session) -> int:
    stmt = select(func.count()).select_from(Syllabus).where(Syllabus.content_hash != "")
    return db.execute(stmt).scalar_one()
