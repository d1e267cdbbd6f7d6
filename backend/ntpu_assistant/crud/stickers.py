"""
Sticker CRUD Operations
"""
from typing import List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ntpu_assistant.crud.common import upsert_rows
from ntpu_assistant.models.sticker import Sticker
from ntpu_assistant.schemas import cache as schemas


def save_stickers(db: Session, stickers: List[schemas.Sticker], cached_at: int) -> int:
    rows = {}
    for s in stickers:
        row = s.model_dump()
        row["cached_at"] = cached_at
        rows[s.url] = row
    return upsert_rows(db, Sticker, list(rows.values()), ["url"])


def get_all_stickers(db: Session) -> List[Sticker]:
    return list(db.execute(select(Sticker).order_by(Sticker.url)).scalars())


def record_sticker_use(db: Session, url: str, success: bool = True) -> None:
    column = Sticker.success_count if success else Sticker.failure_count
    db.execute(update(Sticker).where(Sticker.url == url).values({column: column + 1}))
