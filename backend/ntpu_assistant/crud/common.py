"""
Shared CRUD helpers - 共用的批次 upsert / TTL 刪除 / 計數
"""
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

# SQLite 單一語句的參數上限保守估計
UPSERT_CHUNK = 200


def _chunks(rows: List[Dict], size: int) -> Iterable[List[Dict]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def upsert_rows(db: Session, model, rows: List[Dict], key_columns: Sequence[str]) -> int:
    """
    INSERT ... ON CONFLICT DO UPDATE

    不 commit，交易邊界由呼叫端決定
    """
    if not rows:
        return 0
    update_columns = [c.name for c in model.__table__.columns if c.name not in key_columns]
    for chunk in _chunks(rows, UPSERT_CHUNK):
        stmt = sqlite_insert(model).values(chunk)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key_columns),
            set_={name: stmt.excluded[name] for name in update_columns},
        )
        db.execute(stmt)
    return len(rows)


def delete_older_than(db: Session, model, threshold: int) -> int:
    """刪除 cached_at < threshold 的資料，等於 threshold 的保留"""
    result = db.execute(delete(model).where(model.cached_at < threshold))
    return result.rowcount or 0


def count_rows(db: Session, model, fresh_since: Optional[int] = None) -> int:
    stmt = select(func.count()).select_from(model)
    if fresh_since is not None:
        stmt = stmt.where(model.cached_at >= fresh_since)
    return db.execute(stmt).scalar_one()


def count_between(db: Session, model, expired_before: int, stale_before: int) -> int:
    """尚未過期但已超過 soft TTL 的筆數"""
    stmt = select(func.count()).select_from(model).where(
        model.cached_at >= expired_before,
        model.cached_at < stale_before,
    )
    return db.execute(stmt).scalar_one()


def like_pattern(keyword: str) -> str:
    escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
