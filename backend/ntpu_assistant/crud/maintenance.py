"""
Maintenance Operations - 清空表格（reset 模式）
"""
from typing import Sequence

from sqlalchemy import delete
from sqlalchemy.orm import Session


def truncate_tables(db: Session, models: Sequence) -> int:
    total = 0
    for model in models:
        result = db.execute(delete(model))
        total += result.rowcount or 0
    return total
