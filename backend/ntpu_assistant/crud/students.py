"""
Student CRUD Operations
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ntpu_assistant.crud.common import like_pattern, upsert_rows
from ntpu_assistant.models.student import Student
from ntpu_assistant.schemas import cache as schemas


def save_students(db: Session, students: List[schemas.Student], cached_at: int) -> int:
    """批次寫入學生資料（upsert）"""
    rows = [
        {
            "id": s.id,
            "name": s.name,
            "year": s.year,
            "department": s.department,
            "cached_at": cached_at,
        }
        for s in students
    ]
    return upsert_rows(db, Student, rows, ["id"])


def get_student_by_id(db: Session, student_id: str) -> Optional[Student]:
    return db.get(Student, student_id)


def search_students_by_name(db: Session, name: str, limit: int = 50) -> List[Student]:
    """姓名模糊查詢，依學號排序"""
    stmt = (
        select(Student)
        .where(Student.name.like(like_pattern(name), escape="\\"))
        .order_by(Student.id)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def get_students_by_year_department(db: Session, year: int, department: str) -> List[Student]:
    stmt = (
        select(Student)
        .where(Student.year == year, Student.department == department)
        .order_by(Student.id)
    )
    return list(db.execute(stmt).scalars())
