"""
Course CRUD Operations
hot（courses）/ cold（historical_courses）兩張表的讀寫
"""
from typing import Iterable, List, Optional, Sequence, Set

from sqlalchemy import String, cast, delete, func, or_, select, tuple_
from sqlalchemy.orm import Session

from ntpu_assistant.crud.common import like_pattern, upsert_rows
from ntpu_assistant.models.course import Course, HistoricalCourse
from ntpu_assistant.schemas import cache as schemas


def _course_rows(courses: Iterable[schemas.Course], cached_at: int) -> List[dict]:
    rows = {}
    for c in courses:
        row = c.model_dump()
        row["cached_at"] = cached_at
        rows[c.uid] = row
    return list(rows.values())


def _semester_filter(model, semesters: Sequence[schemas.Semester]):
    return tuple_(model.year, model.term).in_([(s.year, s.term) for s in semesters])


def save_hot_courses(db: Session, courses: List[schemas.Course], cached_at: int) -> int:
    """
    寫入近期課程，並在同一交易內把相同學期從 cold 表移除

    呼叫端負責 commit，確保 insert 與 delete 一起生效
    """
    if not courses:
        return 0
    semesters = sorted({c.semester for c in courses})
    count = upsert_rows(db, Course, _course_rows(courses, cached_at), ["uid"])
    db.execute(delete(HistoricalCourse).where(_semester_filter(HistoricalCourse, semesters)))
    return count


def save_historical_courses(db: Session, courses: List[schemas.Course], cached_at: int) -> int:
    """寫入歷史課程，已在 hot 表的學期直接略過"""
    if not courses:
        return 0
    semesters = sorted({c.semester for c in courses})
    hot = set(
        schemas.Semester(y, t)
        for y, t in db.execute(
            select(Course.year, Course.term)
            .where(_semester_filter(Course, semesters))
            .group_by(Course.year, Course.term)
        ).all()
    )
    kept = [c for c in courses if c.semester not in hot]
    return upsert_rows(db, HistoricalCourse, _course_rows(kept, cached_at), ["uid"])


def get_course_by_uid(db: Session, uid: str):
    """先查 hot 再查 cold"""
    course = db.get(Course, uid)
    if course is None:
        course = db.get(HistoricalCourse, uid)
    return course


def get_courses_by_uids(db: Session, uids: Sequence[str]) -> List[Course]:
    if not uids:
        return []
    stmt = select(Course).where(Course.uid.in_(list(uids)))
    return list(db.execute(stmt).scalars())


def search_courses(
    db: Session,
    keyword: str,
    semesters: Optional[Sequence[schemas.Semester]] = None,
    historical: bool = False,
    limit: int = 50,
) -> list:
    """課名或教師模糊查詢，新學期在前"""
    model = HistoricalCourse if historical else Course
    pattern = like_pattern(keyword)
    stmt = select(model).where(or_(
        model.title.like(pattern, escape="\\"),
        cast(model.teachers, String).like(pattern, escape="\\"),
    ))
    if semesters:
        stmt = stmt.where(_semester_filter(model, semesters))
    stmt = stmt.order_by(model.year.desc(), model.term.desc(), model.uid).limit(limit)
    return list(db.execute(stmt).scalars())


def get_courses_by_year_term_paginated(
    db: Session, year: int, term: int, limit: int, offset: int
) -> List[Course]:
    stmt = (
        select(Course)
        .where(Course.year == year, Course.term == term)
        .order_by(Course.uid)
        .limit(limit)
        .offset(offset)
    )
    return list(db.execute(stmt).scalars())


def count_courses_by_semester(db: Session, year: int, term: int, historical: bool = False) -> int:
    model = HistoricalCourse if historical else Course
    stmt = select(func.count()).select_from(model).where(model.year == year, model.term == term)
    return db.execute(stmt).scalar_one()


def distinct_recent_semesters(db: Session, limit: int) -> List[schemas.Semester]:
    """hot 表中有資料的學期，新到舊"""
    stmt = (
        select(Course.year, Course.term)
        .group_by(Course.year, Course.term)
        .order_by(Course.year.desc(), Course.term.desc())
        .limit(limit)
    )
    return [schemas.Semester(y, t) for y, t in db.execute(stmt).all()]


def hot_semesters(db: Session) -> Set[schemas.Semester]:
    stmt = select(Course.year, Course.term).group_by(Course.year, Course.term)
    return {schemas.Semester(y, t) for y, t in db.execute(stmt).all()}


def delete_semesters(db: Session, semesters: Sequence[schemas.Semester], historical: bool = False) -> int:
    if not semesters:
        return 0
    model = HistoricalCourse if historical else Course
    result = db.execute(delete(model).where(_semester_filter(model, semesters)))
    return result.rowcount or 0


def demote_semesters(db: Session, semesters: Sequence[schemas.Semester]) -> int:
    """把不再屬於近期的學期從 hot 搬到 cold（同一交易）"""
    if not semesters:
        return 0
    rows = db.execute(select(Course).where(_semester_filter(Course, semesters))).scalars().all()
    moved = [
        {c.name: getattr(row, c.name) for c in HistoricalCourse.__table__.columns}
        for row in rows
    ]
    upsert_rows(db, HistoricalCourse, moved, ["uid"])
    db.execute(delete(Course).where(_semester_filter(Course, semesters)))
    return len(moved)
