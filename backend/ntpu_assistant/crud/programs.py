"""
Program CRUD Operations
學程以集合同步；課程學程關聯按課程整批替換
"""
from typing import Dict, List, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ntpu_assistant.crud.common import like_pattern, upsert_rows
from ntpu_assistant.models.course import Course
from ntpu_assistant.models.program import CourseProgram, Program
from ntpu_assistant.schemas import cache as schemas

IN_CHUNK = 500


def sync_programs(db: Session, programs: List[schemas.Program], now: int) -> schemas.ProgramSyncResult:
    """
    讓 programs 表與傳入集合完全一致

    新增缺少的、更新內容有變的、刪除不在集合中的；內容相同的列不會被碰到
    """
    wanted: Dict[str, schemas.Program] = {p.name: p for p in programs if p.name}
    existing = {p.name: p for p in db.execute(select(Program)).scalars()}
    result = schemas.ProgramSyncResult()

    for name, program in wanted.items():
        current = existing.get(name)
        if current is None:
            db.add(Program(name=name, category=program.category, url=program.url,
                           created_at=now, updated_at=now))
            result.inserted += 1
        elif current.category != program.category or current.url != program.url:
            current.category = program.category
            current.url = program.url
            current.updated_at = now
            result.updated += 1

    stale = [name for name in existing if name not in wanted]
    for start in range(0, len(stale), IN_CHUNK):
        db.execute(delete(Program).where(Program.name.in_(stale[start:start + IN_CHUNK])))
    result.deleted = len(stale)
    return result


def get_all_programs(db: Session) -> List[Program]:
    return list(db.execute(select(Program).order_by(Program.category, Program.name)).scalars())


def search_programs(db: Session, keyword: str, limit: int = 30) -> List[Program]:
    stmt = (
        select(Program)
        .where(Program.name.like(like_pattern(keyword), escape="\\"))
        .order_by(Program.name)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def replace_course_programs(
    db: Session, course_uids: Sequence[str], edges: List[schemas.CourseProgram], cached_at: int
) -> int:
    """刪除這些課程原有的學程關聯後重新寫入"""
    uids = list(dict.fromkeys(course_uids))
    for start in range(0, len(uids), IN_CHUNK):
        db.execute(delete(CourseProgram).where(CourseProgram.course_uid.in_(uids[start:start + IN_CHUNK])))
    rows = {}
    for edge in edges:
        rows[(edge.course_uid, edge.program_name)] = {
            "course_uid": edge.course_uid,
            "program_name": edge.program_name,
            "course_type": edge.course_type,
            "cached_at": cached_at,
        }
    return upsert_rows(db, CourseProgram, list(rows.values()), ["course_uid", "program_name"])


def get_programs_for_course(db: Session, course_uid: str) -> List[CourseProgram]:
    stmt = (
        select(CourseProgram)
        .where(CourseProgram.course_uid == course_uid)
        .order_by(CourseProgram.program_name)
    )
    return list(db.execute(stmt).scalars())


def get_courses_for_program(db: Session, program_name: str, limit: int = 100) -> List[Course]:
    """學程在近期學期的課程，必修在前"""
    stmt = (
        select(Course)
        .join(CourseProgram, CourseProgram.course_uid == Course.uid)
        .where(CourseProgram.program_name == program_name)
        .order_by(Course.year.desc(), Course.term.desc(), CourseProgram.course_type, Course.title)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())
