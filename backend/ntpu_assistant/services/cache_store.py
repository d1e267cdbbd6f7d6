"""
Cache Store Service - 快取儲存層
所有寫入經由單一寫入連線、讀取走唯讀連線池；SQLAlchemy 例外一律包成 StorageError
"""
import logging
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ntpu_assistant.core.clock import Clock
from ntpu_assistant.core.database import Database
from ntpu_assistant.core.errors import StorageError
from ntpu_assistant.crud import common
from ntpu_assistant.crud import contacts as contact_crud
from ntpu_assistant.crud import courses as course_crud
from ntpu_assistant.crud import maintenance as maintenance_crud
from ntpu_assistant.crud import programs as program_crud
from ntpu_assistant.crud import stickers as sticker_crud
from ntpu_assistant.crud import students as student_crud
from ntpu_assistant.crud import syllabi as syllabus_crud
from ntpu_assistant.models.contact import Contact
from ntpu_assistant.models.course import Course, HistoricalCourse
from ntpu_assistant.models.program import CourseProgram, Program
from ntpu_assistant.models.sticker import Sticker
from ntpu_assistant.models.student import Student
from ntpu_assistant.models.syllabus import Syllabus
from ntpu_assistant.schemas import cache as schemas

logger = logging.getLogger(__name__)

T = TypeVar("T")

FAMILY_MODELS = {
    "students": Student,
    "contacts": Contact,
    "courses": Course,
    "historical_courses": HistoricalCourse,
    "syllabi": Syllabus,
    "course_programs": CourseProgram,
    "programs": Program,
    "stickers": Sticker,
}

# 靜態資料不做 TTL 淘汰
TTL_EXEMPT = ("students", "programs", "stickers")

# reset 模式清空的表
RESET_FAMILIES = ("students", "contacts", "courses", "historical_courses", "course_programs")


def _course_schema(row) -> schemas.Course:
    return schemas.Course.model_validate(row)


class CacheStore:
    """
    快取儲存服務

    ttl / soft_ttl 單位為秒；evict_students 為 True 時學生資料也套用 TTL
    """

    def __init__(self, database: Database, ttl: float, soft_ttl: Optional[float] = None,
                 clock: Optional[Clock] = None, evict_students: bool = False):
        self.database = database
        self.ttl = ttl
        self.soft_ttl = soft_ttl if soft_ttl is not None else ttl
        self.clock = clock or Clock()
        self.evict_students = evict_students

    @classmethod
    def open(cls, path: str, ttl: float, **kwargs) -> "CacheStore":
        try:
            database = Database(path)
        except SQLAlchemyError as e:
            raise StorageError("open", str(e)) from e
        return cls(database, ttl, **kwargs)

    # ------------------------------------------------------------------
    # session helpers
    # ------------------------------------------------------------------

    def _write(self, op: str, fn: Callable[[Session], T]) -> T:
        db = self.database.WriterSession()
        try:
            result = fn(db)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(op, str(e)) from e
        finally:
            db.close()

    def _read(self, op: str, fn: Callable[[Session], T]) -> T:
        db = self.database.ReaderSession()
        try:
            return fn(db)
        except SQLAlchemyError as e:
            raise StorageError(op, str(e)) from e
        finally:
            db.close()

    def _snapshot_read(self, op: str, fn: Callable[[Session], T]) -> T:
        """
        在明確的讀取交易內執行

        pysqlite 不會替 SELECT 開交易，需自行 BEGIN 才能讓多次 SELECT 共用同一個 WAL 快照
        """
        def in_transaction(db: Session) -> T:
            db.connection().exec_driver_sql("BEGIN")
            return fn(db)

        return self._read(op, in_transaction)

    def _now(self) -> int:
        return self.clock.unix()

    def _fresh_since(self) -> int:
        return self._now() - int(self.ttl)

    # ------------------------------------------------------------------
    # batch writes
    # ------------------------------------------------------------------

    def save_students_batch(self, students: List[schemas.Student]) -> int:
        if not students:
            return 0
        return self._write("save_students", lambda db: student_crud.save_students(db, students, self._now()))

    def save_contacts_batch(self, contacts: List[schemas.Contact]) -> int:
        if not contacts:
            return 0
        return self._write("save_contacts", lambda db: contact_crud.save_contacts(db, contacts, self._now()))

    def save_courses_batch(self, courses: List[schemas.Course]) -> int:
        """寫入 hot 表並在同一交易內清掉 cold 表的相同學期"""
        if not courses:
            return 0
        return self._write("save_courses", lambda db: course_crud.save_hot_courses(db, courses, self._now()))

    def save_historical_courses_batch(self, courses: List[schemas.Course]) -> int:
        if not courses:
            return 0
        return self._write(
            "save_historical_courses",
            lambda db: course_crud.save_historical_courses(db, courses, self._now()),
        )

    def demote_semesters(self, semesters: Sequence[schemas.Semester]) -> int:
        """把不再是近期的學期從 hot 移到 cold"""
        if not semesters:
            return 0
        return self._write("demote_semesters", lambda db: course_crud.demote_semesters(db, semesters))

    def save_syllabi_batch(self, syllabi: List[schemas.Syllabus]) -> int:
        if not syllabi:
            return 0
        return self._write("save_syllabi", lambda db: syllabus_crud.save_syllabi(db, syllabi, self._now()))

    def save_course_programs(self, course_uids: Sequence[str], edges: List[schemas.CourseProgram]) -> int:
        if not course_uids:
            return 0
        return self._write(
            "save_course_programs",
            lambda db: program_crud.replace_course_programs(db, course_uids, edges, self._now()),
        )

    def save_stickers_batch(self, stickers: List[schemas.Sticker]) -> int:
        if not stickers:
            return 0
        return self._write("save_stickers", lambda db: sticker_crud.save_stickers(db, stickers, self._now()))

    def record_sticker_use(self, url: str, success: bool = True) -> None:
        self._write("record_sticker_use", lambda db: sticker_crud.record_sticker_use(db, url, success))

    def sync_programs(self, programs: List[schemas.Program]) -> schemas.ProgramSyncResult:
        return self._write("sync_programs", lambda db: program_crud.sync_programs(db, programs, self._now()))

    # ------------------------------------------------------------------
    # TTL / maintenance
    # ------------------------------------------------------------------

    def delete_expired(self, family: str, ttl: Optional[float] = None) -> int:
        """刪除 cached_at < now - ttl 的資料"""
        if family in TTL_EXEMPT and not (family == "students" and self.evict_students):
            return 0
        model = FAMILY_MODELS[family]
        threshold = self._now() - int(ttl if ttl is not None else self.ttl)
        return self._write(f"delete_expired_{family}",
                           lambda db: common.delete_older_than(db, model, threshold))

    def delete_expired_students(self, ttl: Optional[float] = None) -> int:
        return self.delete_expired("students", ttl)

    def delete_expired_contacts(self, ttl: Optional[float] = None) -> int:
        return self.delete_expired("contacts", ttl)

    def delete_expired_courses(self, ttl: Optional[float] = None) -> int:
        return self.delete_expired("courses", ttl)

    def delete_expired_historical_courses(self, ttl: Optional[float] = None) -> int:
        return self.delete_expired("historical_courses", ttl)

    def delete_expired_syllabi(self, ttl: Optional[float] = None) -> int:
        return self.delete_expired("syllabi", ttl)

    def delete_expired_course_programs(self, ttl: Optional[float] = None) -> int:
        return self.delete_expired("course_programs", ttl)

    def cleanup_expired(self) -> Dict[str, int]:
        """對所有可淘汰的表執行 TTL 刪除後 VACUUM"""
        deleted = {}
        for family in FAMILY_MODELS:
            if family in TTL_EXEMPT and not (family == "students" and self.evict_students):
                continue
            deleted[family] = self.delete_expired(family)
        self.vacuum()
        return deleted

    def vacuum(self) -> None:
        try:
            self.database.vacuum()
        except SQLAlchemyError as e:
            raise StorageError("vacuum", str(e)) from e

    def truncate(self, families: Sequence[str] = RESET_FAMILIES) -> int:
        models = [FAMILY_MODELS[f] for f in families]
        count = self._write("truncate", lambda db: maintenance_crud.truncate_tables(db, models))
        self.vacuum()
        return count

    def ping(self) -> None:
        try:
            self.database.ping()
        except SQLAlchemyError as e:
            raise StorageError("ping", str(e)) from e

    def close(self) -> None:
        self.database.close()

    # ------------------------------------------------------------------
    # counts
    # ------------------------------------------------------------------

    def count(self, family: str) -> int:
        """可淘汰的表只計算未過期的資料"""
        model = FAMILY_MODELS[family]
        fresh_since = None
        if family not in TTL_EXEMPT or (family == "students" and self.evict_students):
            fresh_since = self._fresh_since()
        return self._read(f"count_{family}", lambda db: common.count_rows(db, model, fresh_since))

    def count_students(self) -> int:
        return self.count("students")

    def count_contacts(self) -> int:
        return self.count("contacts")

    def count_courses(self) -> int:
        return self.count("courses")

    def count_historical_courses(self) -> int:
        return self.count("historical_courses")

    def count_syllabi(self) -> int:
        return self.count("syllabi")

    def count_programs(self) -> int:
        return self.count("programs")

    def count_stickers(self) -> int:
        return self.count("stickers")

    def count_courses_by_semester(self, year: int, term: int) -> int:
        return self._read("count_courses_by_semester",
                          lambda db: course_crud.count_courses_by_semester(db, year, term))

    def count_historical_by_semester(self, year: int, term: int) -> int:
        return self._read("count_historical_by_semester",
                          lambda db: course_crud.count_courses_by_semester(db, year, term, historical=True))

    def count_expiring(self, family: str, soft_ttl: Optional[float] = None) -> int:
        """已超過 soft TTL、但尚未到 hard TTL 的筆數"""
        model = FAMILY_MODELS[family]
        now = self._now()
        stale_before = now - int(soft_ttl if soft_ttl is not None else self.soft_ttl)
        return self._read(f"count_expiring_{family}",
                          lambda db: common.count_between(db, model, self._fresh_since(), stale_before))

    def count_indexable_syllabi(self) -> int:
        return self._read("count_indexable_syllabi", syllabus_crud.count_indexable_syllabi)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_student_by_id(self, student_id: str) -> Optional[schemas.Student]:
        def fn(db):
            row = student_crud.get_student_by_id(db, student_id)
            return schemas.Student.model_validate(row) if row else None
        return self._read("get_student_by_id", fn)

    def search_students_by_name(self, name: str, limit: int = 50) -> List[schemas.Student]:
        return self._read("search_students_by_name", lambda db: [
            schemas.Student.model_validate(r) for r in student_crud.search_students_by_name(db, name, limit)
        ])

    def get_students_by_year_department(self, year: int, department: str) -> List[schemas.Student]:
        return self._read("get_students_by_year_department", lambda db: [
            schemas.Student.model_validate(r)
            for r in student_crud.get_students_by_year_department(db, year, department)
        ])

    def get_contact_by_uid(self, uid: str) -> Optional[schemas.Contact]:
        def fn(db):
            row = contact_crud.get_contact_by_uid(db, uid)
            return schemas.Contact.model_validate(row) if row else None
        return self._read("get_contact_by_uid", fn)

    def search_contacts(self, keyword: str, limit: int = 50) -> List[schemas.Contact]:
        return self._read("search_contacts", lambda db: [
            schemas.Contact.model_validate(r) for r in contact_crud.search_contacts(db, keyword, limit)
        ])

    def get_course_by_uid(self, uid: str) -> Optional[schemas.Course]:
        def fn(db):
            row = course_crud.get_course_by_uid(db, uid)
            return _course_schema(row) if row else None
        return self._read("get_course_by_uid", fn)

    def get_courses_by_uids(self, uids: Sequence[str]) -> List[schemas.Course]:
        return self._read("get_courses_by_uids", lambda db: [
            _course_schema(r) for r in course_crud.get_courses_by_uids(db, uids)
        ])

    def search_courses(self, keyword: str, semesters: Optional[Sequence[schemas.Semester]] = None,
                       historical: bool = False, limit: int = 50) -> List[schemas.Course]:
        return self._read("search_courses", lambda db: [
            _course_schema(r)
            for r in course_crud.search_courses(db, keyword, semesters, historical, limit)
        ])

    def get_courses_by_year_term_paginated(self, year: int, term: int,
                                           limit: int, offset: int) -> List[schemas.Course]:
        return self._read("get_courses_by_year_term_paginated", lambda db: [
            _course_schema(r)
            for r in course_crud.get_courses_by_year_term_paginated(db, year, term, limit, offset)
        ])

    def distinct_recent_semesters(self, n: int) -> List[schemas.Semester]:
        return self._read("distinct_recent_semesters",
                          lambda db: course_crud.distinct_recent_semesters(db, n))

    def hot_semesters(self) -> List[schemas.Semester]:
        return sorted(self._read("hot_semesters", course_crud.hot_semesters), reverse=True)

    def get_syllabus_content_hash(self, uid: str) -> str:
        return self._read("get_syllabus_content_hash", lambda db: syllabus_crud.get_content_hash(db, uid))

    def get_syllabus_by_uid(self, uid: str) -> Optional[schemas.Syllabus]:
        def fn(db):
            row = syllabus_crud.get_syllabus_by_uid(db, uid)
            return schemas.Syllabus.model_validate(row) if row else None
        return self._read("get_syllabus_by_uid", fn)

    def get_indexable_syllabi(self) -> List[schemas.Syllabus]:
        """分批讀出所有可索引的大綱，所有批次在同一個讀取快照內"""
        return self._snapshot_read("get_indexable_syllabi", lambda db: [
            schemas.Syllabus.model_validate(r) for r in syllabus_crud.iter_indexable_syllabi(db)
        ])

    def get_all_programs(self) -> List[schemas.Program]:
        return self._read("get_all_programs", lambda db: [
            schemas.Program.model_validate(r) for r in program_crud.get_all_programs(db)
        ])

    def search_programs(self, keyword: str, limit: int = 30) -> List[schemas.Program]:
        return self._read("search_programs", lambda db: [
            schemas.Program.model_validate(r) for r in program_crud.search_programs(db, keyword, limit)
        ])

    def get_programs_for_course(self, course_uid: str) -> List[schemas.CourseProgram]:
        return self._read("get_programs_for_course", lambda db: [
            schemas.CourseProgram.model_validate(r)
            for r in program_crud.get_programs_for_course(db, course_uid)
        ])

    def get_courses_for_program(self, program_name: str, limit: int = 100) -> List[schemas.Course]:
        return self._read("get_courses_for_program", lambda db: [
            _course_schema(r) for r in program_crud.get_courses_for_program(db, program_name, limit)
        ])

    def get_all_stickers(self) -> List[schemas.Sticker]:
        return self._read("get_all_stickers", lambda db: [
            schemas.Sticker.model_validate(r) for r in sticker_crud.get_all_stickers(db)
        ])
