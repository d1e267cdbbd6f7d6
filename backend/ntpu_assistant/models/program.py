"""
Program Models - 學程與課程學程對應
programs 以集合方式同步，不做逐筆 TTL
"""
from sqlalchemy import Column, Index, Integer, String

from ntpu_assistant.core.database import Base


class Program(Base):
    """學程表"""
    __tablename__ = "programs"

    name = Column(String(200), primary_key=True, comment="學程名稱（需與選課系統一致）")
    category = Column(String(100), nullable=False, default="", comment="學程類別")
    url = Column(String(500), nullable=False, default="", comment="LMS 說明頁")
    created_at = Column(Integer, nullable=False, comment="建立時間（unix 秒）")
    updated_at = Column(Integer, nullable=False, comment="最後異動時間（unix 秒）")

    def __repr__(self):
        return f"<Program({self.name})>"


class CourseProgram(Base):
    """課程與學程的多對多關聯"""
    __tablename__ = "course_programs"
    __table_args__ = (
        Index("idx_course_programs_program", "program_name"),
    )

    course_uid = Column(String(32), primary_key=True, comment="課程 UID")
    program_name = Column(String(200), primary_key=True, comment="學程名稱")
    course_type = Column(String(4), nullable=False, default="選", comment="必 / 選")
    cached_at = Column(Integer, nullable=False, index=True, comment="快取時間（unix 秒）")

    def __repr__(self):
        return f"<CourseProgram({self.course_uid} -> {self.program_name})>"
