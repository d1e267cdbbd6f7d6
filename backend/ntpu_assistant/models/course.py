"""
Course Models - 課程快取
courses 存放最近四個學期（hot），historical_courses 存放更早的學期（cold）
同一學期只會出現在其中一張表
"""
from sqlalchemy import JSON, Column, Index, Integer, String, Text

from ntpu_assistant.core.database import Base


class CourseColumns:
    """hot / cold 兩張表共用的欄位"""

    uid = Column(String(32), primary_key=True, comment="學年 + 學期 + 課號")
    year = Column(Integer, nullable=False, comment="學年（民國）")
    term = Column(Integer, nullable=False, comment="學期 1=上 2=下")
    no = Column(String(16), nullable=False, comment="課號")
    title = Column(String(300), nullable=False, comment="課名")
    teachers = Column(JSON, nullable=False, default=list, comment="授課教師")
    teacher_urls = Column(JSON, nullable=False, default=list, comment="教師課表連結")
    times = Column(JSON, nullable=False, default=list, comment="上課時間")
    locations = Column(JSON, nullable=False, default=list, comment="上課地點")
    credits = Column(Integer, nullable=False, default=0, comment="學分")
    detail_url = Column(String(500), nullable=False, default="", comment="課程大綱連結")
    note = Column(Text, nullable=False, default="", comment="備註")
    education_code = Column(String(1), nullable=False, default="", comment="學制 U/M/N/P")
    cached_at = Column(Integer, nullable=False, comment="快取時間（unix 秒）")


class Course(CourseColumns, Base):
    """近期課程（hot）"""
    __tablename__ = "courses"
    __table_args__ = (
        Index("idx_courses_semester", "year", "term"),
        Index("idx_courses_title", "title"),
        Index("idx_courses_cached_at", "cached_at"),
    )

    def __repr__(self):
        return f"<Course({self.uid} {self.title})>"


class HistoricalCourse(CourseColumns, Base):
    """歷史課程（cold），查詢時按需抓取寫入"""
    __tablename__ = "historical_courses"
    __table_args__ = (
        Index("idx_historical_semester", "year", "term"),
        Index("idx_historical_title", "title"),
        Index("idx_historical_cached_at", "cached_at"),
    )

    def __repr__(self):
        return f"<HistoricalCourse({self.uid} {self.title})>"
