"""
Syllabus Model - 課程大綱快取
content_hash 只涵蓋 objectives / outline / schedule，不含課名
"""
from sqlalchemy import JSON, Column, Index, Integer, String, Text

from ntpu_assistant.core.database import Base


class Syllabus(Base):
    """課程大綱快取表，uid 與 Course.uid 相同"""
    __tablename__ = "syllabi"
    __table_args__ = (
        Index("idx_syllabi_semester", "year", "term"),
    )

    uid = Column(String(32), primary_key=True, comment="課程 UID")
    year = Column(Integer, nullable=False, comment="學年")
    term = Column(Integer, nullable=False, comment="學期")
    title = Column(String(300), nullable=False, default="", comment="課名")
    teachers = Column(JSON, nullable=False, default=list, comment="授課教師")
    objectives = Column(Text, nullable=False, default="", comment="教學目標")
    outline = Column(Text, nullable=False, default="", comment="內容綱要")
    schedule = Column(Text, nullable=False, default="", comment="教學進度")
    content_hash = Column(String(64), nullable=False, default="", comment="內容 SHA256")
    cached_at = Column(Integer, nullable=False, index=True, comment="快取時間（unix 秒）")

    def __repr__(self):
        return f"<Syllabus({self.uid} {self.title})>"
