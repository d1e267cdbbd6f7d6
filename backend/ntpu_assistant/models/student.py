"""
Student Model - 學生學號快取
"""
from sqlalchemy import Column, Integer, String

from ntpu_assistant.core.database import Base


class Student(Base):
    """學號快取表（靜態資料，預設不做 TTL 淘汰）"""
    __tablename__ = "students"

    id = Column(String(16), primary_key=True, comment="學號")
    name = Column(String(100), nullable=False, index=True, comment="姓名")
    year = Column(Integer, nullable=False, index=True, comment="入學學年（民國）")
    department = Column(String(100), nullable=False, default="", index=True, comment="系所名稱")
    cached_at = Column(Integer, nullable=False, index=True, comment="快取時間（unix 秒）")

    def __repr__(self):
        return f"<Student({self.id} {self.name})>"
