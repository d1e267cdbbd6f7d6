"""
Contact Model - 校園通訊錄快取
"""
from sqlalchemy import Column, Integer, String

from ntpu_assistant.core.database import Base


class Contact(Base):
    """通訊錄快取表，type 為 individual（個人）或 unit（單位）"""
    __tablename__ = "contacts"

    uid = Column(String(64), primary_key=True, comment="來源 + 名稱的穩定雜湊")
    type = Column(String(16), nullable=False, index=True, comment="individual / unit")
    name = Column(String(200), nullable=False, index=True, comment="名稱")
    name_en = Column(String(200), nullable=False, default="", comment="英文名稱")
    organization = Column(String(200), nullable=False, default="", index=True, comment="所屬單位")
    title = Column(String(200), nullable=False, default="", comment="職稱")
    extension = Column(String(50), nullable=False, default="", comment="分機")
    phone = Column(String(50), nullable=False, default="", comment="電話")
    email = Column(String(200), nullable=False, default="", comment="電子郵件")
    website = Column(String(500), nullable=False, default="", comment="網站")
    location = Column(String(200), nullable=False, default="", comment="位置")
    superior = Column(String(200), nullable=False, default="", comment="上級單位")
    cached_at = Column(Integer, nullable=False, index=True, comment="快取時間（unix 秒）")

    def __repr__(self):
        return f"<Contact({self.type} {self.name})>"
