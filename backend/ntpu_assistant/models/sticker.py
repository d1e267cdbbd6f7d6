"""
Sticker Model - 回覆頭像貼圖
"""
from sqlalchemy import Column, Integer, String

from ntpu_assistant.core.database import Base


class Sticker(Base):
    """貼圖網址快取（啟動時抓一次，不做 TTL）"""
    __tablename__ = "stickers"

    url = Column(String(500), primary_key=True, comment="圖片網址")
    source = Column(String(50), nullable=False, default="", comment="來源")
    success_count = Column(Integer, nullable=False, default=0, comment="被選用次數")
    failure_count = Column(Integer, nullable=False, default=0, comment="失敗次數")
    cached_at = Column(Integer, nullable=False, comment="快取時間（unix 秒）")

    def __repr__(self):
        return f"<Sticker({self.source} {self.url})>"
