"""
SQLite Database - 本機快取資料庫
單一寫入連線 + 唯讀連線池，WAL 模式讓讀取不阻塞寫入
"""
import json
import logging
import os

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

# busy_timeout 與連線池等待時間一致（秒）
BUSY_TIMEOUT = 30
READER_POOL_SIZE = 10


def _apply_pragmas(dbapi_connection, read_only: bool) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT * 1000}")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA temp_store = MEMORY")
        if read_only:
            cursor.execute("PRAGMA query_only = ON")
        else:
            cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


class Database:
    """
    快取資料庫連線

    writer_engine: 連線池大小固定為 1，所有寫入在此序列化
    reader_engine: query_only 的唯讀連線池
    """

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        url = f"sqlite:///{path}"
        connect_args = {"check_same_thread": False, "timeout": BUSY_TIMEOUT}
        # 中文直接存 UTF-8，LIKE 查詢才比對得到 JSON 欄位
        json_serializer = lambda obj: json.dumps(obj, ensure_ascii=False)

        self.writer_engine = create_engine(
            url,
            connect_args=connect_args,
            json_serializer=json_serializer,
            pool_size=1,
            max_overflow=0,
            pool_timeout=BUSY_TIMEOUT,
        )
        event.listen(self.writer_engine, "connect",
                     lambda conn, _record: _apply_pragmas(conn, read_only=False))

        # 先建立 schema 再開唯讀連線，query_only 連線無法建表
        Base.metadata.create_all(bind=self.writer_engine)

        self.reader_engine = create_engine(
            url,
            connect_args=connect_args,
            json_serializer=json_serializer,
            pool_size=READER_POOL_SIZE,
            max_overflow=0,
            pool_timeout=BUSY_TIMEOUT,
        )
        event.listen(self.reader_engine, "connect",
                     lambda conn, _record: _apply_pragmas(conn, read_only=True))

        self.WriterSession = sessionmaker(autocommit=False, autoflush=False,
                                          expire_on_commit=False, bind=self.writer_engine)
        self.ReaderSession = sessionmaker(autocommit=False, autoflush=False,
                                          bind=self.reader_engine)
        logger.info("[Database] 開啟快取資料庫 %s", path)

    def ping(self) -> None:
        """走寫入連線，寫入端卡住時就緒檢查也會失敗"""
        with self.writer_engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def vacuum(self) -> None:
        """VACUUM 不能在交易內執行，改用 autocommit 連線"""
        with self.writer_engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text("VACUUM"))

    def close(self) -> None:
        self.reader_engine.dispose()
        self.writer_engine.dispose()
        logger.info("[Database] 已關閉快取資料庫")

