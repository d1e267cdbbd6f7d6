"""
Cache Schemas - 快取實體的 Pydantic 模型
服務之間傳遞的都是這些模型，ORM 物件只留在 crud 層
"""
import hashlib
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, Field


class Semester(NamedTuple):
    """(學年, 學期)，tuple 比較即為時間先後"""
    year: int
    term: int

    def __str__(self):
        return f"{self.year}-{self.term}"


class Student(BaseModel):
    id: str
    name: str
    year: int
    department: str = ""
    cached_at: int = 0

    class Config:
        from_attributes = True


class Contact(BaseModel):
    uid: str
    type: str
    name: str
    name_en: str = ""
    organization: str = ""
    title: str = ""
    extension: str = ""
    phone: str = ""
    email: str = ""
    website: str = ""
    location: str = ""
    superior: str = ""
    cached_at: int = 0

    class Config:
        from_attributes = True


class ProgramRequirement(BaseModel):
    """課程列表或大綱頁上的學程要求"""
    program_name: str
    course_type: str = "選"


class Course(BaseModel):
    uid: str
    year: int
    term: int
    no: str
    title: str
    teachers: List[str] = Field(default_factory=list)
    teacher_urls: List[str] = Field(default_factory=list)
    times: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    credits: int = 0
    detail_url: str = ""
    note: str = ""
    education_code: str = ""
    cached_at: int = 0
    # 只在抓取時存在，不寫入 courses 表
    program_requirements: List[ProgramRequirement] = Field(default_factory=list, exclude=True)

    class Config:
        from_attributes = True

    @property
    def semester(self) -> Semester:
        return Semester(self.year, self.term)


def compute_content_hash(objectives: str, outline: str, schedule: str) -> str:
    """大綱內容雜湊，三個欄位皆空時回傳空字串"""
    if not (objectives or outline or schedule):
        return ""
    payload = "\n".join([objectives, outline, schedule])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class Syllabus(BaseModel):
    uid: str
    year: int
    term: int
    title: str = ""
    teachers: List[str] = Field(default_factory=list)
    objectives: str = ""
    outline: str = ""
    schedule: str = ""
    content_hash: str = ""
    cached_at: int = 0

    class Config:
        from_attributes = True

    def is_empty(self) -> bool:
        return not (self.objectives or self.outline or self.schedule)

    def with_hash(self) -> "Syllabus":
        return self.model_copy(update={
            "content_hash": compute_content_hash(self.objectives, self.outline, self.schedule)
        })

    def document_text(self) -> str:
        """BM25 文件內容：課名 + 三個內容欄位"""
        return "\n".join(p for p in (self.title, self.objectives, self.outline, self.schedule) if p)


class Program(BaseModel):
    name: str
    category: str = ""
    url: str = ""
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    class Config:
        from_attributes = True


class CourseProgram(BaseModel):
    course_uid: str
    program_name: str
    course_type: str = "選"
    cached_at: int = 0

    class Config:
        from_attributes = True


class Sticker(BaseModel):
    url: str
    source: str = ""
    success_count: int = 0
    failure_count: int = 0
    cached_at: int = 0

    class Config:
        from_attributes = True


class ProgramSyncResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.deleted)
