"""
Identifier Helpers - 識別碼工具
學號、課號與聯絡人 UID 的解析與產生
"""
import hashlib
import re
from typing import Optional, Tuple

_STUDENT_ID = re.compile(r"^[478]\d{7,8}$")
_COURSE_UID = re.compile(r"^(\d{2,3})([12])([A-Z]\d{3,5})$", re.IGNORECASE)
_COURSE_NO = re.compile(r"^[A-Z]\d{3,5}$", re.IGNORECASE)


def contact_uid(kind: str, *parts: str) -> str:
    """聯絡人 UID：來源類型加名稱的穩定雜湊"""
    raw = "|".join([kind] + [p.strip() for p in parts])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def course_uid(year: int, term: int, no: str) -> str:
    """課程 UID = 學年 + 學期 + 課號，例如 1131U1234"""
    return f"{year}{term}{no.strip().upper()}"


def parse_course_uid(uid: str) -> Optional[Tuple[int, int, str]]:
    """拆解課程 UID，格式不符回傳 None"""
    match = _COURSE_UID.match(uid.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), match.group(3).upper()


def is_course_no(text: str) -> bool:
    return bool(_COURSE_NO.match(text.strip()))


def is_student_id(text: str) -> bool:
    return bool(_STUDENT_ID.match(text.strip()))


def student_year(student_id: str) -> int:
    """
    由學號取得入學學年

    9 碼學號使用三位數學年（410571074 → 105），8 碼為兩位數（49981074 → 99）
    """
    if len(student_id) < 5:
        return 0
    digits = student_id[1:4] if len(student_id) == 9 else student_id[1:3]
    return int(digits) if digits.isdigit() else 0


def student_department_code(student_id: str) -> str:
    """學號中的系所代碼，社會學系 / 社工系 (74x) 需要多取一碼"""
    if len(student_id) < 7:
        return ""
    offset = 4 if len(student_id) == 9 else 3
    code = student_id[offset:offset + 2]
    if student_id[0] == "4" and code == "74" and len(student_id) > offset + 2:
        code += student_id[offset + 2]
    return code


def education_code(course_no: str) -> str:
    """課號第一碼為學制代碼 U/M/N/P"""
    head = course_no.strip()[:1].upper()
    return head if head in ("U", "M", "N", "P") else ""
