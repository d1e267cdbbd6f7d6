"""
Identifier helpers
"""
import pytest

from ntpu_assistant.core.identifiers import (
    contact_uid,
    course_uid,
    education_code,
    is_course_no,
    is_student_id,
    parse_course_uid,
    student_department_code,
    student_year,
)
from ntpu_assistant.services.scrapers.ids import department_codes, department_name

pytestmark = pytest.mark.unit


class TestStudentId:
    @pytest.mark.parametrize("student_id,year", [
        ("410571074", 105),
        ("49981074", 99),
        ("711081001", 110),
    ])
    def test_student_year(self, student_id, year):
        assert student_year(student_id) == year

    def test_department_code_nine_digits(self):
        assert student_department_code("411285001") == "85"

    def test_social_departments_take_extra_digit(self):
        assert student_department_code("411274201") == "742"
        assert department_name("411274201") == "社會學系"

    def test_department_name_unknown(self):
        assert department_name("711299001") == "未知碩士班"
        assert department_name("911285001") == "未知系所"

    @pytest.mark.parametrize("text,valid", [
        ("412345678", True),
        ("49981074", True),
        ("512345678", False),
        ("4123", False),
        ("41234567a", False),
    ])
    def test_is_student_id(self, text, valid):
        assert is_student_id(text) is valid

    def test_law_department_split_into_groups(self):
        codes = department_codes("4")
        assert "71" not in codes
        assert {"712", "714", "716"} <= set(codes)


class TestCourseUid:
    def test_build_and_parse(self):
        uid = course_uid(113, 1, "u0001")
        assert uid == "1131U0001"
        assert parse_course_uid(uid) == (113, 1, "U0001")

    def test_parse_two_digit_year(self):
        assert parse_course_uid("992M1234") == (99, 2, "M1234")

    def test_parse_invalid(self):
        assert parse_course_uid("1133U0001") is None
        assert parse_course_uid("hello") is None

    def test_course_no_and_education_code(self):
        assert is_course_no("U0001")
        assert not is_course_no("1131U0001")
        assert education_code("M1234") == "M"
        assert education_code("X1234") == ""


class TestContactUid:
    def test_stable_and_distinct(self):
        assert contact_uid("unit", "資訊工程學系") == contact_uid("unit", " 資訊工程學系 ")
        assert contact_uid("unit", "資訊工程學系") != contact_uid("individual", "資訊工程學系")
        assert len(contact_uid("unit", "x")) == 16
