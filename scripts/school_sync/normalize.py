"""Response-shape normalization.

The upstream APIs wrap record lists in several ways, sometimes differently
per endpoint and per page. Every payload is classified into exactly one
Shape and each shape has one flattening rule.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional


class ShapeKind(Enum):
    EMPTY = "empty"
    BARE_LIST = "bare_list"
    WRAPPED = "wrapped"
    DATA_LIST = "data_list"
    DATA_OBJECT = "data_object"
    GROUPED_ATTENDANCE = "grouped_attendance"
    STUDENT_ATTENDANCE = "student_attendance"
    SINGLE = "single"


@dataclass(frozen=True)
class Shape:
    kind: ShapeKind
    key: Optional[str] = None  # wrapper key for WRAPPED


ATTENDANCE_DATE_FIELDS = ("attendanceDate", "date", "attendance_date")


def classify(payload: Any, wrapper_keys: Iterable[str] = ()) -> Shape:
    if payload is None:
        return Shape(ShapeKind.EMPTY)
    if isinstance(payload, list):
        return Shape(ShapeKind.BARE_LIST if payload else ShapeKind.EMPTY)
    if not isinstance(payload, dict) or not payload:
        return Shape(ShapeKind.EMPTY)

    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("attendanceList"), list):
        return Shape(ShapeKind.GROUPED_ATTENDANCE)

    for key in wrapper_keys:
        if isinstance(payload.get(key), list):
            return Shape(ShapeKind.WRAPPED, key)

    if isinstance(data, list):
        return Shape(ShapeKind.DATA_LIST)
    if isinstance(data, dict) and data:
        return Shape(ShapeKind.DATA_OBJECT)
    students = payload.get("students")
    if isinstance(students, list) and any(
        isinstance(s, dict) and isinstance(s.get("attendance"), dict) for s in students
    ):
        return Shape(ShapeKind.STUDENT_ATTENDANCE)
    return Shape(ShapeKind.SINGLE)


def _flatten_attendance(students: list) -> list[dict]:
    records: list[dict] = []
    for student in students:
        if not isinstance(student, dict):
            continue
        student_id = student.get("studentId") or student.get("student_id")
        entries = student.get("attendanceList")
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            day = next(
                (entry[f] for f in ATTENDANCE_DATE_FIELDS if entry.get(f) is not None),
                None,
            )
            records.append({**entry, "studentId": student_id, "date": day, "attendanceDate": day})
    return records


def _flatten_student_attendance(students: list) -> list[dict]:
    """students[].attendance keyed by date: one record per student per date."""
    records: list[dict] = []
    for student in students:
        if not isinstance(student, dict):
            continue
        student_id = student.get("sourcedId") or student.get("id")
        attendance = student.get("attendance")
        if not isinstance(attendance, dict):
            records.append({**student, "studentSourcedId": student_id})
            continue
        for day, entry in attendance.items():
            fields = entry if isinstance(entry, dict) else {}
            records.append({**fields, "studentSourcedId": student_id, "date": day})
    return records


def _records(items: list) -> list[dict]:
    return [item for item in items if isinstance(item, dict)]


def normalize(payload: Any, wrapper_keys: Iterable[str] = ()) -> list[dict]:
    """Flatten any supported payload into a list of records."""
    wrapper_keys = tuple(wrapper_keys)
    shape = classify(payload, wrapper_keys)

    if shape.kind is ShapeKind.EMPTY:
        return []
    if shape.kind is ShapeKind.BARE_LIST:
        return _records(payload)
    if shape.kind is ShapeKind.WRAPPED:
        return _records(payload[shape.key])
    if shape.kind is ShapeKind.DATA_LIST:
        return _records(payload["data"])
    if shape.kind is ShapeKind.DATA_OBJECT:
        return normalize(payload["data"], wrapper_keys)
    if shape.kind is ShapeKind.GROUPED_ATTENDANCE:
        return _flatten_attendance(payload["data"]["attendanceList"])
    if shape.kind is ShapeKind.STUDENT_ATTENDANCE:
        return _flatten_student_attendance(payload["students"])
    return [payload]
