"""Nexquare source: OneRoster-style API with OAuth client-credentials tokens.

Steps: schools, students, staff, classes, allocation master, student and
staff allocations, daily plans, daily attendance, student assessments.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Any, Optional

import requests

from scripts.school_sync.auth import TokenGrant
from scripts.school_sync.errors import AuthError
from scripts.school_sync.models import SOURCE_NEXQUARE, PageRequest, TenantConfig
from scripts.school_sync.resolver import NEX_SCHOOL_REFS, STAFF_REFS, STUDENT_REFS, ReferenceSpec, count_gaps
from scripts.school_sync.sources.base import (
    MODE_DATE_RANGE,
    MODE_FILE,
    Mapped,
    SourceAdapter,
    StepDefinition,
)
from scripts.school_sync.tables import (
    NEX_ALLOCATION_ENTITIES,
    NEX_ALLOCATION_MASTER,
    NEX_CLASSES,
    NEX_DAILY_ATTENDANCE,
    NEX_DAILY_PLANS,
    NEX_SCHOOLS,
    NEX_STAFF,
    NEX_STAFF_ALLOCATIONS,
    NEX_STUDENT_ALLOCATIONS,
    NEX_STUDENT_ASSESSMENTS,
    NEX_STUDENTS,
)
from scripts.school_sync.transform import (
    first_non_null,
    full_name,
    nested,
    parse_date,
    parse_datetime,
    record_key,
    text,
    to_bool,
    to_float,
    to_json,
)

if TYPE_CHECKING:
    from scripts.school_sync.jobs import IngestionContext

logger = logging.getLogger("school_sync.nexquare")

TOKEN_PATH = "/oauth2/v1/token"
DEFAULT_TOKEN_TTL_S = 86400
ONEROSTER = "/ims/oneroster/v1p1"

# (entity type, payload keys, sourced-id fields, name fields)
ALLOCATION_ENTITY_KINDS = (
    ("subject", ("subject", "subjects"), ("subjectSourcedId", "subject_sourced_id"), ("subjectName", "subject_name", "name")),
    ("cohort", ("cohort", "cohorts"), ("cohortSourcedId", "cohort_sourced_id", "sourcedId"), ("cohortName", "cohort_name", "name")),
    ("group", ("group", "groups"), ("groupSourcedId", "group_sourced_id", "sourcedId"), ("groupName", "group_name", "name")),
    ("homeroom", ("homeRoom", "homeroom", "homerooms"), ("homeRoomSourcedId", "homeroom_sourced_id", "sourcedId"), ("homeRoomName", "homeroom_name", "className", "name")),
)


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def _sourced_id(record: dict) -> Optional[str]:
    return text(first_non_null(record, "sourcedId", "sourced_id", "sourcedID", "id"))


async def map_schools(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    rows = []
    for rec in records:
        sid = _sourced_id(rec)
        if not sid:
            continue
        rows.append((
            sid,
            text(rec.get("name")),
            text(rec.get("identifier")),
            text(rec.get("status")),
            parse_datetime(first_non_null(rec, "dateLastModified", "date_last_modified")),
            to_json(rec.get("metadata")),
        ))
    return Mapped().add(NEX_SCHOOLS, rows)


def _grade(rec: dict) -> Optional[str]:
    grades = rec.get("grades")
    if isinstance(grades, list) and grades:
        return text(grades[0])
    return text(first_non_null(rec, "grade", "currentGrade", "gradeName"))


async def map_students(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        sid = _sourced_id(rec)
        if not sid:
            continue
        rows.append((
            school_key,
            sid,
            text(first_non_null(rec, "identifier", "studentId", "student_id")),
            full_name(rec),
            text(first_non_null(rec, "givenName", "firstName", "first_name")),
            text(first_non_null(rec, "familyName", "lastName", "last_name")),
            text(rec.get("email")),
            text(rec.get("username")),
            text(first_non_null(rec, "status", "studentStatus")),
            text(first_non_null(rec, "gender", "sex")),
            parse_date(first_non_null(rec, "birthDate", "dateOfBirth", "dob")),
            _grade(rec),
            text(first_non_null(rec, "className", "currentClass", "section")),
            text(first_non_null(rec, "academicYear", default=ctx.academic_year)),
            parse_datetime(first_non_null(rec, "dateLastModified", "date_last_modified")),
            to_json(rec.get("metadata")),
        ))
    return Mapped().add(NEX_STUDENTS, rows)


async def map_staff(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        sid = _sourced_id(rec)
        if not sid:
            continue
        rows.append((
            school_key,
            sid,
            text(first_non_null(rec, "identifier", "staffId", "employeeId")),
            full_name(rec),
            text(first_non_null(rec, "givenName", "firstName", "first_name")),
            text(first_non_null(rec, "familyName", "lastName", "last_name")),
            text(rec.get("email")),
            text(rec.get("username")),
            text(first_non_null(rec, "role", "userType")),
            text(rec.get("status")),
            parse_datetime(first_non_null(rec, "dateLastModified", "date_last_modified")),
            to_json(rec.get("metadata")),
        ))
    return Mapped().add(NEX_STAFF, rows)


async def map_classes(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        sid = _sourced_id(rec)
        if not sid:
            continue
        subjects = rec.get("subjects")
        subject = subjects[0] if isinstance(subjects, list) and subjects else None
        rows.append((
            school_key,
            sid,
            text(first_non_null(rec, "title", "className", "name")),
            text(first_non_null(rec, "classCode", "class_code")),
            text(first_non_null(rec, "classType", "class_type")),
            _grade(rec),
            text(first_non_null(rec, "subjectName", default=subject)),
            text(rec.get("status")),
            parse_datetime(first_non_null(rec, "dateLastModified", "date_last_modified")),
            to_json(rec.get("metadata")),
        ))
    return Mapped().add(NEX_CLASSES, rows)


async def map_allocation_master(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        sid = _sourced_id(rec)
        if not sid:
            continue
        rows.append((
            school_key,
            text(first_non_null(rec, "allocationType", "type", "allocation_type", default="unknown")),
            sid,
            text(first_non_null(rec, "name", "title", "allocationName")),
            text(first_non_null(rec, "parentSourcedId", "parent_sourced_id", "parentId")),
            to_json(rec),
        ))
    return Mapped().add(NEX_ALLOCATION_MASTER, rows)


def _person_id(rec: dict, *fields: str) -> Optional[str]:
    value = first_non_null(rec, *fields)
    if value is None:
        value = first_non_null(rec.get("user") if isinstance(rec.get("user"), dict) else None, "sourcedId")
    return text(value)


def _allocation_items(rec: dict, keys: tuple[str, ...]) -> list[dict]:
    for key in keys:
        value = rec.get(key)
        if value is None and isinstance(rec.get("user"), dict):
            value = rec["user"].get(key)
        if isinstance(value, list):
            return [v for v in value if isinstance(v, dict)]
    return []


async def _map_allocations(
    ctx: "IngestionContext",
    records: list[dict],
    person_fields: tuple[str, ...],
    refs: ReferenceSpec,
    target,
) -> Mapped:
    school_key = await ctx.school_key()
    person_ids = [_person_id(rec, *person_fields) for rec in records]
    resolved = await ctx.resolver(refs).resolve_many(p for p in person_ids if p)

    entities: dict[tuple[str, str], tuple] = {}
    rows = []
    for rec, person_id in zip(records, person_ids):
        if not person_id:
            continue
        for entity_type, keys, id_fields, name_fields in ALLOCATION_ENTITY_KINDS:
            for item in _allocation_items(rec, keys):
                entity_id = text(first_non_null(item, *id_fields))
                if not entity_id:
                    continue
                name = text(first_non_null(item, *name_fields))
                entities[(entity_type, entity_id)] = (
                    school_key,
                    entity_type,
                    entity_id,
                    text(first_non_null(item, f"{entity_type}Id", "id")),
                    name,
                    text(first_non_null(item, "gradeName", "grade_name")),
                )
                rows.append((
                    school_key,
                    ctx.tenant.school_id,
                    resolved.get(person_id),
                    person_id,
                    ctx.academic_year,
                    entity_type,
                    entity_id,
                    name,
                    to_json(item),
                ))

    mapped = Mapped(unresolved=count_gaps({p for p in person_ids if p}, resolved))
    mapped.add(NEX_ALLOCATION_ENTITIES, list(entities.values()))
    return mapped.add(target, rows)


async def map_student_allocations(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    return await _map_allocations(
        ctx, records, ("sourcedId", "studentSourcedId", "student_sourced_id"),
        STUDENT_REFS, NEX_STUDENT_ALLOCATIONS,
    )


async def map_staff_allocations(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    return await _map_allocations(
        ctx, records, ("sourcedId", "staffSourcedId", "staff_sourced_id"),
        STAFF_REFS, NEX_STAFF_ALLOCATIONS,
    )


async def map_daily_plans(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        lesson = rec.get("ttLesson") if isinstance(rec.get("ttLesson"), dict) else {}
        lesson_id = text(first_non_null(
            rec, "timetableLessonSourcedId", "timetable_lesson_sourced_id", "lessonSourcedId", "sourcedId",
            default=lesson.get("sourcedId"),
        ))
        plan_date = parse_date(first_non_null(rec, "planDate", "date", "lessonDate", "plan_date"))
        if not lesson_id or plan_date is None:
            continue
        rows.append((
            school_key,
            lesson_id,
            plan_date,
            text(first_non_null(rec, "classSourcedId", "class_sourced_id", default=nested(rec, "class", "sourcedId"))),
            text(first_non_null(rec, "subjectName", "subject_name", default=nested(rec, "subject", "name"))),
            text(first_non_null(rec, "teacherSourcedId", "teacher_sourced_id", default=nested(rec, "teacher", "sourcedId"))),
            text(first_non_null(rec, "periodNumber", "period", "period_number")),
            text(first_non_null(rec, "startTime", "start_time")),
            text(first_non_null(rec, "endTime", "end_time")),
            to_json(rec),
        ))
    return Mapped().add(NEX_DAILY_PLANS, rows)


async def map_daily_attendance(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    student_ids = [
        text(first_non_null(rec, "sourcedId", "studentSourcedId", "sourcedID", "studentId", "student_id"))
        for rec in records
    ]
    resolved = await ctx.resolver(STUDENT_REFS).resolve_many(s for s in student_ids if s)

    rows = []
    for rec, student_id in zip(records, student_ids):
        day = parse_date(first_non_null(rec, "attendanceDate", "date", "attendance_date"))
        if not student_id or day is None:
            continue
        rows.append((
            school_key,
            resolved.get(student_id),
            student_id,
            day,
            text(first_non_null(rec, "status", "attendanceStatus")),
            text(first_non_null(rec, "categoryCode", "category_code")),
            text(first_non_null(rec, "categoryName", "category_name")),
            to_bool(first_non_null(rec, "categoryRequired", "category_required")),
            text(first_non_null(rec, "rangeType", "range_type")),
            text(rec.get("notes")),
            to_json(rec),
        ))
    mapped = Mapped(unresolved=count_gaps({s for s in student_ids if s}, resolved))
    return mapped.add(NEX_DAILY_ATTENDANCE, rows)


async def map_student_assessments(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    registers = [text(first_non_null(rec, "Register Number", "register_number")) for rec in records]
    resolved = await ctx.resolver(STUDENT_REFS).resolve_many(r for r in registers if r)

    rows = []
    for rec, register in zip(records, registers):
        year = text(first_non_null(rec, "Academic Year", "academic_year", default=ctx.academic_year))
        subject_id = text(first_non_null(rec, "Subject ID", "subject_id"))
        term_id = text(first_non_null(rec, "Term ID", "term_id"))
        component = text(first_non_null(rec, "Component Name", "component_name"))
        if not register and not component:
            continue
        raw_value = first_non_null(rec, "Component Value", "component_value")
        rows.append((
            school_key,
            resolved.get(register) if register else None,
            register,
            year,
            text(first_non_null(rec, "Subject Name", "subject_name")),
            component,
            text(first_non_null(rec, "Term Name", "term_name")),
            text(first_non_null(rec, "Grade Name", "grade_name")),
            to_float(raw_value),
            record_key(register, year, subject_id, term_id, component),
            to_json({**rec, "component_value": raw_value}),
        ))
    mapped = Mapped(unresolved=count_gaps({r for r in registers if r}, resolved))
    return mapped.add(NEX_STUDENT_ASSESSMENTS, rows)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

def _school_param(name: str):
    def params(ctx: "IngestionContext") -> dict[str, Any]:
        return {name: ctx.tenant.school_id}
    return params


def _attendance_params(ctx: "IngestionContext") -> dict[str, Any]:
    return {"schoolId": ctx.tenant.school_id, "categoryRequired": "false", "rangeType": "0"}


def _assessment_params(ctx: "IngestionContext") -> dict[str, Any]:
    year = ctx.academic_year or str(date.today().year)
    return {"schoolIds": ctx.tenant.school_id, "academicYear": year, "fileName": "assessment-data"}


class NexquareAdapter(SourceAdapter):
    SOURCE = SOURCE_NEXQUARE
    SCHOOL_REFS = NEX_SCHOOL_REFS

    def base_url(self, tenant: TenantConfig) -> str:
        return tenant.base_url.rstrip("/")

    def auth_headers(self, token: str, expect: str = "json") -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "*/*" if expect == "file" else "application/json",
        }

    def exchange_token(self, tenant: TenantConfig) -> TokenGrant:
        if not tenant.client_id or not tenant.client_secret:
            raise AuthError(f"{tenant.label}: client_id/client_secret not configured")
        resp = requests.post(
            self.url_for(tenant, TOKEN_PATH),
            data={
                "grant_type": "client_credentials",
                "client_id": tenant.client_id,
                "client_secret": tenant.client_secret,
            },
            headers={"Accept": "application/json"},
            timeout=self.http_config.timeout_s,
        )
        resp.raise_for_status()
        data = resp.json()
        token = data.get("access_token")
        if not token:
            raise ValueError("Invalid token response: missing access_token")
        logger.info(
            "Obtained OAuth token for %s", tenant.label,
            extra={"source": self.SOURCE, "config_id": tenant.config_id},
        )
        return TokenGrant(token=token, expires_in=float(data.get("expires_in") or DEFAULT_TOKEN_TTL_S))

    def page_params(self, page: PageRequest) -> dict[str, Any]:
        return {"offset": page.offset, "limit": page.limit}

    def steps(self) -> list[StepDefinition]:
        return [
            StepDefinition("schools", "/nexquare" + ONEROSTER + "/schools", map_schools,
                           wrapper_keys=("orgs", "schools")),
            StepDefinition("students", ONEROSTER + "/schools/{school_id}/students/", map_students,
                           wrapper_keys=("users", "students")),
            StepDefinition("staff", ONEROSTER + "/schools/{school_id}/teachers", map_staff,
                           wrapper_keys=("users", "teachers", "staff")),
            StepDefinition("classes", ONEROSTER + "/schools/{school_id}/classes/", map_classes,
                           wrapper_keys=("classes",)),
            StepDefinition("allocation-master", ONEROSTER + "/allocationMaster/{school_id}", map_allocation_master,
                           wrapper_keys=("allocations", "allocationMaster")),
            StepDefinition("student-allocations", ONEROSTER + "/schools/{school_id}/studentsAllocation",
                           map_student_allocations, wrapper_keys=("users",)),
            StepDefinition("staff-allocations", ONEROSTER + "/schools/{school_id}/staffAllocation",
                           map_staff_allocations, wrapper_keys=("users",)),
            StepDefinition("daily-plans", ONEROSTER + "/dailyPlan", map_daily_plans,
                           mode=MODE_DATE_RANGE, page_size=None,
                           # the upstream parameter really is spelled with three o's
                           params=_school_param("schooolId"),
                           date_params=("fromDate", "toDate"),
                           wrapper_keys=("plans", "dailyPlan")),
            StepDefinition("daily-attendance", ONEROSTER + "/getDailyAttendance", map_daily_attendance,
                           mode=MODE_DATE_RANGE, page_size=1000, params=_attendance_params,
                           wrapper_keys=("attendance", "dailyAttendance")),
            StepDefinition("student-assessments", ONEROSTER + "/assessment/students", map_student_assessments,
                           mode=MODE_FILE, page_size=10000, params=_assessment_params),
        ]
