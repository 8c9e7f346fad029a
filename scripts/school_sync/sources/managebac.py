"""ManageBac source: v2 REST API with a static per-school auth token.

Steps: school, academic years, grades, subjects, teachers, students,
classes, year groups. The academic-years step records the id of the
requested year in ctx.state for the grades step.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Any, Optional

from scripts.school_sync.auth import TokenGrant
from scripts.school_sync.errors import AuthError
from scripts.school_sync.models import SOURCE_MANAGEBAC, PageRequest, TenantConfig
from scripts.school_sync.resolver import MB_SCHOOL_REFS
from scripts.school_sync.sources.base import MODE_SINGLE, Mapped, SourceAdapter, StepDefinition
from scripts.school_sync.tables import (
    MB_ACADEMIC_YEARS,
    MB_CLASSES,
    MB_GRADES,
    MB_SCHOOLS,
    MB_STUDENTS,
    MB_SUBJECTS,
    MB_TEACHERS,
    MB_YEAR_GROUPS,
)
from scripts.school_sync.transform import first_non_null, nested, parse_date, text, to_int, to_json

if TYPE_CHECKING:
    from scripts.school_sync.jobs import IngestionContext

logger = logging.getLogger("school_sync.managebac")

API_ROOT = "https://api.managebac.com"
PER_PAGE = 250
ACADEMIC_YEAR_ID = "academic_year_id"


def normalize_base_url(base_url: Optional[str]) -> str:
    """Map any configured URL to the API root with the /v2 prefix.

    School subdomains (myschool.managebac.com) are served by api.managebac.com.
    """
    url = (base_url or API_ROOT).strip().rstrip("/")
    if ".managebac.com" in url and "api.managebac.com" not in url:
        url = API_ROOT
    if "/v2" not in url:
        url = f"{url}/v2"
    return url


def _external_id(rec: dict) -> Optional[str]:
    return text(first_non_null(rec, "id", "uid"))


def _unwrap(record: dict, key: str) -> Any:
    value = record.get(key)
    return record if value is None else value


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

async def map_school(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    rows = []
    for rec in records:
        school = _unwrap(rec, "school")
        ext = _external_id(school) or text(ctx.tenant.school_id)
        if not ext:
            continue
        rows.append((
            ext,
            text(first_non_null(school, "name", default=ctx.tenant.school_name)),
            text(school.get("subdomain")),
            text(school.get("country")),
            text(first_non_null(school, "timezone", "time_zone")),
            to_json(school),
        ))
    return Mapped().add(MB_SCHOOLS, rows)


def pick_academic_year(years: list[dict], academic_year: Optional[str], today: Optional[date] = None) -> Optional[dict]:
    """First year whose name contains academic_year, else the one containing today."""
    wanted = (academic_year or "").strip()
    if wanted:
        for year in years:
            if wanted in str(year.get("name") or ""):
                return year
    today = today or date.today()
    for year in years:
        starts, ends = parse_date(year.get("starts_on")), parse_date(year.get("ends_on"))
        if starts and ends and starts <= today <= ends:
            return year
    return None


async def map_academic_years(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    years: list[dict] = []
    for rec in records:
        programs = _unwrap(rec, "academic_years")
        if not isinstance(programs, dict):
            continue
        for program_code, info in programs.items():
            raw_years = info.get("academic_years") if isinstance(info, dict) else None
            for year in raw_years or []:
                ext = _external_id(year)
                if not ext:
                    continue
                years.append(year)
                rows.append((
                    school_key,
                    ext,
                    text(program_code),
                    text(year.get("name")),
                    parse_date(year.get("starts_on")),
                    parse_date(year.get("ends_on")),
                    to_json(year),
                ))

    chosen = pick_academic_year(years, ctx.academic_year)
    if chosen is not None:
        ctx.state[ACADEMIC_YEAR_ID] = _external_id(chosen)
    else:
        logger.warning(
            "No ManageBac academic year matches %r; grades will be fetched unfiltered",
            ctx.academic_year, extra=ctx.log_extra,
        )
    return Mapped().add(MB_ACADEMIC_YEARS, rows)


async def map_grades(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        programs = nested(rec, "school", "programs") or rec.get("programs") or []
        for program in programs:
            if not isinstance(program, dict):
                continue
            for grade in program.get("grades") or []:
                ext = text(first_non_null(grade, "uid", "code", "id"))
                if not ext:
                    continue
                rows.append((
                    school_key,
                    ext,
                    text(grade.get("name")),
                    text(grade.get("label")),
                    text(program.get("code")),
                    to_int(grade.get("grade_number")),
                    to_json(grade),
                ))
    return Mapped().add(MB_GRADES, rows)


async def map_subjects(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        by_program = _unwrap(rec, "subjects")
        if isinstance(by_program, list):
            by_program = {"general": by_program}
        if not isinstance(by_program, dict):
            continue
        for program_code, subjects in by_program.items():
            if not isinstance(subjects, list):
                continue
            for subject in subjects:
                ext = _external_id(subject)
                if not ext:
                    continue
                rows.append((
                    school_key,
                    ext,
                    text(subject.get("name")),
                    text(first_non_null(subject, "group", "group_name")),
                    text(program_code).lower() if program_code else None,
                    to_json(subject),
                ))
    return Mapped().add(MB_SUBJECTS, rows)


async def map_teachers(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        ext = _external_id(rec)
        if not ext:
            continue
        rows.append((
            school_key,
            ext,
            text(rec.get("first_name")),
            text(rec.get("last_name")),
            text(rec.get("email")),
            text(first_non_null(rec, "status", "archived")),
            to_json(rec),
        ))
    return Mapped().add(MB_TEACHERS, rows)


async def map_students(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        ext = _external_id(rec)
        if not ext:
            continue
        rows.append((
            school_key,
            ext,
            text(first_non_null(rec, "student_id", "uid")),
            text(rec.get("first_name")),
            text(rec.get("last_name")),
            text(rec.get("email")),
            text(first_non_null(rec, "grade", "class_grade")),
            to_int(rec.get("graduating_year")),
            text(first_non_null(rec, "status", "archived")),
            to_json(rec),
        ))
    return Mapped().add(MB_STUDENTS, rows)


async def map_classes(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        ext = _external_id(rec)
        if not ext:
            continue
        rows.append((
            school_key,
            ext,
            text(first_non_null(rec, "name", "uniq_id")),
            text(first_non_null(rec, "subject_name", default=nested(rec, "subject", "name"))),
            text(first_non_null(rec, "grade", "grade_number")),
            text(first_non_null(rec, "program_code", "program")),
            text(nested(rec, "start_term", "name") or rec.get("start_term_id")),
            text(nested(rec, "end_term", "name") or rec.get("end_term_id")),
            to_json(rec),
        ))
    return Mapped().add(MB_CLASSES, rows)


async def map_year_groups(ctx: "IngestionContext", records: list[dict]) -> Mapped:
    school_key = await ctx.school_key()
    rows = []
    for rec in records:
        ext = _external_id(rec)
        if not ext:
            continue
        rows.append((
            school_key,
            ext,
            text(rec.get("name")),
            text(rec.get("grade")),
            text(rec.get("program")),
            to_json(rec.get("student_ids") or []),
            to_json(rec),
        ))
    return Mapped().add(MB_YEAR_GROUPS, rows)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

def _grade_params(ctx: "IngestionContext") -> dict[str, Any]:
    year_id = ctx.state.get(ACADEMIC_YEAR_ID)
    return {ACADEMIC_YEAR_ID: year_id} if year_id else {}


class ManageBacAdapter(SourceAdapter):
    SOURCE = SOURCE_MANAGEBAC
    SCHOOL_REFS = MB_SCHOOL_REFS

    def base_url(self, tenant: TenantConfig) -> str:
        return normalize_base_url(tenant.base_url)

    def auth_headers(self, token: str, expect: str = "json") -> dict[str, str]:
        return {"auth-token": token, "Cache-Control": "no-cache", "Accept": "*/*"}

    def exchange_token(self, tenant: TenantConfig) -> TokenGrant:
        # ManageBac has no exchange: the configured key is the token.
        if not tenant.api_token:
            raise AuthError(f"{tenant.label}: api_token not configured")
        return TokenGrant(token=tenant.api_token, expires_in=None)

    def page_params(self, page: PageRequest) -> dict[str, Any]:
        return {"page": page.page, "per_page": page.limit}

    def steps(self) -> list[StepDefinition]:
        return [
            StepDefinition("school", "/school", map_school, mode=MODE_SINGLE, page_size=None),
            StepDefinition("academic-years", "/school/academic-years", map_academic_years,
                           mode=MODE_SINGLE, page_size=None),
            StepDefinition("grades", "/school/grades", map_grades, mode=MODE_SINGLE, page_size=None,
                           params=_grade_params),
            StepDefinition("subjects", "/school/subjects", map_subjects, mode=MODE_SINGLE, page_size=None),
            StepDefinition("teachers", "/teachers", map_teachers, page_size=PER_PAGE,
                           wrapper_keys=("teachers",)),
            StepDefinition("students", "/students", map_students, page_size=PER_PAGE,
                           wrapper_keys=("students",)),
            StepDefinition("classes", "/classes", map_classes, page_size=PER_PAGE,
                           wrapper_keys=("classes",)),
            StepDefinition("year-groups", "/year-groups", map_year_groups, page_size=PER_PAGE,
                           wrapper_keys=("year_groups",)),
        ]
