"""Destination table specs for every entity kind the sources load.

Upsert specs are keyed on the upstream's natural identifier. Append-only
specs are written with a plain insert; when they name replace columns, rows
already stored for the same values of those columns (one school and year of
allocations) are deleted in the same transaction first, so a reload
replaces rather than duplicates them. DDL lives in
schema/020_entity_tables.sql.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TableSpec:
    table: str
    columns: tuple[str, ...]
    conflict_columns: tuple[str, ...] = ()
    update_columns: tuple[str, ...] = ()
    append_only: bool = False
    replace_columns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValueError(f"{self.table}: columns must not be empty")
        if not self.append_only:
            if not self.conflict_columns:
                raise ValueError(f"{self.table}: upsert spec needs conflict columns")
            missing = set(self.conflict_columns) - set(self.columns)
            if missing:
                raise ValueError(f"{self.table}: conflict columns {sorted(missing)} not in columns")
            if self.replace_columns:
                raise ValueError(f"{self.table}: replace columns only apply to append-only specs")
        missing = set(self.replace_columns) - set(self.columns)
        if missing:
            raise ValueError(f"{self.table}: replace columns {sorted(missing)} not in columns")

    def key_of(self, row: tuple) -> tuple:
        """Natural key of a row, in conflict-column order."""
        return tuple(row[self.columns.index(c)] for c in self.conflict_columns)

    def replace_key_of(self, row: tuple) -> tuple:
        return tuple(row[self.columns.index(c)] for c in self.replace_columns)


def upsert(table: str, columns: tuple[str, ...], conflict: tuple[str, ...]) -> TableSpec:
    """Upsert spec that updates every non-key column on conflict."""
    return TableSpec(
        table=table,
        columns=columns,
        conflict_columns=conflict,
        update_columns=tuple(c for c in columns if c not in conflict),
    )


def append_only(table: str, columns: tuple[str, ...], replace: tuple[str, ...] = ()) -> TableSpec:
    return TableSpec(table=table, columns=columns, append_only=True, replace_columns=replace)


# ---------------------------------------------------------------------------
# Nexquare
# ---------------------------------------------------------------------------

NEX_SCHOOLS = upsert(
    "nex.schools",
    ("sourced_id", "name", "identifier", "status", "date_last_modified", "metadata"),
    ("sourced_id",),
)

NEX_STUDENTS = upsert(
    "nex.students",
    (
        "school_key", "sourced_id", "identifier", "full_name", "first_name",
        "last_name", "email", "username", "status", "gender", "date_of_birth",
        "current_grade", "current_class", "academic_year", "date_last_modified",
        "metadata",
    ),
    ("sourced_id",),
)

NEX_STAFF = upsert(
    "nex.staff",
    (
        "school_key", "sourced_id", "identifier", "full_name", "first_name",
        "last_name", "email", "username", "role", "status",
        "date_last_modified", "metadata",
    ),
    ("sourced_id",),
)

NEX_CLASSES = upsert(
    "nex.classes",
    (
        "school_key", "sourced_id", "title", "class_code", "class_type",
        "grade", "subject_name", "status", "date_last_modified", "metadata",
    ),
    ("sourced_id",),
)

NEX_ALLOCATION_MASTER = upsert(
    "nex.allocation_master",
    ("school_key", "allocation_type", "sourced_id", "name", "parent_sourced_id", "metadata"),
    ("allocation_type", "sourced_id"),
)

# Subjects, cohorts, groups and homerooms discovered inside allocations.
NEX_ALLOCATION_ENTITIES = upsert(
    "nex.allocation_entities",
    ("school_key", "entity_type", "sourced_id", "external_id", "name", "grade_name"),
    ("entity_type", "sourced_id"),
)

NEX_STUDENT_ALLOCATIONS = append_only(
    "nex.student_allocations",
    (
        "school_key", "school_sourced_id", "student_key", "student_sourced_id",
        "academic_year", "allocation_type", "allocation_sourced_id",
        "allocation_name", "metadata",
    ),
    replace=("school_sourced_id", "academic_year"),
)

NEX_STAFF_ALLOCATIONS = append_only(
    "nex.staff_allocations",
    (
        "school_key", "school_sourced_id", "staff_key", "staff_sourced_id",
        "academic_year", "allocation_type", "allocation_sourced_id",
        "allocation_name", "metadata",
    ),
    replace=("school_sourced_id", "academic_year"),
)

NEX_DAILY_PLANS = upsert(
    "nex.daily_plans",
    (
        "school_key", "lesson_sourced_id", "plan_date", "class_sourced_id",
        "subject_name", "staff_sourced_id", "period", "start_time", "end_time",
        "metadata",
    ),
    ("lesson_sourced_id", "plan_date"),
)

NEX_DAILY_ATTENDANCE = append_only(
    "nex.daily_attendance",
    (
        "school_key", "student_key", "student_sourced_id", "attendance_date",
        "status", "category_code", "category_name", "category_required",
        "range_type", "notes", "metadata",
    ),
)

NEX_STUDENT_ASSESSMENTS = upsert(
    "nex.student_assessments",
    (
        "school_key", "student_key", "student_identifier", "academic_year",
        "subject_name", "assessment_name", "term", "grade", "score",
        "record_key", "metadata",
    ),
    ("record_key",),
)

# ---------------------------------------------------------------------------
# ManageBac
# ---------------------------------------------------------------------------

MB_SCHOOLS = upsert(
    "mb.schools",
    ("external_id", "name", "subdomain", "country", "timezone", "metadata"),
    ("external_id",),
)

MB_ACADEMIC_YEARS = upsert(
    "mb.academic_years",
    ("school_key", "external_id", "program_code", "name", "starts_on", "ends_on", "metadata"),
    ("external_id",),
)

MB_GRADES = upsert(
    "mb.grades",
    ("school_key", "external_id", "name", "label", "program_code", "grade_number", "metadata"),
    ("external_id",),
)

MB_SUBJECTS = upsert(
    "mb.subjects",
    ("school_key", "external_id", "name", "group_name", "program_code", "metadata"),
    ("external_id",),
)

MB_TEACHERS = upsert(
    "mb.teachers",
    ("school_key", "external_id", "first_name", "last_name", "email", "status", "metadata"),
    ("external_id",),
)

MB_STUDENTS = upsert(
    "mb.students",
    (
        "school_key", "external_id", "student_uid", "first_name", "last_name",
        "email", "grade", "graduating_year", "status", "metadata",
    ),
    ("external_id",),
)

MB_CLASSES = upsert(
    "mb.classes",
    (
        "school_key", "external_id", "name", "subject_name", "grade",
        "program_code", "start_term", "end_term", "metadata",
    ),
    ("external_id",),
)

MB_YEAR_GROUPS = upsert(
    "mb.year_groups",
    ("school_key", "external_id", "name", "grade", "program_code", "student_ids", "metadata"),
    ("external_id",),
)
