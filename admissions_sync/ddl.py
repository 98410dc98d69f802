from admissions_sync.schema_registry import (
    CLEANED_ADMISSION_SCORES_V2,
    COLLEGE_CAMPUS_LIFE_V1,
    COLLEGE_LIFE_RAW_ANSWERS_V1,
    ENROLLMENT_PLANS_V1,
)
from admissions_sync.schemas import SchemaVersion


SQL_TYPES = {
    "string": "VARCHAR(255)",
    "text": "TEXT",
    "integer": "INTEGER",
    "decimal": "NUMERIC(10, 2)",
    "boolean": "BOOLEAN",
    "datetime": "TIMESTAMP",
}

UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "enrollment_plans": ("year", "province", "college_code", "major_code", "admission_batch"),
    "cleaned_admission_scores": ("year", "province", "college_name", "major_name", "subject_type"),
    "college_campus_life": ("year", "province", "college_name"),
    "college_life_raw_answers": ("year", "province", "college_name", "answer_id"),
}

INDEXED_COLUMNS: dict[str, tuple[str, ...]] = {
    "enrollment_plans": ("college_name", "major_group_code"),
    "cleaned_admission_scores": ("college_name", "major_group_code"),
    "college_campus_life": ("college_name",),
    "college_life_raw_answers": ("college_name",),
}


def render_create_table(version: SchemaVersion) -> str:
    lines = []
    for column in version.columns:
        null_clause = "" if column.nullable else " NOT NULL"
        lines.append(f"    {column.name} {SQL_TYPES[column.semantic_type]}{null_clause}")
    unique = UNIQUE_KEYS.get(version.table)
    if unique:
        lines.append(f"    CONSTRAINT uq_{version.table} UNIQUE ({', '.join(unique)})")
    statements = [f"CREATE TABLE IF NOT EXISTS {version.table} (\n" + ",\n".join(lines) + "\n)"]
    for column in INDEXED_COLUMNS.get(version.table, ()):
        statements.append(
            f"CREATE INDEX IF NOT EXISTS ix_{version.table}_{column} ON {version.table} ({column})"
        )
    return ";\n".join(statements) + ";\n"


DDL_SCRIPTS: dict[str, str] = {
    version.table: render_create_table(version)
    for version in (
        ENROLLMENT_PLANS_V1,
        CLEANED_ADMISSION_SCORES_V2,
        COLLEGE_CAMPUS_LIFE_V1,
        COLLEGE_LIFE_RAW_ANSWERS_V1,
    )
}
