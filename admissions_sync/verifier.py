from collections.abc import Callable
from datetime import UTC, date, datetime
import logging
import re

from sqlalchemy import Engine, inspect, text
from sqlalchemy import types as sqltypes

from admissions_sync.config import Settings
from admissions_sync.errors import SchemaDriftError, is_transient
from admissions_sync.retry import run_with_retries
from admissions_sync.schemas import SchemaVersion, TypeMismatch, VerificationResult


logger = logging.getLogger(__name__)

_ADD_COLUMN = re.compile(r"^\s*ALTER\s+TABLE\s+(\w+)\s+ADD\s+(?:COLUMN\s+)?(\w+)", re.IGNORECASE)

# Semantic types that may share a storage family in the live store.
_COMPATIBLE = {
    "string": {"string", "text"},
    "text": {"string", "text"},
    "integer": {"integer"},
    "decimal": {"decimal", "integer"},
    # MySQL reflects BOOLEAN as TINYINT(1).
    "boolean": {"boolean", "integer"},
    "datetime": {"datetime"},
}


def utc_today() -> date:
    return datetime.now(UTC).date()


def semantic_type_of(column_type: sqltypes.TypeEngine) -> str:
    if isinstance(column_type, sqltypes.Boolean):
        return "boolean"
    if isinstance(column_type, sqltypes.Integer):
        return "integer"
    if isinstance(column_type, sqltypes.Numeric):
        return "decimal"
    if isinstance(column_type, (sqltypes.DateTime, sqltypes.Date)):
        return "datetime"
    if isinstance(column_type, sqltypes.Text):
        return "text"
    if isinstance(column_type, sqltypes.String):
        return "string"
    return "unknown"


class SchemaVerifier:
    def __init__(self, engine: Engine, settings: Settings, today: Callable[[], date] = utc_today) -> None:
        self.engine = engine
        self.settings = settings
        self.today = today

    def verify(self, table: str, expected: SchemaVersion) -> VerificationResult:
        live = self._call(lambda: self._live_columns(table))
        in_transition = expected.transition_ends is not None and self.today() <= expected.transition_ends
        synonyms = {synonym for column in expected.columns for synonym in column.synonyms}

        missing = []
        mismatches = []
        for column in expected.columns:
            actual = live.get(column.name)
            if actual is None:
                missing.append(column)
                continue
            if actual not in _COMPATIBLE[column.semantic_type]:
                mismatches.append(TypeMismatch(column=column.name, expected=column.semantic_type, actual=actual))

        extra = []
        tolerated = []
        for name in live:
            if expected.column(name) is not None:
                continue
            if name in synonyms and in_transition:
                tolerated.append(name)
            else:
                extra.append(name)

        result = VerificationResult(
            table=table,
            version=expected.version,
            missing=tuple(missing),
            extra=tuple(sorted(extra)),
            type_mismatches=tuple(mismatches),
            tolerated=tuple(sorted(tolerated)),
        )
        if result.extra:
            logger.warning("unexpected columns in live schema", extra={"table": table, "columns": list(result.extra)})
        if not result.ok:
            logger.error(
                "schema drift detected",
                extra={
                    "table": table,
                    "version": expected.version,
                    "missing": result.drift,
                    "type_mismatches": [m.column for m in result.type_mismatches],
                },
            )
        return result

    def require_ok(self, table: str, expected: SchemaVersion) -> VerificationResult:
        result = self.verify(table, expected)
        if not result.ok:
            raise SchemaDriftError(table, result)
        return result

    def migrate(self, table: str, ddl_script: str) -> list[str]:
        """Apply ``ddl_script`` to ``table`` in one transaction; safe to re-run.

        ``CREATE ... IF NOT EXISTS`` statements are idempotent as written,
        ``ALTER TABLE ... ADD COLUMN`` statements are skipped once the column exists.
        """
        statements = [statement.strip() for statement in ddl_script.split(";") if statement.strip()]

        def apply() -> list[str]:
            applied: list[str] = []
            with self.engine.begin() as conn:
                for statement in statements:
                    match = _ADD_COLUMN.match(statement)
                    if match:
                        target, column = match.groups()
                        existing = {c["name"] for c in inspect(conn).get_columns(target)}
                        if column in existing:
                            continue
                    conn.execute(text(statement))
                    applied.append(statement)
            return applied

        applied = self._call(apply)
        logger.info("migration applied", extra={"table": table, "statements": len(applied)})
        return applied

    def _live_columns(self, table: str) -> dict[str, str]:
        inspector = inspect(self.engine)
        if not inspector.has_table(table):
            return {}
        return {column["name"]: semantic_type_of(column["type"]) for column in inspector.get_columns(table)}

    def _call(self, fn):
        return run_with_retries(
            fn,
            max_retries=self.settings.max_call_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            should_retry=is_transient,
        )
