"""Map loosely-typed source rows onto a canonical ``SchemaVersion``.

Each expected column is resolved by its canonical name first, then by its
synonyms in declared order. Rows that cannot be coerced or that break a
cross-field rule come back as ``ValidationError`` values so one bad row never
stops the rest of the partition.
"""

from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
import math
import re

from admissions_sync.schemas import (
    Batch,
    CanonicalRecord,
    ColumnDescriptor,
    PartitionKey,
    SchemaVersion,
    SourceRecord,
    ValidationError,
)


logger = logging.getLogger(__name__)

MISSING_REQUIRED_FIELD = "missing_required_field"
TYPE_MISMATCH = "type_mismatch"
EMPTY_MAJOR_NAME_WITH_CODE = "empty_major_name_with_code"
EMPTY_PROVINCE = "empty_province"
EMPTY_YEAR = "empty_year"
PARTITION_MISMATCH = "partition_mismatch"

_NUMERIC_NOISE = re.compile(r"[^0-9.\-]")
_EXPONENT = re.compile(r"\d\s*[eE]\s*[+\-]?\d")
_TRUE_VALUES = {"是", "有", "true", "yes", "y", "1"}
_FALSE_VALUES = {"否", "无", "没有", "false", "no", "n", "0"}
_UNSET = object()


class _CoercionError(ValueError):
    pass


def _resolve(values, descriptor: ColumnDescriptor) -> object:
    for name in (descriptor.name, *descriptor.synonyms):
        if name in values:
            return values[name]
    return _UNSET


def _to_string(value: object) -> str:
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet readers hand numeric codes back as floats, e.g. 809.0.
        value = int(value)
    return str(value).strip()


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, bool):
        raise _CoercionError("boolean is not numeric")
    if isinstance(value, (int, Decimal)):
        number = Decimal(value)
    elif isinstance(value, float):
        number = Decimal(str(value))
    else:
        text = str(value)
        if _EXPONENT.search(text):
            raise _CoercionError(f"exponent notation is not accepted: {value!r}")
        cleaned = _NUMERIC_NOISE.sub("", text)
        if cleaned in {"", "-", ".", "-."}:
            raise _CoercionError(f"not a number: {value!r}")
        try:
            number = Decimal(cleaned)
        except InvalidOperation as exc:
            raise _CoercionError(f"not a number: {value!r}") from exc
    if not number.is_finite():
        raise _CoercionError(f"non-finite number: {value!r}")
    return number


def _to_integer(value: object) -> int:
    return math.floor(_to_decimal(value))


def _to_boolean(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    lowered = _to_string(value).lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise _CoercionError(f"not a boolean: {value!r}")


def _to_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(_to_string(value).replace("/", "-"))
    except ValueError as exc:
        raise _CoercionError(f"not a datetime: {value!r}") from exc


def _coerce(value: object, semantic_type: str) -> object:
    if semantic_type in ("string", "text"):
        return _to_string(value)
    if semantic_type == "integer":
        return _to_integer(value)
    if semantic_type == "decimal":
        return _to_decimal(value)
    if semantic_type == "boolean":
        return _to_boolean(value)
    if semantic_type == "datetime":
        return _to_datetime(value)
    raise _CoercionError(f"unsupported semantic type {semantic_type}")


def _is_blank(value: object) -> bool:
    if isinstance(value, float) and math.isnan(value):
        # Spreadsheet readers use NaN for empty cells.
        return True
    return value is None or (isinstance(value, str) and not value.strip())


def normalize(source: SourceRecord, schema_version: SchemaVersion) -> CanonicalRecord | ValidationError:
    resolved: list[tuple[str, object]] = []
    missing: list[str] = []
    mismatched: list[str] = []

    for descriptor in schema_version.columns:
        raw = _resolve(source.values, descriptor)
        if raw is _UNSET and descriptor.name == "province":
            raw = source.origin.province
        elif raw is _UNSET and descriptor.name == "year":
            raw = source.origin.year

        if raw is _UNSET or _is_blank(raw):
            if not descriptor.nullable:
                missing.append(descriptor.name)
            resolved.append((descriptor.name, None))
            continue

        try:
            value = _coerce(raw, descriptor.semantic_type)
        except _CoercionError:
            mismatched.append(descriptor.name)
            continue
        if value == "" and descriptor.semantic_type in ("string", "text"):
            value = None
        resolved.append((descriptor.name, value))

    if mismatched:
        return ValidationError(source=source, fields=tuple(mismatched), reason=TYPE_MISMATCH)

    values = dict(resolved)
    if "province" in missing:
        return ValidationError(source=source, fields=("province",), reason=EMPTY_PROVINCE)
    if "year" in missing:
        return ValidationError(source=source, fields=("year",), reason=EMPTY_YEAR)
    if missing:
        return ValidationError(source=source, fields=tuple(missing), reason=MISSING_REQUIRED_FIELD)
    if values["province"] != source.origin.province or values["year"] != source.origin.year:
        return ValidationError(source=source, fields=("province", "year"), reason=PARTITION_MISMATCH)
    if values.get("major_code") and not values.get("major_name"):
        return ValidationError(source=source, fields=("major_code", "major_name"), reason=EMPTY_MAJOR_NAME_WITH_CODE)

    return CanonicalRecord(
        table=schema_version.table,
        version=schema_version.version,
        fields=tuple(resolved),
        origin=source.origin,
    )


def normalize_partition(
    records: Iterable[SourceRecord],
    schema_version: SchemaVersion,
    partition: PartitionKey,
) -> Batch:
    batch = Batch(partition=partition)
    for source in records:
        outcome = normalize(source, schema_version)
        if isinstance(outcome, ValidationError):
            batch.rejected.append(outcome)
        else:
            batch.records.append(outcome)

    if batch.rejected:
        logger.warning(
            "rows rejected during normalization",
            extra={"partition": str(partition), "rejected": len(batch.rejected), "accepted": len(batch.records)},
        )
    return batch
