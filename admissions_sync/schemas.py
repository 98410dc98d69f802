from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date


@dataclass(frozen=True)
class PartitionKey:
    table: str
    province: str
    year: int

    def __str__(self) -> str:
        return f"{self.table}:{self.province}:{self.year}"


SEMANTIC_TYPES = ("string", "text", "integer", "decimal", "boolean", "datetime")


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    semantic_type: str
    nullable: bool = True
    synonyms: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.semantic_type not in SEMANTIC_TYPES:
            raise ValueError(f"unknown semantic type '{self.semantic_type}' for column '{self.name}'")


@dataclass(frozen=True)
class SchemaVersion:
    table: str
    version: int
    columns: tuple[ColumnDescriptor, ...]
    # Last day on which live synonym columns are tolerated by the verifier.
    transition_ends: date | None = None

    def column(self, name: str) -> ColumnDescriptor | None:
        for descriptor in self.columns:
            if descriptor.name == name:
                return descriptor
        return None

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(descriptor.name for descriptor in self.columns)


@dataclass(frozen=True)
class RecordOrigin:
    province: str
    year: int
    source_file_id: str
    row_number: int


@dataclass(frozen=True)
class SourceRecord:
    values: Mapping[str, object]
    origin: RecordOrigin


@dataclass(frozen=True)
class CanonicalRecord:
    table: str
    version: int
    fields: tuple[tuple[str, object], ...]
    origin: RecordOrigin

    def get(self, name: str) -> object:
        for column, value in self.fields:
            if column == name:
                return value
        return None

    def as_row(self) -> dict[str, object]:
        return dict(self.fields)

    @property
    def college_name(self) -> str | None:
        return self.get("college_name")  # type: ignore[return-value]

    @property
    def major_name(self) -> str | None:
        return self.get("major_name")  # type: ignore[return-value]

    @property
    def major_group_name(self) -> str | None:
        return self.get("major_group_name")  # type: ignore[return-value]

    @property
    def major_code(self) -> str | None:
        return self.get("major_code")  # type: ignore[return-value]

    @property
    def major_group_code(self) -> str | None:
        return self.get("major_group_code")  # type: ignore[return-value]

    @property
    def province(self) -> str | None:
        return self.get("province")  # type: ignore[return-value]

    @property
    def year(self) -> int | None:
        return self.get("year")  # type: ignore[return-value]


@dataclass(frozen=True)
class ValidationError:
    """A rejected source row. Returned by the normalizer, never raised."""

    source: SourceRecord
    fields: tuple[str, ...]
    reason: str


@dataclass
class Batch:
    partition: PartitionKey
    records: list[CanonicalRecord] = field(default_factory=list)
    rejected: list[ValidationError] = field(default_factory=list)


@dataclass(frozen=True)
class TypeMismatch:
    column: str
    expected: str
    actual: str


@dataclass(frozen=True)
class VerificationResult:
    table: str
    version: int
    missing: tuple[ColumnDescriptor, ...] = ()
    extra: tuple[str, ...] = ()
    type_mismatches: tuple[TypeMismatch, ...] = ()
    tolerated: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.missing and not self.type_mismatches

    @property
    def drift(self) -> list[str]:
        return [column.name for column in self.missing]



@dataclass(frozen=True)
class Checkpoint:
    partition_key: str
    batch_fingerprint: str
    last_committed_index: int
    batch_size: int
    failed_indices: tuple[int, ...] = ()


@dataclass(frozen=True)
class ErrorEntry:
    reason: str
    message: str
    partition: str | None = None
    detail: Mapping[str, object] | None = None


@dataclass
class LoadResult:
    committed: int = 0
    rejected_rows: list[ValidationError] = field(default_factory=list)
    failed_batch_indices: list[int] = field(default_factory=list)
    skipped_batch_indices: list[int] = field(default_factory=list)
    committed_batch_indices: list[int] = field(default_factory=list)
    total_batches: int = 0
    checkpoint: Checkpoint | None = None
    cancelled: bool = False
    errors: list[ErrorEntry] = field(default_factory=list)


@dataclass
class InvalidationResult:
    purged: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    cursors: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled


@dataclass
class PartitionReport:
    partition: str
    stage: str = "idle"
    schema_version: int | None = None
    verified: int = 0
    accepted: int = 0
    rejected: int = 0
    committed: int = 0
    failed_batch_indices: list[int] = field(default_factory=list)
    skipped_batch_indices: list[int] = field(default_factory=list)
    purged: dict[str, int] = field(default_factory=dict)
    dry_run: bool = False
    errors: list[ErrorEntry] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.stage == "failed"


@dataclass
class RunReport:
    run_id: str
    started_on: date
    dry_run: bool
    partitions: list[PartitionReport] = field(default_factory=list)
    report_path: str | None = None

    @property
    def status(self) -> str:
        if any(partition.failed for partition in self.partitions):
            return "failed"
        return "succeeded"
