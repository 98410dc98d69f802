from collections.abc import Iterator, Sequence
from dataclasses import dataclass
import json
from pathlib import Path
import re
from typing import Protocol

from admissions_sync.schemas import PartitionKey, RecordOrigin, SourceRecord


@dataclass(frozen=True)
class PartitionSource:
    key: PartitionKey
    path: Path
    version_hint: int | None = None

    def load(self) -> list[SourceRecord]:
        return read_source_records(self.path, self.key)


class SourceAdapter(Protocol):
    def partitions(
        self,
        tables: Sequence[str],
        province: str | None = None,
        year: int | None = None,
    ) -> Iterator[PartitionSource]: ...


def read_source_records(input_path: Path, key: PartitionKey) -> list[SourceRecord]:
    if not input_path.exists():
        raise FileNotFoundError(f"input file not found: {input_path}")

    records: list[SourceRecord] = []
    with input_path.open("r", encoding="utf-8") as infile:
        for line_number, line in enumerate(infile, start=1):
            line = line.strip()
            if not line:
                continue
            values = json.loads(line)
            if not isinstance(values, dict):
                raise ValueError(f"{input_path}:{line_number}: expected a JSON object per line")
            origin = RecordOrigin(
                province=key.province,
                year=key.year,
                source_file_id=input_path.name,
                row_number=line_number,
            )
            records.append(SourceRecord(values=values, origin=origin))
    return records


class JsonlSourceAdapter:
    """Reads exports converted to ``{input_dir}/{table}/{province}_{year}[.v{n}].jsonl``."""

    FILE_PATTERN = re.compile(r"^(?P<province>[^_/]+)_(?P<year>\d{4})(?:\.v(?P<version>\d+))?\.jsonl$")

    def __init__(self, input_dir: str | Path) -> None:
        self.input_dir = Path(input_dir)

    def partitions(
        self,
        tables: Sequence[str],
        province: str | None = None,
        year: int | None = None,
    ) -> Iterator[PartitionSource]:
        for table in tables:
            table_dir = self.input_dir / table
            if not table_dir.is_dir():
                continue
            for path in sorted(table_dir.glob("*.jsonl")):
                match = self.FILE_PATTERN.match(path.name)
                if match is None:
                    continue
                file_province = match.group("province")
                file_year = int(match.group("year"))
                if province is not None and file_province != province:
                    continue
                if year is not None and file_year != year:
                    continue
                version = match.group("version")
                yield PartitionSource(
                    key=PartitionKey(table=table, province=file_province, year=file_year),
                    path=path,
                    version_hint=int(version) if version else None,
                )
