from collections.abc import Generator
import fnmatch
import json
from pathlib import Path
import threading

import pytest
import redis.exceptions
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from admissions_sync.config import Settings
from admissions_sync.database import build_engine, build_session_factory
from admissions_sync.ddl import DDL_SCRIPTS
from admissions_sync.pipeline import PipelineRunner
from admissions_sync.verifier import SchemaVerifier


class FakeCache:
    """In-memory stand-in exposing the two redis calls the coordinator makes."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.scan_failures = 0
        self.always_fail_match: str | None = None
        self.scan_calls = 0
        self.delete_calls = 0
        self.failing_delete_calls: set[int] = set()
        self._cursors: dict[int, str] = {}
        self._next_cursor = 0
        self._lock = threading.Lock()

    def set(self, key: str, value: str = "1") -> None:
        with self._lock:
            self.store[key] = value

    def scan(self, cursor: int = 0, match: str | None = None, count: int | None = None) -> tuple[int, list[str]]:
        with self._lock:
            self.scan_calls += 1
            if self.always_fail_match is not None and match == self.always_fail_match:
                raise redis.exceptions.ConnectionError("connection reset")
            if self.scan_failures:
                self.scan_failures -= 1
                raise redis.exceptions.TimeoutError("scan timed out")

            after = self._cursors.get(cursor) if cursor else None
            keys = sorted(key for key in self.store if fnmatch.fnmatchcase(key, match or "*"))
            remaining = [key for key in keys if after is None or key > after]
            page = remaining[: count or 10]
            if len(remaining) <= len(page):
                return 0, page
            self._next_cursor += 1
            self._cursors[self._next_cursor] = page[-1]
            return self._next_cursor, page

    def delete(self, *names: str) -> int:
        with self._lock:
            self.delete_calls += 1
            if self.delete_calls in self.failing_delete_calls:
                raise redis.exceptions.ConnectionError("connection reset during delete")
            deleted = 0
            for name in names:
                if self.store.pop(name, None) is not None:
                    deleted += 1
            return deleted

    def keys_matching(self, pattern: str) -> list[str]:
        with self._lock:
            return sorted(key for key in self.store if fnmatch.fnmatchcase(key, pattern))


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="admissions-sync",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        input_dir=str(temp_workspace / "data" / "input"),
        output_dir=str(temp_workspace / "outputs"),
        cache_host="localhost",
        cache_port=6379,
        cache_password=None,
        cache_db=0,
        cache_key_root="",
        sub_batch_size=200,
        purge_chunk_size=500,
        scan_page_size=100,
        max_call_retries=2,
        retry_backoff_seconds=0,
        call_timeout_seconds=5,
        max_workers=2,
        max_rejected_ratio=None,
        max_failed_batch_ratio=None,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def engine(test_settings: Settings) -> Generator[Engine, None, None]:
    engine = build_engine(test_settings)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def verifier(engine: Engine, test_settings: Settings) -> SchemaVerifier:
    return SchemaVerifier(engine, test_settings)


@pytest.fixture()
def migrated(verifier: SchemaVerifier, session_factory: sessionmaker[Session]) -> SchemaVerifier:
    for table, script in DDL_SCRIPTS.items():
        verifier.migrate(table, script)
    return verifier


@pytest.fixture()
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture()
def runner(
    test_settings: Settings,
    engine: Engine,
    session_factory: sessionmaker[Session],
    fake_cache: FakeCache,
) -> PipelineRunner:
    return PipelineRunner(test_settings, engine, session_factory, fake_cache)


def write_input_file(root: Path, table: str, name: str, rows: list[dict[str, object]]) -> Path:
    table_dir = root / "data" / "input" / table
    table_dir.mkdir(parents=True, exist_ok=True)
    path = table_dir / name
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row, ensure_ascii=False))
            outfile.write("\n")
    return path
