import hashlib
import json
import logging
import threading

from sqlalchemy import Connection, Engine, MetaData, Table, insert, select, update
from sqlalchemy.exc import DBAPIError

from admissions_sync.config import Settings
from admissions_sync.db_models import LoadCheckpoint, utc_now
from admissions_sync.errors import CommitError, is_transient
from admissions_sync.retry import run_with_retries
from admissions_sync.schemas import Batch, Checkpoint, ErrorEntry, LoadResult


logger = logging.getLogger(__name__)


def batch_fingerprint(rows: list[dict[str, object]]) -> str:
    hasher = hashlib.sha256()
    for row in rows:
        hasher.update(json.dumps(row, sort_keys=True, default=str, ensure_ascii=False).encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


class BulkLoader:
    def __init__(self, engine: Engine, settings: Settings, cancel_event: threading.Event | None = None) -> None:
        self.engine = engine
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()
        self._tables: dict[str, Table] = {}
        self._tables_lock = threading.Lock()

    def load(self, batch: Batch, target_table: str, batch_size: int | None = None) -> LoadResult:
        size = batch_size or self.settings.sub_batch_size
        if size < 1:
            raise ValueError("batch_size must be positive")

        partition_key = str(batch.partition)
        rows = [record.as_row() for record in batch.records]
        fingerprint = batch_fingerprint(rows)
        last_committed = -1
        failed: list[int] = []

        previous = self.read_checkpoint(partition_key)
        if previous is not None and previous.batch_fingerprint == fingerprint:
            if previous.batch_size != size:
                # Sub-batch indices only mean something at the size they were committed with.
                logger.info(
                    "resuming with checkpoint batch size",
                    extra={"partition": partition_key, "requested": size, "checkpoint": previous.batch_size},
                )
                size = previous.batch_size
            last_committed = previous.last_committed_index
            failed = list(previous.failed_indices)
            logger.info(
                "resuming from checkpoint",
                extra={"partition": partition_key, "last_committed_index": last_committed, "retrying": failed},
            )

        sub_batches = [rows[start : start + size] for start in range(0, len(rows), size)]
        result = LoadResult(rejected_rows=list(batch.rejected), total_batches=len(sub_batches))
        table = self._table(target_table)
        for index, chunk in enumerate(sub_batches):
            if index <= last_committed and index not in failed:
                result.skipped_batch_indices.append(index)
                continue
            if self.cancel_event.is_set():
                result.cancelled = True
                logger.warning("load cancelled between sub-batches", extra={"partition": partition_key, "next_index": index})
                break

            retrying = [i for i in failed if i != index]
            high_water = max(last_committed, index)
            try:
                self._call(lambda: self._commit(table, chunk, partition_key, fingerprint, size, index, high_water, retrying))
            except CommitError as exc:
                if index not in failed:
                    failed.append(index)
                result.failed_batch_indices.append(index)
                result.errors.append(
                    ErrorEntry(
                        reason=exc.reason_code,
                        message=str(exc),
                        partition=partition_key,
                        detail={"sub_batch_index": index, "rows": len(chunk)},
                    )
                )
                logger.warning("sub-batch rolled back", extra={"partition": partition_key, "index": index, "error": str(exc.cause)})
                self._call(lambda: self._record_failure(partition_key, fingerprint, size, last_committed, failed))
                continue

            failed = retrying
            last_committed = high_water
            result.committed += len(chunk)
            result.committed_batch_indices.append(index)

        result.checkpoint = Checkpoint(
            partition_key=partition_key,
            batch_fingerprint=fingerprint,
            last_committed_index=last_committed,
            batch_size=size,
            failed_indices=tuple(sorted(failed)),
        )
        logger.info(
            "load finished",
            extra={
                "partition": partition_key,
                "committed": result.committed,
                "failed_batches": result.failed_batch_indices,
                "skipped_batches": result.skipped_batch_indices,
            },
        )
        return result

    def read_checkpoint(self, partition_key: str) -> Checkpoint | None:
        def fetch() -> Checkpoint | None:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(
                        LoadCheckpoint.batch_fingerprint,
                        LoadCheckpoint.last_committed_index,
                        LoadCheckpoint.batch_size,
                        LoadCheckpoint.failed_indices,
                    ).where(LoadCheckpoint.partition_key == partition_key)
                ).one_or_none()
            if row is None:
                return None
            return Checkpoint(
                partition_key=partition_key,
                batch_fingerprint=row.batch_fingerprint,
                last_committed_index=row.last_committed_index,
                batch_size=row.batch_size,
                failed_indices=tuple(json.loads(row.failed_indices)),
            )

        return self._call(fetch)

    def _commit(
        self,
        table: Table,
        chunk: list[dict[str, object]],
        partition_key: str,
        fingerprint: str,
        size: int,
        index: int,
        last_committed: int,
        failed: list[int],
    ) -> None:
        # Rows and checkpoint share one transaction so a resumed run never double-loads.
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(table), chunk)
                self._write_checkpoint(conn, partition_key, fingerprint, size, last_committed, failed)
        except DBAPIError as exc:
            if is_transient(exc):
                raise
            raise CommitError(index, exc) from exc

    def _record_failure(self, partition_key: str, fingerprint: str, size: int, last_committed: int, failed: list[int]) -> None:
        with self.engine.begin() as conn:
            self._write_checkpoint(conn, partition_key, fingerprint, size, last_committed, failed)

    def _write_checkpoint(
        self,
        conn: Connection,
        partition_key: str,
        fingerprint: str,
        size: int,
        last_committed: int,
        failed: list[int],
    ) -> None:
        values = {
            "batch_fingerprint": fingerprint,
            "batch_size": size,
            "last_committed_index": last_committed,
            "failed_indices": json.dumps(sorted(failed)),
            "updated_at": utc_now(),
        }
        updated = conn.execute(
            update(LoadCheckpoint).where(LoadCheckpoint.partition_key == partition_key).values(**values)
        )
        if updated.rowcount == 0:
            conn.execute(insert(LoadCheckpoint).values(partition_key=partition_key, **values))

    def _table(self, name: str) -> Table:
        with self._tables_lock:
            table = self._tables.get(name)
            if table is None:
                table = self._call(lambda: Table(name, MetaData(), autoload_with=self.engine))
                self._tables[name] = table
            return table

    def _call(self, fn):
        return run_with_retries(
            fn,
            max_retries=self.settings.max_call_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            should_retry=is_transient,
        )
