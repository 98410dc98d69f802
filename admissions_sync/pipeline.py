from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import date
import logging
from pathlib import Path
import threading
import uuid

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from admissions_sync.cache import DEFAULT_NAMESPACES, CacheClient, CacheNamespace, InvalidationCoordinator
from admissions_sync.config import Settings
from admissions_sync.db_models import IngestionRun
from admissions_sync.errors import RunCancelledError, SchemaDriftError
from admissions_sync.loader import BulkLoader
from admissions_sync.normalizer import normalize_partition
from admissions_sync.reporting import report_payload, write_json
from admissions_sync.retry import RetryExhaustedError
from admissions_sync.run_store import create_ingestion_run, finish_run, mark_stage, store_rejections
from admissions_sync.schema_registry import SchemaRegistry, default_registry
from admissions_sync.schemas import ErrorEntry, PartitionReport, RunReport
from admissions_sync.sources import JsonlSourceAdapter, PartitionSource, SourceAdapter
from admissions_sync.verifier import SchemaVerifier, utc_today


logger = logging.getLogger(__name__)

IDLE = "idle"
VERIFYING = "verifying"
NORMALIZING = "normalizing"
LOADING = "loading"
INVALIDATING = "invalidating"
DONE = "done"
FAILED = "failed"


class _PartitionFailed(Exception):
    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        session_factory: sessionmaker[Session],
        cache_client: CacheClient | None,
        *,
        registry: SchemaRegistry | None = None,
        source_adapter: SourceAdapter | None = None,
        namespaces: Sequence[CacheNamespace] = DEFAULT_NAMESPACES,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.registry = registry or default_registry()
        self.source_adapter = source_adapter or JsonlSourceAdapter(settings.input_dir)
        self.namespaces = tuple(namespaces)
        self.today = today
        self.cancel_event = threading.Event()
        self.verifier = SchemaVerifier(engine, settings, today=today)
        self.loader = BulkLoader(engine, settings, cancel_event=self.cancel_event)
        self.coordinator = (
            InvalidationCoordinator(cache_client, settings, cancel_event=self.cancel_event)
            if cache_client is not None
            else None
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(
        self,
        *,
        tables: Sequence[str],
        province: str | None = None,
        year: int | None = None,
        dry_run: bool = False,
        run_id: str | None = None,
    ) -> RunReport:
        if not dry_run and self.coordinator is None:
            raise ValueError("a cache client is required unless dry_run is set")

        started_on = self.today()
        run_id = run_id or f"{started_on.isoformat()}-{uuid.uuid4().hex[:8]}"
        report = RunReport(run_id=run_id, started_on=started_on, dry_run=dry_run)
        sources = list(self.source_adapter.partitions(tables, province=province, year=year))
        logger.info("pipeline run started", extra={"run_id": run_id, "partitions": len(sources), "dry_run": dry_run})

        if sources:
            # One worker per partition; partitions never wait on each other.
            with ThreadPoolExecutor(max_workers=max(1, self.settings.max_workers), thread_name_prefix="partition") as pool:
                futures = [pool.submit(self.run_partition, source, run_id=run_id, dry_run=dry_run) for source in sources]
                report.partitions = [future.result() for future in futures]

        report_path = Path(self.settings.output_dir) / "reports" / f"{run_id}.json"
        report.report_path = str(report_path)
        write_json(report_path, report_payload(report))
        logger.info("pipeline run finished", extra={"run_id": run_id, "status": report.status})
        return report

    def run_partition(self, source: PartitionSource, *, run_id: str, dry_run: bool = False) -> PartitionReport:
        key = source.key
        report = PartitionReport(partition=str(key), dry_run=dry_run)

        with self.session_factory() as db:
            ledger = None if dry_run else create_ingestion_run(db, run_id=run_id, key=key)

            def advance(stage: str) -> None:
                report.stage = stage
                if ledger is not None:
                    mark_stage(db, ledger, stage)

            try:
                self._run_stages(source, report, advance, db, ledger, dry_run)
            except SchemaDriftError as exc:
                self._fail(report, exc.reason_code, str(exc), detail={"missing": exc.result.drift})
            except RunCancelledError as exc:
                self._fail(report, exc.reason_code, str(exc))
            except _PartitionFailed as exc:
                self._fail(report, exc.reason, str(exc))
            except RetryExhaustedError as exc:
                self._fail(report, exc.reason_code, f"external call failed after retries: {exc}")
            except Exception as exc:
                logger.exception("partition failed", extra={"partition": str(key)})
                self._fail(report, "unexpected_error", f"{type(exc).__name__}: {exc}")

            if ledger is not None:
                finish_run(db, ledger, report)
        return report

    def _run_stages(
        self,
        source: PartitionSource,
        report: PartitionReport,
        advance: Callable[[str], None],
        db: Session,
        ledger: IngestionRun | None,
        dry_run: bool,
    ) -> None:
        key = source.key
        partition = str(key)

        advance(VERIFYING)
        version = self.registry.resolve(key.table, source.version_hint)
        report.schema_version = version.version
        verification = self.verifier.verify(key.table, version)
        if verification.extra:
            report.errors.append(
                ErrorEntry(
                    reason="extra_columns",
                    message=f"live table has unexpected columns: {', '.join(verification.extra)}",
                    partition=partition,
                    detail={"columns": list(verification.extra)},
                )
            )
        if not verification.ok:
            raise SchemaDriftError(key.table, verification)

        advance(NORMALIZING)
        records = source.load()
        batch = normalize_partition(records, version, key)
        report.verified = len(records)
        report.accepted = len(batch.records)
        report.rejected = len(batch.rejected)
        for rejection in batch.rejected:
            report.errors.append(
                ErrorEntry(
                    reason=rejection.reason,
                    message=f"row {rejection.source.origin.row_number} rejected",
                    partition=partition,
                    detail={
                        "fields": list(rejection.fields),
                        "row_number": rejection.source.origin.row_number,
                        "source_file_id": rejection.source.origin.source_file_id,
                    },
                )
            )
        if ledger is not None and batch.rejected:
            store_rejections(db, ledger, batch.rejected)

        if dry_run:
            advance(DONE)
            logger.info("dry run partition normalized", extra={"partition": partition, "would_commit": report.accepted})
            return

        advance(LOADING)
        threshold = self.settings.max_rejected_ratio
        if threshold is not None and report.verified and report.rejected / report.verified > threshold:
            raise _PartitionFailed(
                "rejected_ratio_exceeded",
                f"{report.rejected}/{report.verified} rows rejected, above threshold {threshold}",
            )

        result = self.loader.load(batch, key.table)
        report.committed = result.committed
        report.failed_batch_indices = list(result.failed_batch_indices)
        report.skipped_batch_indices = list(result.skipped_batch_indices)
        report.errors.extend(result.errors)

        fatal_load: Exception | None = None
        batch_threshold = self.settings.max_failed_batch_ratio
        if batch_threshold is not None and result.total_batches:
            failed_ratio = len(result.failed_batch_indices) / result.total_batches
            if failed_ratio > batch_threshold:
                fatal_load = _PartitionFailed(
                    "failed_batch_ratio_exceeded",
                    f"{len(result.failed_batch_indices)}/{result.total_batches} sub-batches failed, above threshold {batch_threshold}",
                )
        if result.cancelled:
            fatal_load = RunCancelledError("run cancelled between sub-batches")

        # Only sub-batches committed by this run make the caches stale.
        if result.committed_batch_indices:
            advance(INVALIDATING)
            self._invalidate(report, reason=f"load committed for {partition}")

        if fatal_load is not None:
            raise fatal_load
        advance(DONE)

    def _invalidate(self, report: PartitionReport, reason: str) -> None:
        if self.coordinator is None:
            raise ValueError("a cache client is required to invalidate caches")
        outcome = self.coordinator.invalidate(self.namespaces, reason=reason)
        report.purged = dict(outcome.purged)
        for namespace, message in sorted(outcome.failures.items()):
            report.errors.append(
                ErrorEntry(
                    reason="purge_failed",
                    message=message,
                    partition=report.partition,
                    detail={"namespace": namespace, "cursor": outcome.cursors.get(namespace)},
                )
            )
        if outcome.cancelled:
            raise RunCancelledError(f"cache purge cancelled; resume cursors {dict(sorted(outcome.cursors.items()))}")

    def _fail(self, report: PartitionReport, reason: str, message: str, detail: dict[str, object] | None = None) -> None:
        report.stage = FAILED
        report.errors.append(ErrorEntry(reason=reason, message=message, partition=report.partition, detail=detail))
        logger.error("partition failed", extra={"partition": report.partition, "reason": reason, "error": message})
