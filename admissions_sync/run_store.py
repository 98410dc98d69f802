import json

from sqlalchemy import select
from sqlalchemy.orm import Session

from admissions_sync.db_models import IngestionRun, RejectedRow, utc_now
from admissions_sync.schemas import PartitionKey, PartitionReport, ValidationError


def create_ingestion_run(db: Session, *, run_id: str, key: PartitionKey) -> IngestionRun:
    run = IngestionRun(
        run_id=run_id,
        partition_key=str(key),
        table_name=key.table,
        province=key.province,
        year=key.year,
        stage="idle",
        started_at=utc_now(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_runs(db: Session, run_id: str) -> list[IngestionRun]:
    stmt = select(IngestionRun).where(IngestionRun.run_id == run_id).order_by(IngestionRun.id)
    return list(db.execute(stmt).scalars().all())


def mark_stage(db: Session, run: IngestionRun, stage: str) -> None:
    run.stage = stage
    db.commit()


def store_rejections(db: Session, run: IngestionRun, rejected: list[ValidationError]) -> None:
    for rejection in rejected:
        db.add(
            RejectedRow(
                ingestion_run_id=run.id,
                source_file_id=rejection.source.origin.source_file_id,
                row_number=rejection.source.origin.row_number,
                reason=rejection.reason,
                fields=json.dumps(list(rejection.fields)),
                raw_record=json.dumps(dict(rejection.source.values), ensure_ascii=False, default=str),
            )
        )
    run.rejected_records = len(rejected)
    db.commit()


def finish_run(db: Session, run: IngestionRun, report: PartitionReport) -> None:
    run.stage = report.stage
    run.schema_version = report.schema_version
    run.accepted_records = report.accepted
    run.rejected_records = report.rejected
    run.committed_records = report.committed
    run.failed_batches = json.dumps(report.failed_batch_indices)
    fatal = [entry.message for entry in report.errors if entry.reason not in _RECOVERED_REASONS]
    run.error = "; ".join(fatal) if fatal else None
    run.completed_at = utc_now()
    db.commit()


_RECOVERED_REASONS = {
    "missing_required_field",
    "type_mismatch",
    "empty_major_name_with_code",
    "empty_province",
    "empty_year",
    "partition_mismatch",
    "extra_columns",
    "commit_failed",
    "purge_failed",
}
