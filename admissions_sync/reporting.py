from dataclasses import asdict
import json
from pathlib import Path

from admissions_sync.schemas import RunReport


def report_payload(report: RunReport) -> dict[str, object]:
    payload = asdict(report)
    payload["status"] = report.status
    return payload


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, ensure_ascii=False, default=str)
        outfile.write("\n")


def format_summary(report: RunReport) -> str:
    lines = [f"run_id={report.run_id} status={report.status} dry_run={report.dry_run} report={report.report_path}"]
    for partition in report.partitions:
        purged = ",".join(f"{name}:{count}" for name, count in sorted(partition.purged.items())) or "-"
        lines.append(
            "partition={partition} stage={stage} verified={verified} accepted={accepted} rejected={rejected} "
            "committed={committed} failed_batches={failed} purged={purged}".format(
                partition=partition.partition,
                stage=partition.stage,
                verified=partition.verified,
                accepted=partition.accepted,
                rejected=partition.rejected,
                committed=partition.committed,
                failed=partition.failed_batch_indices,
                purged=purged,
            )
        )
        for error in partition.errors:
            lines.append(f"  error reason={error.reason} {error.message}")
    return "\n".join(lines)
