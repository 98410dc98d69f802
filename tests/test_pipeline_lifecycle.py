from dataclasses import replace
import json
from pathlib import Path

import pytest
from sqlalchemy import func, select, table, text

from admissions_sync.db_models import IngestionRun, RejectedRow
from admissions_sync.ddl import DDL_SCRIPTS, render_create_table
from admissions_sync.pipeline import PipelineRunner
from admissions_sync.run_store import get_runs
from admissions_sync.schema_registry import CLEANED_ADMISSION_SCORES_V2
from admissions_sync.schemas import PartitionKey
from admissions_sync.sources import PartitionSource

from conftest import write_input_file


PLAN_ROWS = [
    {"年份": 2024, "生源地": "江苏", "院校代码": "10284", "院校名称": "南京大学", "专业代码": "080901", "专业名称": "计算机科学与技术", "批次": "本科批", "计划人数": 20},
    {"年份": 2024, "生源地": "江苏", "院校代码": "10284", "院校名称": "南京大学", "专业代码": "0809", "专业名称": "", "批次": "本科批", "计划人数": 5},
    {"年份": 2024, "生源地": "江苏", "院校代码": "10286", "院校名称": "东南大学", "专业代码": "082801", "专业名称": "建筑学", "批次": "本科批", "计划人数": "8人"},
]

SCORE_ROWS = [
    {"学校": "南京大学", "专业": "计算机科学与技术", "科类": "物理类", "批次": "本科批", "最低分": 652, "最低位次": 1830},
    {"学校": "东南大学", "专业": "建筑学", "科类": "物理类", "批次": "本科批", "最低分": "641", "最低位次": "3,904"},
]


def seed_cache(cache) -> None:
    for index in range(40):
        cache.set(f"rec:v2:user-{index}")
    for index in range(7):
        cache.set(f"user_preferences:{index}")
        cache.set(f"user_embedding:{index}")
    cache.set("session:keep-me")


def row_count(engine, name: str) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table(name))).scalar_one()


def test_full_run_loads_and_invalidates(runner: PipelineRunner, migrated, temp_workspace: Path, fake_cache, engine) -> None:
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    write_input_file(temp_workspace, "cleaned_admission_scores", "江苏_2024.jsonl", SCORE_ROWS)
    seed_cache(fake_cache)

    report = runner.run(tables=["enrollment_plans", "cleaned_admission_scores"])

    assert report.status == "succeeded"
    plans, scores = report.partitions
    assert plans.partition == "enrollment_plans:江苏:2024"
    assert (plans.stage, plans.verified, plans.accepted, plans.rejected, plans.committed) == ("done", 3, 2, 1, 2)
    assert [error.reason for error in plans.errors] == ["empty_major_name_with_code"]
    assert (scores.stage, scores.schema_version, scores.committed) == ("done", 2, 2)

    assert row_count(engine, "enrollment_plans") == 2
    assert row_count(engine, "cleaned_admission_scores") == 2
    with engine.connect() as conn:
        ranks = conn.execute(text("SELECT min_rank FROM cleaned_admission_scores ORDER BY min_rank")).scalars().all()
    assert ranks == [1830, 3904]

    # Both partitions purge the shared namespaces; every key is deleted exactly once.
    assert sum(p.purged["rec"] for p in report.partitions) == 40
    assert sum(p.purged["user_embedding"] for p in report.partitions) == 7
    assert fake_cache.keys_matching("rec:*") == []
    assert fake_cache.keys_matching("user_preferences:*") == []
    assert fake_cache.keys_matching("session:*") == ["session:keep-me"]

    saved = json.loads(Path(report.report_path).read_text(encoding="utf-8"))
    assert saved["status"] == "succeeded"
    assert len(saved["partitions"]) == 2

    with runner.session_factory() as db:
        runs = get_runs(db, report.run_id)
        assert sorted(run.stage for run in runs) == ["done", "done"]
        rejected = db.execute(select(RejectedRow)).scalars().all()
        assert [(row.row_number, row.reason) for row in rejected] == [(2, "empty_major_name_with_code")]


def test_schema_drift_fails_table_without_normalizing(
    runner: PipelineRunner, verifier, temp_workspace: Path, fake_cache, engine, session_factory
) -> None:
    verifier.migrate("enrollment_plans", DDL_SCRIPTS["enrollment_plans"])
    without_batch = replace(
        CLEANED_ADMISSION_SCORES_V2,
        columns=tuple(c for c in CLEANED_ADMISSION_SCORES_V2.columns if c.name != "admission_batch"),
    )
    verifier.migrate("cleaned_admission_scores", render_create_table(without_batch))
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    write_input_file(temp_workspace, "cleaned_admission_scores", "江苏_2024.jsonl", SCORE_ROWS)
    seed_cache(fake_cache)

    report = runner.run(tables=["enrollment_plans", "cleaned_admission_scores"])

    assert report.status == "failed"
    plans, scores = report.partitions
    assert plans.stage == "done"
    assert scores.stage == "failed"
    assert scores.verified == 0
    assert scores.committed == 0
    assert scores.purged == {}
    assert scores.errors[-1].reason == "schema_drift"
    assert scores.errors[-1].detail == {"missing": ["admission_batch"]}
    assert row_count(engine, "cleaned_admission_scores") == 0


def test_dry_run_skips_load_and_invalidation(runner: PipelineRunner, migrated, temp_workspace: Path, fake_cache, engine) -> None:
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    seed_cache(fake_cache)

    report = runner.run(tables=["enrollment_plans"], dry_run=True)

    assert report.status == "succeeded"
    (plans,) = report.partitions
    assert (plans.stage, plans.accepted, plans.rejected, plans.committed) == ("done", 2, 1, 0)
    assert plans.dry_run
    assert row_count(engine, "enrollment_plans") == 0
    assert len(fake_cache.keys_matching("rec:*")) == 40
    with runner.session_factory() as db:
        assert db.execute(select(func.count()).select_from(IngestionRun)).scalar_one() == 0


def test_partition_filter_selects_province_and_year(runner: PipelineRunner, migrated, temp_workspace: Path) -> None:
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    write_input_file(temp_workspace, "enrollment_plans", "浙江_2024.jsonl", PLAN_ROWS)
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2023.jsonl", PLAN_ROWS)

    report = runner.run(tables=["enrollment_plans"], province="江苏", year=2024, dry_run=True)

    assert [partition.partition for partition in report.partitions] == ["enrollment_plans:江苏:2024"]


def test_rejection_threshold_fails_before_any_commit(
    test_settings, engine, session_factory, migrated, temp_workspace: Path, fake_cache
) -> None:
    strict = replace(test_settings, max_rejected_ratio=0.1)
    runner = PipelineRunner(strict, engine, session_factory, fake_cache)
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    seed_cache(fake_cache)

    report = runner.run(tables=["enrollment_plans"])

    (plans,) = report.partitions
    assert plans.stage == "failed"
    assert plans.errors[-1].reason == "rejected_ratio_exceeded"
    assert row_count(engine, "enrollment_plans") == 0
    assert len(fake_cache.keys_matching("rec:*")) == 40


def test_failed_batch_threshold_still_invalidates_committed_rows(
    test_settings, engine, session_factory, migrated, temp_workspace: Path, fake_cache
) -> None:
    strict = replace(test_settings, sub_batch_size=1, max_failed_batch_ratio=0.25)
    runner = PipelineRunner(strict, engine, session_factory, fake_cache)
    duplicate = dict(PLAN_ROWS[0])
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", [PLAN_ROWS[0], duplicate, PLAN_ROWS[2]])
    seed_cache(fake_cache)

    report = runner.run(tables=["enrollment_plans"])

    (plans,) = report.partitions
    assert plans.stage == "failed"
    assert plans.committed == 2
    assert plans.failed_batch_indices == [1]
    assert [error.reason for error in plans.errors] == ["commit_failed", "failed_batch_ratio_exceeded"]
    assert plans.purged["rec"] == 40
    assert fake_cache.keys_matching("rec:*") == []


def test_nothing_committed_means_no_invalidation(runner: PipelineRunner, migrated, temp_workspace: Path, fake_cache) -> None:
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", [PLAN_ROWS[1]])
    seed_cache(fake_cache)

    report = runner.run(tables=["enrollment_plans"])

    (plans,) = report.partitions
    assert plans.stage == "done"
    assert plans.committed == 0
    assert plans.purged == {}
    assert len(fake_cache.keys_matching("rec:*")) == 40


def test_live_run_requires_cache_client(test_settings, engine, session_factory) -> None:
    runner = PipelineRunner(test_settings, engine, session_factory, None)

    with pytest.raises(ValueError):
        runner.run(tables=["enrollment_plans"])


def test_cancelled_run_fails_partition_without_commit(runner: PipelineRunner, migrated, temp_workspace: Path, fake_cache, engine) -> None:
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    seed_cache(fake_cache)
    runner.cancel()

    report = runner.run(tables=["enrollment_plans"])

    (plans,) = report.partitions
    assert report.status == "failed"
    assert plans.stage == "failed"
    assert plans.errors[-1].reason == "cancelled"
    assert row_count(engine, "enrollment_plans") == 0
    assert len(fake_cache.keys_matching("rec:*")) == 40


def test_rerun_that_commits_nothing_leaves_caches_alone(runner: PipelineRunner, migrated, temp_workspace: Path, fake_cache) -> None:
    write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    runner.run(tables=["enrollment_plans"])
    seed_cache(fake_cache)

    rerun = runner.run(tables=["enrollment_plans"])

    (plans,) = rerun.partitions
    assert plans.stage == "done"
    assert plans.committed == 0
    assert plans.skipped_batch_indices == [0]
    assert plans.purged == {}
    assert len(fake_cache.keys_matching("rec:*")) == 40


def test_partition_without_cache_client_fails_at_invalidation(
    test_settings, engine, session_factory, migrated, temp_workspace: Path
) -> None:
    runner = PipelineRunner(test_settings, engine, session_factory, None)
    path = write_input_file(temp_workspace, "enrollment_plans", "江苏_2024.jsonl", PLAN_ROWS)
    source = PartitionSource(key=PartitionKey("enrollment_plans", "江苏", 2024), path=path)

    report = runner.run_partition(source, run_id="manual")

    assert report.stage == "failed"
    assert report.committed == 2
    assert report.errors[-1].reason == "unexpected_error"
    assert report.errors[-1].message.startswith("ValueError: a cache client is required")
