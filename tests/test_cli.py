import json
import os
from pathlib import Path
import signal
import subprocess
import sys


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["INPUT_DIR"] = str(tmp_path / "data" / "input")
    env["OUTPUT_DIR"] = str(tmp_path / "outputs")
    env["MAX_CALL_RETRIES"] = "0"
    env["RETRY_BACKOFF_SECONDS"] = "0"
    return env


def _cli(tmp_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "admissions_sync.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=_base_env(tmp_path),
        check=False,
        capture_output=True,
        text=True,
    )


def test_verify_fails_before_migration(tmp_path: Path) -> None:
    proc = _cli(tmp_path, "verify", "--table", "cleaned_admission_scores")

    assert proc.returncode == 1
    assert "ok=False" in proc.stdout
    assert "admission_batch" in proc.stdout


def test_migrate_then_verify_succeeds(tmp_path: Path) -> None:
    first = _cli(tmp_path, "migrate")
    second = _cli(tmp_path, "migrate")
    verify = _cli(tmp_path, "verify")

    assert first.returncode == 0
    assert second.returncode == 0
    assert verify.returncode == 0
    assert verify.stdout.count("ok=True") == 4


def test_dry_run_reports_without_loading(tmp_path: Path) -> None:
    input_dir = tmp_path / "data" / "input" / "enrollment_plans"
    input_dir.mkdir(parents=True, exist_ok=True)
    with (input_dir / "江苏_2024.jsonl").open("w", encoding="utf-8") as outfile:
        outfile.write(json.dumps({"院校名称": "南京大学", "专业代码": "080901", "专业名称": "计算机科学与技术"}, ensure_ascii=False))
        outfile.write("\n")
        outfile.write(json.dumps({"院校名称": "南京大学", "专业代码": "0809", "专业名称": ""}, ensure_ascii=False))
        outfile.write("\n")

    assert _cli(tmp_path, "migrate", "--table", "enrollment_plans").returncode == 0
    proc = _cli(tmp_path, "run", "--table", "enrollment_plans", "--dry-run")

    assert proc.returncode == 0
    assert "status=succeeded dry_run=True" in proc.stdout
    assert "accepted=1 rejected=1 committed=0" in proc.stdout
    assert "reason=empty_major_name_with_code" in proc.stdout


def test_scheduler_exits_cleanly_on_sigterm(tmp_path: Path) -> None:
    env = _base_env(tmp_path)
    env["LOG_LEVEL"] = "INFO"
    proc = subprocess.Popen(
        [sys.executable, "-m", "admissions_sync.main", "schedule"],
        cwd=Path(__file__).resolve().parents[1],
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        for line in proc.stderr:
            if "Scheduler started" in line:
                break
        proc.send_signal(signal.SIGTERM)
        proc.communicate(timeout=15)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()

    assert proc.returncode == 0
