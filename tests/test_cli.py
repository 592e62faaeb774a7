import os
from pathlib import Path
import subprocess
import sys


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["STUDENT_FILES_DIR"] = str(tmp_path / "StudentFiles")
    env["MASTER_SHEET_PATH"] = str(tmp_path / "MasterSheet" / "master.xlsx")
    env["OUTPUT_DIR"] = str(tmp_path / "output")
    env["BACKUP_DIR"] = str(tmp_path / "backups")
    env["STUDENT_SHEET_NAME"] = "Grading Sheet"
    env["MASTER_SHEET_NAME"] = "001"
    env["MARK_CELLS"] = "C6,C7"
    env["MASTER_COLUMNS"] = "I,J"
    env["RETRY_ATTEMPTS"] = "1"
    env["RETRY_BACKOFF_SECONDS"] = "0"
    return env


def _run(tmp_path: Path, env: dict[str, str], *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "markmaster.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=env,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_returns_zero_on_success(tmp_path: Path, write_master, write_student_file) -> None:
    env = _base_env(tmp_path)
    write_master(Path(env["MASTER_SHEET_PATH"]), ["STU001", "STU002"])
    write_student_file(tmp_path / "StudentFiles" / "stu001.xlsx", "STU001", {"C6": 85.5, "C7": 92})

    proc = _run(tmp_path, env, "run", "--run-key", "cli-success")

    assert proc.returncode == 0, proc.stderr
    assert "status=succeeded" in proc.stdout
    assert "merged=1" in proc.stdout


def test_cli_returns_nonzero_when_files_fail_in_strict_mode(tmp_path: Path, write_master, write_student_file) -> None:
    env = _base_env(tmp_path)
    env["SKIP_INVALID_FILES"] = "false"
    write_master(Path(env["MASTER_SHEET_PATH"]), ["STU001"])
    write_student_file(tmp_path / "StudentFiles" / "bad.xlsx", "STU001", {"C6": "abc"})

    proc = _run(tmp_path, env, "run", "--dry-run")

    assert proc.returncode == 1
    assert "status=failed" in proc.stdout
    assert "bad.xlsx" in proc.stdout


def test_cli_returns_nonzero_when_master_sheet_is_missing(tmp_path: Path) -> None:
    env = _base_env(tmp_path)
    (tmp_path / "StudentFiles").mkdir()

    proc = _run(tmp_path, env, "run")

    assert proc.returncode == 1
    assert "status=failed" in proc.stdout


def test_cli_stats_and_history(tmp_path: Path, write_master, write_student_file) -> None:
    env = _base_env(tmp_path)
    write_master(Path(env["MASTER_SHEET_PATH"]), ["STU001"])
    write_student_file(tmp_path / "StudentFiles" / "stu001.xlsx", "STU001", {"C6": 40})

    stats = _run(tmp_path, env, "stats")
    _run(tmp_path, env, "run", "--dry-run", "--run-key", "cli-history")
    history = _run(tmp_path, env, "history", "--limit", "5")

    assert stats.returncode == 0
    assert "total_excel_files=1" in stats.stdout
    assert history.returncode == 0
    assert "run_key=cli-history" in history.stdout
    assert "dry_run=True" in history.stdout


def test_cli_rejects_mismatched_mapping(tmp_path: Path) -> None:
    env = _base_env(tmp_path)
    env["MASTER_COLUMNS"] = "I"

    proc = _run(tmp_path, env, "stats")

    assert proc.returncode == 1
    assert "invalid configuration" in proc.stdout


def test_cli_rejects_reused_run_key(tmp_path: Path, write_master, write_student_file) -> None:
    env = _base_env(tmp_path)
    write_master(Path(env["MASTER_SHEET_PATH"]), ["STU001"])
    write_student_file(tmp_path / "StudentFiles" / "stu001.xlsx", "STU001", {"C6": 40})

    first = _run(tmp_path, env, "run", "--dry-run", "--run-key", "cli-dup")
    second = _run(tmp_path, env, "run", "--dry-run", "--run-key", "cli-dup")

    assert first.returncode == 0, first.stderr
    assert second.returncode == 1
    assert "already used" in second.stdout
    assert "Traceback" not in second.stderr
