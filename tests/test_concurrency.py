"""Tests for TemplateLock and concurrent file access safety."""

from __future__ import annotations

import json
import multiprocessing
import os
import time
from pathlib import Path

import portalocker
import pytest
from typer.testing import CliRunner

from gridtpl.cli import app
from gridtpl.io.fileops import TemplateLock, check_lock

runner = CliRunner()


def _lock_path(template: Path) -> Path:
    return template.parent / (template.name + ".gridtpl.lock")


# ---------------------------------------------------------------------------
# TemplateLock unit tests
# ---------------------------------------------------------------------------


class TestTemplateLock:
    """Unit tests for the TemplateLock context manager."""

    def test_basic_acquire_release(self, template_file: Path):
        with TemplateLock(template_file):
            assert _lock_path(template_file).exists()
        # released; re-acquire succeeds
        with TemplateLock(template_file):
            pass

    def test_lock_file_remains_after_release(self, template_file: Path):
        assert not _lock_path(template_file).exists()
        with TemplateLock(template_file):
            pass
        assert _lock_path(template_file).exists()

    def test_lock_file_contains_pid(self, template_file: Path):
        with TemplateLock(template_file):
            pass
        content = _lock_path(template_file).read_text()
        assert f"pid={os.getpid()}" in content
        assert "time=" in content

    def test_lock_path_property(self, template_file: Path):
        assert TemplateLock(template_file).lock_path == _lock_path(template_file).resolve()

    def test_timeout_zero_fails_immediately(self, template_file: Path):
        with TemplateLock(template_file):
            with pytest.raises(portalocker.LockException):
                with TemplateLock(template_file, timeout=0):
                    pass


# ---------------------------------------------------------------------------
# check_lock() tests
# ---------------------------------------------------------------------------


class TestCheckLock:
    def test_no_lock_file(self, template_file: Path):
        result = check_lock(template_file)
        assert result["locked"] is False
        assert result["exists"] is True

    def test_stale_lock_file(self, template_file: Path):
        with TemplateLock(template_file):
            pass
        assert check_lock(template_file)["locked"] is False

    def test_lock_file_key(self, template_file: Path):
        assert check_lock(template_file)["lock_file"].endswith(".gridtpl.lock")


# ---------------------------------------------------------------------------
# Multiprocessing concurrency tests
# ---------------------------------------------------------------------------


def _hold_lock(template_path: str, ready_flag_path: str, done_flag_path: str):
    """Acquire lock, signal ready, wait for the done signal, release."""
    ready = Path(ready_flag_path)
    done = Path(done_flag_path)
    with TemplateLock(Path(template_path), timeout=0):
        ready.write_text("ready")
        for _ in range(100):
            if done.exists():
                break
            time.sleep(0.1)


def _try_lock_in_subprocess(template_path: str, timeout: float, result_path: str):
    out = Path(result_path)
    try:
        with TemplateLock(Path(template_path), timeout=timeout):
            out.write_text("acquired")
    except portalocker.LockException:
        out.write_text("blocked")
    except Exception as e:
        out.write_text(f"error:{e}")


def _short_hold(template_path: str, ready_path: str, done_path: str):
    """Hold lock briefly, then release. Module-level for pickling on Windows."""
    with TemplateLock(Path(template_path), timeout=0):
        Path(ready_path).write_text("ready")
        time.sleep(0.5)


def _wait_for(flag: Path) -> None:
    for _ in range(50):
        if flag.exists():
            return
        time.sleep(0.1)


class TestConcurrentAccess:
    """Cross-process concurrency tests using multiprocessing."""

    def test_concurrent_lock_rejection(self, template_file: Path, tmp_path: Path):
        ready_flag = tmp_path / "ready.flag"
        done_flag = tmp_path / "done.flag"
        result_file = tmp_path / "result.txt"

        holder = multiprocessing.Process(
            target=_hold_lock,
            args=(str(template_file), str(ready_flag), str(done_flag)),
        )
        holder.start()
        try:
            _wait_for(ready_flag)
            assert ready_flag.exists(), "Holder process did not signal ready"

            contender = multiprocessing.Process(
                target=_try_lock_in_subprocess,
                args=(str(template_file), 0, str(result_file)),
            )
            contender.start()
            contender.join(timeout=10)
            assert result_file.read_text() == "blocked"
        finally:
            done_flag.write_text("done")
            holder.join(timeout=10)

    def test_lock_wait_success(self, template_file: Path, tmp_path: Path):
        ready_flag = tmp_path / "ready.flag"
        result_file = tmp_path / "result.txt"

        holder = multiprocessing.Process(
            target=_short_hold,
            args=(str(template_file), str(ready_flag), str(tmp_path / "done.flag")),
        )
        holder.start()
        try:
            _wait_for(ready_flag)
            assert ready_flag.exists()
            contender = multiprocessing.Process(
                target=_try_lock_in_subprocess,
                args=(str(template_file), 5, str(result_file)),
            )
            contender.start()
            contender.join(timeout=15)
            assert result_file.read_text() == "acquired"
        finally:
            holder.join(timeout=10)

    def test_cli_reports_lock_held(self, template_file: Path, tmp_path: Path):
        ready_flag = tmp_path / "ready.flag"
        done_flag = tmp_path / "done.flag"
        holder = multiprocessing.Process(
            target=_hold_lock,
            args=(str(template_file), str(ready_flag), str(done_flag)),
        )
        holder.start()
        try:
            _wait_for(ready_flag)
            result = runner.invoke(app, ["column", "add", "-f", str(template_file)])
            data = json.loads(result.stdout)
            assert data["ok"] is False
            assert data["errors"][0]["code"] == "ERR_LOCK_HELD"
            assert result.exit_code == 50

            status = runner.invoke(app, ["tpl", "lock-status", "-f", str(template_file)])
            assert json.loads(status.stdout)["result"]["locked"] is True
        finally:
            done_flag.write_text("done")
            holder.join(timeout=10)
