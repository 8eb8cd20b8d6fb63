"""Template file safety: fingerprints, backups, atomic writes, sidecar locks."""

from __future__ import annotations

import hashlib
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

import portalocker

LOCK_SUFFIX = ".gridtpl.lock"
_LOCK_FLAGS = portalocker.LOCK_EX | portalocker.LOCK_NB


def lock_path_for(path: str | Path) -> Path:
    p = Path(path).resolve()
    return p.with_name(p.name + LOCK_SUFFIX)


def fingerprint(path: str | Path) -> str:
    """``sha256:<hex>`` digest of the file's bytes."""
    digest = hashlib.sha256(Path(path).read_bytes()).hexdigest()
    return f"sha256:{digest}"


def backup(path: str | Path) -> str:
    """Copy ``path`` to ``<stem>.<UTC timestamp>.bak<suffix>`` beside it."""
    path = Path(path)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    target = path.with_name(f"{path.stem}.{stamp}.bak{path.suffix}")
    target.write_bytes(path.read_bytes())
    return str(target)


def atomic_write(target: str | Path, data: bytes) -> None:
    """Write to a temp file in the same directory, then rename over ``target``."""
    target = Path(target)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".gridtpl_tmp_", suffix=target.suffix)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _acquire(handle: IO[str], timeout: float) -> None:
    """Lock ``handle`` exclusively, polling until ``timeout`` seconds pass."""
    deadline = time.monotonic() + max(timeout, 0)
    interval = min(0.1, max(0.01, timeout / 20)) if timeout > 0 else 0
    while True:
        try:
            portalocker.lock(handle, _LOCK_FLAGS)
            return
        except portalocker.LockException:
            if time.monotonic() >= deadline:
                raise
            time.sleep(interval)


def _read_holder(lock_path: Path) -> dict[str, str]:
    """Parse the ``key=value`` lines a lock holder writes."""
    try:
        lines = lock_path.read_text().splitlines()
    except OSError:
        return {}
    return dict(line.split("=", 1) for line in lines if "=" in line)


class TemplateLock:
    """Exclusive ``<file>.gridtpl.lock`` sidecar lock held across a read-modify-write.

    The OS drops the lock when the holder dies; a leftover sidecar file is
    then simply unlocked and can be acquired again.
    """

    def __init__(self, template_path: str | Path, *, timeout: float = 0) -> None:
        self.template_path = Path(template_path).resolve()
        self.timeout = timeout
        self._lock_path = lock_path_for(self.template_path)
        self._handle: IO[str] | None = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def __enter__(self) -> "TemplateLock":
        handle = open(self._lock_path, "a+")  # noqa: SIM115
        try:
            _acquire(handle, self.timeout)
        except portalocker.LockException:
            handle.close()
            raise
        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\ntime={datetime.now(timezone.utc).isoformat()}\n")
        handle.flush()
        self._handle = handle
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            portalocker.unlock(handle)
        finally:
            handle.close()


def check_lock(path: str | Path) -> dict:
    """Test a template's sidecar lock without keeping it.

    The result carries ``exists`` (the template file), ``locked``,
    ``lock_file`` and, while locked, the ``holder`` the owner wrote.
    """
    path = Path(path).resolve()
    lock_path = lock_path_for(path)
    status: dict = {"exists": path.exists(), "locked": False, "lock_file": str(lock_path)}
    if not lock_path.exists():
        return status
    try:
        with open(lock_path, "a+") as handle:
            portalocker.lock(handle, _LOCK_FLAGS)
            portalocker.unlock(handle)
    except portalocker.LockException:
        status.update(locked=True, holder=_read_holder(lock_path))
    except OSError:
        status["check_error"] = True
    return status


def read_text_safe(path: str | Path) -> str:
    """Read UTF-8 text, dropping a leading byte-order mark if present."""
    return Path(path).read_text(encoding="utf-8-sig")
