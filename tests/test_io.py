"""Tests for file I/O helpers."""

from __future__ import annotations

from pathlib import Path

from gridtpl.io.fileops import (
    atomic_write,
    backup,
    fingerprint,
    lock_path_for,
    read_text_safe,
)


def test_fingerprint(template_file: Path):
    fp1 = fingerprint(template_file)
    fp2 = fingerprint(template_file)
    assert fp1 == fp2
    assert fp1.startswith("sha256:")


def test_fingerprint_changes_with_content(tmp_path: Path):
    path = tmp_path / "a.json"
    path.write_text("{}")
    before = fingerprint(path)
    path.write_text('{"variants": []}')
    assert fingerprint(path) != before


def test_backup(template_file: Path):
    bak = backup(template_file)
    assert Path(bak).exists()
    assert ".bak" in bak
    assert Path(bak).suffix == ".json"
    assert Path(bak).read_bytes() == template_file.read_bytes()


def test_atomic_write(tmp_path: Path):
    target = tmp_path / "test.json"
    atomic_write(target, b"hello world")
    assert target.read_bytes() == b"hello world"


def test_atomic_write_overwrites(tmp_path: Path):
    target = tmp_path / "test.json"
    target.write_bytes(b"old")
    atomic_write(target, b"new")
    assert target.read_bytes() == b"new"
    assert not list(tmp_path.glob(".gridtpl_tmp_*"))


def test_read_text_safe_strips_bom(tmp_path: Path):
    path = tmp_path / "bom.json"
    path.write_bytes(b"\xef\xbb\xbf{}")
    assert read_text_safe(path) == "{}"


def test_lock_path_for(tmp_path: Path):
    assert lock_path_for(tmp_path / "report.json") == (tmp_path / "report.json.gridtpl.lock").resolve()
