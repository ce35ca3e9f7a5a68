import os
import re

import pytest

from sigrid.errors import SandboxViolation
from sigrid.fs import (
    IgnoreRules,
    atomic_write_bytes,
    compile_glob,
    load_gitignore,
    now_iso,
    parse_ignore_patterns,
    read_json,
    resolve_inside_root,
    write_json,
)


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("rel", ["a.txt", "src/a.txt", "src/../b.txt", ".", "./x/y"])
def test_paths_inside_root_resolve(tmp_path, rel):
    resolved = resolve_inside_root(rel, tmp_path)
    root = str(tmp_path.resolve())
    assert str(resolved) == root or str(resolved).startswith(root + os.sep)


@pytest.mark.parametrize("rel", ["..", "../x", "a/../../x", "/etc/passwd"])
def test_paths_outside_root_are_rejected(tmp_path, rel):
    with pytest.raises(SandboxViolation, match="outside sandbox"):
        resolve_inside_root(rel, tmp_path)


def test_sibling_with_common_prefix_is_rejected(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    (tmp_path / "ws-evil").mkdir()
    with pytest.raises(SandboxViolation):
        resolve_inside_root("../ws-evil/x", root)


@pytest.mark.skipif(os.name != "posix", reason="symlinks")
def test_symlink_escape_is_rejected(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    os.symlink(tmp_path, root / "up")
    with pytest.raises(SandboxViolation):
        resolve_inside_root("up/secret.txt", root)


# ---------------------------------------------------------------------------
# Atomic writes and JSON
# ---------------------------------------------------------------------------


def test_atomic_write_replaces_and_cleans_up(tmp_path):
    target = tmp_path / "f.bin"
    target.write_bytes(b"old")
    atomic_write_bytes(target, b"new")
    assert target.read_bytes() == b"new"
    assert [p.name for p in tmp_path.iterdir()] == ["f.bin"]


def test_atomic_write_failure_removes_temp(tmp_path, monkeypatch):
    target = tmp_path / "f.bin"

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("sigrid.fs.os.replace", fail_replace)
    with pytest.raises(OSError, match="disk full"):
        atomic_write_bytes(target, b"data")
    assert list(tmp_path.iterdir()) == []


def test_json_helpers(tmp_path):
    path = tmp_path / "nested" / "data.json"
    write_json(path, {"b": 1, "a": [1, 2]})
    assert path.read_text().endswith("\n")
    assert read_json(path, None) == {"b": 1, "a": [1, 2]}
    assert read_json(tmp_path / "missing.json", {"d": 1}) == {"d": 1}
    (tmp_path / "bad.json").write_text("{nope")
    assert read_json(tmp_path / "bad.json", []) == []


def test_now_iso_format():
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", now_iso())


# ---------------------------------------------------------------------------
# Globs and .gitignore
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("pattern,path,expected", [
    ("*.js", "a.js", True),
    ("*.js", "src/a.js", False),
    ("**/*.js", "a.js", True),
    ("**/*.js", "src/deep/a.js", True),
    ("src/**", "src", True),
    ("src/**", "src/a/b.ts", True),
    ("src/**", "srcx/a.ts", False),
    ("**/node_modules/**", "node_modules", True),
    ("**/node_modules/**", "pkg/node_modules/x/y.js", True),
    ("./docs/*.md", "docs/a.md", True),
    (".sigrid", ".sigrid", True),
    ("file?.txt", "file1.txt", True),
    ("file?.txt", "file/.txt", False),
    ("[ab].md", "a.md", True),
    ("[!ab].md", "a.md", False),
])
def test_compile_glob(pattern, path, expected):
    assert bool(compile_glob(pattern).match(path)) is expected


def test_gitignore_last_match_wins_and_negation():
    rules = IgnoreRules(parse_ignore_patterns("# comment\n*.log\n!keep.log\n\nbuild/\n/root-only.txt\n"))
    assert rules.is_ignored("debug.log")
    assert rules.is_ignored("deep/debug.log")
    assert not rules.is_ignored("keep.log")
    assert rules.is_ignored("root-only.txt")
    assert not rules.is_ignored("sub/root-only.txt")


def test_gitignore_directory_rules_cover_descendants():
    rules = IgnoreRules(parse_ignore_patterns("build/\nlogs\n"))
    assert rules.is_ignored("build", is_dir=True)
    assert not rules.is_ignored("build")
    assert rules.is_ignored("build/out/app.js")
    assert rules.is_ignored("pkg/logs/today.txt")


def test_negation_cannot_reinclude_inside_ignored_directory():
    rules = IgnoreRules(parse_ignore_patterns("vendor/\n!vendor/keep.js\n"))
    assert rules.is_ignored("vendor/keep.js")


def test_load_gitignore_refreshes_on_change(tmp_path):
    assert not load_gitignore(tmp_path)
    ig = tmp_path / ".gitignore"
    ig.write_text("*.tmp\n")
    assert load_gitignore(tmp_path).is_ignored("a.tmp")
    ig.write_text("*.bak\n")
    os.utime(ig, (ig.stat().st_atime, ig.stat().st_mtime + 10))
    rules = load_gitignore(tmp_path)
    assert rules.is_ignored("a.bak")
    assert not rules.is_ignored("a.tmp")
