# sigrid: Filesystem helpers shared by tools, snapshotter, persistence and the sg-file writer: time/id
# utilities, atomic writes, tolerant JSON reads, the path sandbox, and .gitignore-style glob matching.

import contextlib
import datetime
import json
import logging
import os
import pathlib
import re
import secrets
import time
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from .errors import SandboxViolation

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def now_ts() -> float:
    """Return the current UNIX timestamp in seconds (float)."""
    return time.time()


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision."""
    dt = datetime.datetime.now(datetime.timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def random_hex(nbytes: int) -> str:
    """Return nbytes of randomness as lowercase hex."""
    return secrets.token_hex(nbytes)


def normalize_path(p: str) -> str:
    """Normalize a filesystem path to POSIX-style string (forward slashes)."""
    return str(pathlib.PurePath(p).as_posix())


# -----------------------------
# Path sandbox
# -----------------------------

def resolve_inside_root(relative: PathLike, root: PathLike) -> pathlib.Path:
    """
    Resolve relative against root and return the absolute path.

    Raises SandboxViolation unless the resolved path equals root or starts with
    root + os.sep. Absolute inputs are accepted only when they land inside root.
    """
    root_abs = pathlib.Path(root).resolve()
    target = (root_abs / os.fspath(relative)).resolve()
    root_str = str(root_abs)
    target_str = str(target)
    if target_str != root_str and not target_str.startswith(root_str.rstrip(os.sep) + os.sep):
        raise SandboxViolation(path=os.fspath(relative))
    return target


def relative_posix(path: pathlib.Path, root: pathlib.Path) -> str:
    """Return path relative to root using forward slashes."""
    return path.relative_to(root).as_posix()


# -----------------------------
# Atomic writes and JSON helpers
# -----------------------------

def atomic_write_bytes(target: pathlib.Path, data: bytes, chmod: Optional[int] = None) -> None:
    """
    Write data to target + ".tmp-<hex>" and rename it over target.

    The temp file is removed when writing, chmod or rename fails; the original error propagates.
    """
    tmp = target.with_name(f"{target.name}.tmp-{random_hex(6)}")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        if chmod is not None:
            os.chmod(tmp, chmod)
        os.replace(tmp, target)
    except Exception:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


def atomic_write_text(target: pathlib.Path, text: str, chmod: Optional[int] = None) -> None:
    atomic_write_bytes(target, text.encode("utf-8"), chmod=chmod)


def read_json(path: pathlib.Path, default: Any) -> Any:
    """Read JSON from path; return default if file is missing or invalid."""
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable JSON file %s: %s", path, e)
        return default


def write_json(path: pathlib.Path, obj: Any) -> None:
    """Atomically write a JSON object to path (UTF-8, 2-space indent, trailing newline)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(path, json.dumps(obj, indent=2, ensure_ascii=False) + "\n")


# -----------------------------
# Glob and .gitignore matching
# -----------------------------

def _translate_glob(pattern: str) -> str:
    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    # "**/" spans zero or more directories
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = j + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


def compile_glob(pattern: str) -> Pattern[str]:
    """
    Compile a POSIX glob to a full-match regex.

    '*' and '?' stay within one path segment, '**/' spans directories, and a
    trailing '/**' matches the directory itself as well as everything below it.
    """
    pat = pattern[2:] if pattern.startswith("./") else pattern
    suffix = ""
    if pat.endswith("/**"):
        pat = pat[:-3]
        suffix = "(?:/.*)?"
    return re.compile("^" + _translate_glob(pat) + suffix + "$")


def glob_match(rel_posix: str, patterns: List[Pattern[str]]) -> bool:
    return any(rx.match(rel_posix) for rx in patterns)


IgnoreRule = Tuple[bool, bool, Pattern[str]]


def parse_ignore_patterns(text: str) -> List[IgnoreRule]:
    """
    Parse .gitignore contents into (negated, dir_only, regex) rules.

    Rules:
      - Empty lines and comments (#) are ignored.
      - Lines starting with '!' negate the ignore (unignore).
      - A slash at the start or in the middle anchors to the root; otherwise the pattern matches at any depth.
      - Trailing '/' targets directories only.
    """
    rules: List[IgnoreRule] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        negated = False
        if line.startswith("!"):
            negated = True
            line = line[1:].strip()
        if line.startswith("\\"):
            line = line[1:]
        dir_only = line.endswith("/")
        line = line.rstrip("/")
        if not line:
            continue
        anchored = "/" in line
        line = line.lstrip("/")
        glob_pat = line if anchored else f"**/{line}"
        rules.append((negated, dir_only, compile_glob(glob_pat)))
    return rules


class IgnoreRules:
    """Last-match-wins ignore matcher; a path inside an ignored directory stays ignored."""

    def __init__(self, rules: Optional[List[IgnoreRule]] = None) -> None:
        self.rules = rules or []

    def __bool__(self) -> bool:
        return bool(self.rules)

    def _last_match(self, rel_posix: str, is_dir: bool) -> bool:
        ignored = False
        for negated, dir_only, rx in self.rules:
            if dir_only and not is_dir:
                continue
            if rx.match(rel_posix):
                ignored = not negated
        return ignored

    def is_ignored(self, rel_posix: str, is_dir: bool = False) -> bool:
        if not self.rules:
            return False
        parts = rel_posix.split("/")
        for k in range(1, len(parts)):
            if self._last_match("/".join(parts[:k]), True):
                return True
        return self._last_match(rel_posix, is_dir)


_GITIGNORE_CACHE: Dict[pathlib.Path, Tuple[Optional[float], IgnoreRules]] = {}


def load_gitignore(repo_root: pathlib.Path) -> IgnoreRules:
    """Return cached rules from <root>/.gitignore, refreshing when the file changes. Missing file means no rules."""
    root = pathlib.Path(repo_root).resolve()
    ig_path = root / ".gitignore"
    try:
        mtime: Optional[float] = ig_path.stat().st_mtime
    except FileNotFoundError:
        mtime = None
    cached = _GITIGNORE_CACHE.get(root)
    if cached and cached[0] == mtime:
        return cached[1]
    if mtime is None:
        rules = IgnoreRules()
    else:
        try:
            text = ig_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", ig_path, e)
            text = ""
        rules = IgnoreRules(parse_ignore_patterns(text))
    _GITIGNORE_CACHE[root] = (mtime, rules)
    return rules
