# sigrid: Snapshotter. Walks a workspace, applies include globs, excludes (plus addon internal paths and
# .sigrid/), .gitignore, the extension filter and the size cap, then serializes the kept files as XML.

import logging
import os
import pathlib
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .addons import get_addon_internal_paths
from .config import SIGRID_DIR
from .errors import SandboxViolation
from .fs import IgnoreRules, compile_glob, glob_match, load_gitignore, resolve_inside_root
from .models import OmitReason, OmittedFile, Snapshot, SnapshotFile, SnapshotOptions
from .settings import get_section
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = [
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts",
    ".css", ".scss", ".sass", ".less",
    ".html", ".htm",
    ".md", ".mdx",
    ".json", ".yaml", ".yml",
    ".xml",
    ".txt",
]

DEFAULT_EXCLUDES = [
    # dependencies
    "node_modules",
    # build artifacts
    "dist",
    "build",
    ".next",
    "out",
    "coverage",
    # version control / tools
    ".git",
    SIGRID_DIR,
    ".cache",
    # lock files
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "bun.lockb",
]

DEFAULT_MAX_FILE_SIZE = 1024 * 1000

DEFAULT_INCLUDE = ["**/*"]

PLACEHOLDER_PREFIX = "// File contents excluded from context"


def expand_exclude(pattern: str) -> str:
    """Bare names (no '/' and no '*') match anywhere as a directory or file: **/NAME/**."""
    if "/" not in pattern and "*" not in pattern:
        return f"**/{pattern}/**"
    return pattern


def resolve_options(options: Optional[SnapshotOptions] = None, settings: Optional[Dict[str, Any]] = None) -> SnapshotOptions:
    """Explicit options win over the settings 'snapshot' section, which wins over the defaults."""
    merged: Dict[str, Any] = {
        "extensions": DEFAULT_EXTENSIONS,
        "max_file_size": DEFAULT_MAX_FILE_SIZE,
        "exclude": DEFAULT_EXCLUDES,
        "include": DEFAULT_INCLUDE,
    }
    section = get_section(settings or {}, "snapshot")
    for key in SnapshotOptions.model_fields:
        if section.get(key) is not None:
            merged[key] = section[key]
    if options is not None:
        merged.update(options.model_dump(exclude_none=True, exclude_unset=True))
    return SnapshotOptions(**merged)


def _walk(root: pathlib.Path, exclude_rx: List[Any]) -> Iterator[str]:
    """Yield workspace-relative POSIX file paths in sorted order, pruning excluded directories."""
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = pathlib.Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"
        dirnames[:] = sorted(d for d in dirnames if not glob_match(prefix + d, exclude_rx))
        for name in sorted(filenames):
            yield prefix + name


def _candidate_paths(root: pathlib.Path, opts: SnapshotOptions, internal_paths: Set[str]) -> List[str]:
    exclude_rx = [compile_glob(expand_exclude(p)) for p in list(opts.exclude or []) + [SIGRID_DIR]]
    include_rx = [compile_glob(p) for p in (opts.include or DEFAULT_INCLUDE)]
    out: List[str] = []
    for rel in _walk(root, exclude_rx):
        if not glob_match(rel, include_rx):
            continue
        if rel in internal_paths or glob_match(rel, exclude_rx):
            continue
        try:
            resolve_inside_root(rel, root)
        except SandboxViolation:
            logger.warning("Skipping %s: symlink resolves outside the workspace", rel)
            continue
        out.append(rel)
    return out


def _extension_allowed(rel: str, extensions: Optional[List[str]]) -> bool:
    if not extensions:
        return True
    return os.path.splitext(rel)[1] in extensions


def list_workspace_paths(
    root: pathlib.Path,
    options: Optional[SnapshotOptions] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> List[str]:
    """Paths a snapshot would consider (same filters, nothing read). Used for file-structure listings."""
    root = pathlib.Path(root).resolve()
    opts = resolve_options(options, settings)
    gitignore = load_gitignore(root) if opts.respect_gitignore else IgnoreRules()
    internal = set(get_addon_internal_paths(root))
    return [
        rel for rel in _candidate_paths(root, opts, internal)
        if not gitignore.is_ignored(rel) and _extension_allowed(rel, opts.extensions)
    ]


def collect_files(
    root: pathlib.Path,
    options: Optional[SnapshotOptions] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Tuple[List[SnapshotFile], List[OmittedFile]]:
    """Return (kept, omitted), each sorted by path."""
    root = pathlib.Path(root).resolve()
    opts = resolve_options(options, settings)
    gitignore = load_gitignore(root) if opts.respect_gitignore else IgnoreRules()
    internal = set(get_addon_internal_paths(root))
    max_size = opts.max_file_size if opts.max_file_size is not None else DEFAULT_MAX_FILE_SIZE

    files: List[SnapshotFile] = []
    omitted: List[OmittedFile] = []
    for rel in _candidate_paths(root, opts, internal):
        if gitignore.is_ignored(rel):
            omitted.append(OmittedFile(path=rel, reason=OmitReason.gitignore))
            continue
        if not _extension_allowed(rel, opts.extensions):
            continue
        abs_path = root / rel
        try:
            size = abs_path.stat().st_size
            if size > max_size:
                omitted.append(OmittedFile(path=rel, reason=OmitReason.size, size=size))
                continue
            content = abs_path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            omitted.append(OmittedFile(path=rel, reason=OmitReason.read_error, error=str(e)))
            continue
        files.append(SnapshotFile(path=rel, content=content, size=size))

    files.sort(key=lambda f: f.path)
    omitted.sort(key=lambda o: o.path)
    return files, omitted


def escape_xml(text: str) -> str:
    """Escape &, < and > only; quotes and backslashes stay verbatim."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _placeholder(entry: OmittedFile) -> str:
    if entry.reason == OmitReason.size:
        return f"{PLACEHOLDER_PREFIX} (exceeds max size: {entry.size} bytes)"
    if entry.reason == OmitReason.gitignore:
        return f"{PLACEHOLDER_PREFIX} (excluded by .gitignore)"
    return f"{PLACEHOLDER_PREFIX} (read error: {entry.error})"


def format_as_xml(files: List[SnapshotFile], omitted: Optional[List[OmittedFile]] = None, include_placeholders: bool = True) -> str:
    blocks = [f'<file path="{f.path}">\n{escape_xml(f.content)}\n</file>' for f in files]
    if include_placeholders:
        blocks.extend(f'<file path="{o.path}">\n{_placeholder(o)}\n</file>' for o in omitted or [])
    return "\n\n".join(blocks)


def create_snapshot(
    root: pathlib.Path,
    options: Optional[SnapshotOptions] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Snapshot:
    """Collect and serialize a workspace. Output is byte-identical for identical inputs."""
    opts = resolve_options(options, settings)
    files, omitted = collect_files(root, opts)
    xml = format_as_xml(files, omitted, include_placeholders=opts.include_placeholders)
    snap = Snapshot(files=files, omitted=omitted, xml=xml, estimated_tokens=estimate_tokens(xml))
    logger.info(
        "Snapshot of %s: %d files, %d omitted, ~%d tokens",
        root, len(files), len(omitted), snap.estimated_tokens,
    )
    return snap
