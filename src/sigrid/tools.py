# sigrid: File I/O tool surface with a reflective registry. Each tool is a plain function taking the
# workspace Context first; its JSON Schema is built from the signature and per-parameter overrides.

import collections
import inspect
import logging
import os
import pathlib
import shutil
from typing import Any, Callable, Dict, List, Optional, Union, get_args, get_origin, get_type_hints

from .context import Context, get_default_root
from .errors import InputValidationError, PreconditionError
from .fs import atomic_write_text, relative_posix, resolve_inside_root
from .progress import ProgressCallback, ToolAction

logger = logging.getLogger(__name__)

MAX_BYTES = 64 * 1024
LIST_MAX_ENTRIES = 500
LIST_MAX_DEPTH = 3
WRITE_MAX_BYTES = 256 * 1024
ALLOWED_WRITE_EXTENSIONS = frozenset([
    ".md", ".txt", ".log", ".json", ".js", ".ts", ".tsx", ".jsx", ".css", ".html",
    ".sh", ".yml", ".yaml", ".gitignore", ".patch",
])
WRITE_MODES = ("overwrite", "append", "create")

# -----------------------------
# Reflection utilities and registry
# -----------------------------

_REGISTRY: Dict[str, Dict[str, Any]] = {}

_type_map = {
    str: {"type": "string"},
    int: {"type": "integer"},
    bool: {"type": "boolean"},
    float: {"type": "number"},
    list: {"type": "array"},
    dict: {"type": "object"},
}


def _unwrap_optional(ann: Any) -> Any:
    if get_origin(ann) is Union:
        inner = [a for a in get_args(ann) if a is not type(None)]
        if len(inner) == 1:
            return inner[0]
    return ann


def _json_schema_for_annotation(ann: Any) -> Dict[str, Any]:
    """Map a Python annotation to a simple JSON Schema snippet."""
    ann = _unwrap_optional(ann)
    origin = get_origin(ann)
    if origin is not None:
        ann = origin
    return dict(_type_map.get(ann, {"type": "string"}))


def _build_parameters_schema(fn: Callable, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    sig = inspect.signature(fn)
    hints = get_type_hints(fn)
    props: Dict[str, Any] = {}
    required: List[str] = []
    # Skip first arg (ctx)
    for p in list(sig.parameters.values())[1:]:
        schema = _json_schema_for_annotation(hints.get(p.name, str))
        if p.default is inspect.Parameter.empty:
            required.append(p.name)
        elif p.default is not None:
            schema["default"] = p.default
        schema.update((overrides or {}).get(p.name, {}))
        props[p.name] = schema
    return {
        "type": "object",
        "properties": props,
        "required": required,
        "additionalProperties": False,
    }


def tool(
    name: str,
    description: str,
    *,
    start_message: str,
    fail_message: str,
    success: Callable[[Dict[str, Any]], str],
    param_overrides: Optional[Dict[str, Dict[str, Any]]] = None,
):
    """Decorator to register a function as a tool with reflective schema and progress messages."""
    def _wrap(fn: Callable):
        _REGISTRY[name] = {
            "fn": fn,
            "name": name,
            "description": description,
            "schema": _build_parameters_schema(fn, overrides=param_overrides),
            "start_message": start_message,
            "fail_message": fail_message,
            "success": success,
        }
        return fn
    return _wrap


def discover_tools(names: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Return flat tool descriptors ({type, name, description, parameters}) for registered tools."""
    specs: List[Dict[str, Any]] = []
    for name, meta in _REGISTRY.items():
        if names is not None and name not in names:
            continue
        specs.append({
            "type": "function",
            "name": name,
            "description": meta["description"],
            "parameters": meta["schema"],
        })
    return specs


def list_tool_names() -> List[str]:
    return list(_REGISTRY.keys())


def normalize_tool(spec: Dict[str, Any]) -> Dict[str, Any]:
    """Return the wrapped chat-completions shape {type:"function", function:{name, description, parameters}}."""
    if not isinstance(spec, dict):
        raise PreconditionError("Tool descriptor must be an object")
    fn = spec.get("function")
    if isinstance(fn, dict):
        if not fn.get("name"):
            raise PreconditionError("Tool descriptor is missing a name")
        return {"type": spec.get("type", "function"), "function": dict(fn)}
    if not spec.get("name"):
        raise PreconditionError("Tool descriptor is missing a name")
    return {
        "type": spec.get("type", "function"),
        "function": {
            "name": spec["name"],
            "description": spec.get("description", ""),
            "parameters": spec.get("parameters") or {"type": "object", "properties": {}},
        },
    }


def normalize_tools(specs: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
    if not specs:
        return None
    return [normalize_tool(s) for s in specs]


def unwrap_tool(spec: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of normalize_tool: return the flat {type, name, description, parameters} shape."""
    wrapped = normalize_tool(spec)
    return {"type": wrapped["type"], **wrapped["function"]}


def _coerce_value(val: Any, ann: Any) -> Any:
    ann = _unwrap_optional(ann)
    if val is None:
        return None
    try:
        if ann is int:
            return int(val)
        if ann is float:
            return float(val)
        if ann is bool:
            if isinstance(val, bool):
                return val
            s = str(val).strip().lower()
            return s in ("1", "true", "yes", "y")
    except (TypeError, ValueError):
        raise InputValidationError(f"Invalid value for parameter: {val!r}")
    return val


def _bind_arguments(fn: Callable, args: Dict[str, Any]) -> Dict[str, Any]:
    sig = inspect.signature(fn)
    hints = get_type_hints(fn)
    kwargs: Dict[str, Any] = {}
    for p in list(sig.parameters.values())[1:]:
        if p.name in args:
            kwargs[p.name] = _coerce_value(args[p.name], hints.get(p.name, str))
        elif p.default is inspect.Parameter.empty:
            raise InputValidationError(f"missing required parameter: {p.name}")
    return kwargs


def run_tool(ctx: Context, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """
    Dispatch to a registered tool, reporting start/succeed/fail through ctx.progress.

    Errors propagate after the fail event; the chat driver turns them into
    {ok: false, error} tool messages.
    """
    meta = _REGISTRY.get(name)
    if not meta:
        raise PreconditionError(f"Unknown tool: {name}")
    if not isinstance(args, dict):
        raise InputValidationError(f"Arguments for {name} must be an object")
    ctx.progress(ToolAction.start, meta["start_message"])
    try:
        result = meta["fn"](ctx, **_bind_arguments(meta["fn"], args))
    except Exception as e:
        ctx.progress(ToolAction.fail, f"{meta['fail_message']}: {e}")
        raise
    ctx.progress(ToolAction.succeed, meta["success"](result))
    return result


def execute_file_tool(
    name: str,
    args: Dict[str, Any],
    progress_callback: Optional[ProgressCallback] = None,
    workspace: Optional[Union[str, os.PathLike]] = None,
) -> Dict[str, Any]:
    """Default tool executor. workspace overrides the process-wide default root."""
    root = pathlib.Path(workspace) if workspace is not None else get_default_root()
    ctx = Context(root, progress_callback=progress_callback)
    logger.debug("tool %s in %s", name, ctx.repo_root)
    return run_tool(ctx, name, args)


# -----------------------------
# File tools
# -----------------------------

def _write_extension(path: pathlib.Path) -> str:
    if not path.suffix and path.name.startswith("."):
        return path.name.lower()
    return path.suffix.lower()


def _normalize_eol(text: str, eol: str) -> str:
    if eol not in ("lf", "crlf"):
        return text
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if eol == "crlf":
        text = text.replace("\n", "\r\n")
    return text


@tool(
    name="read_file",
    description="Read a text file inside the workspace. Supports partial reads via byte start/length.",
    start_message="Reading file...",
    fail_message="Error reading file",
    success=lambda r: f"Read {r['end'] - r['start']} bytes from {r['path']}",
    param_overrides={
        "filepath": {"description": "Path relative to the workspace root"},
        "encoding": {"description": "Text encoding of the file"},
        "start": {"minimum": 0, "description": "Byte offset to start reading from"},
        "length": {"minimum": 1, "maximum": MAX_BYTES, "description": "Maximum number of bytes to read"},
    },
)
def read_file(ctx: Context, filepath: str, encoding: str = "utf-8", start: int = 0, length: int = MAX_BYTES) -> Dict[str, Any]:
    if not isinstance(filepath, str) or not filepath:
        raise InputValidationError("Invalid 'filepath'")
    abs_path = resolve_inside_root(filepath, ctx.repo_root)
    size = abs_path.stat().st_size
    start = max(0, start)
    length = max(0, min(length, MAX_BYTES))
    end = min(size, start + length)
    with open(abs_path, "rb") as f:
        f.seek(start)
        data = f.read(max(0, end - start))
    return {
        "ok": True,
        "path": relative_posix(abs_path, ctx.repo_root),
        "size": size,
        "start": start,
        "end": max(start, end),
        "truncated": end < size,
        "preview": data.decode(encoding, errors="replace"),
    }


def _entry_kind(entry: os.DirEntry) -> str:
    if entry.is_symlink():
        return "link"
    if entry.is_dir(follow_symlinks=False):
        return "dir"
    if entry.is_file(follow_symlinks=False):
        return "file"
    return "other"


@tool(
    name="list_dir",
    description="List directory entries breadth-first. Symlinks are reported but never followed.",
    start_message="Listing directory...",
    fail_message="Error listing directory",
    success=lambda r: f"Listed {r['count']} entries",
    param_overrides={
        "dir": {"description": "Directory relative to the workspace root"},
        "recursive": {"description": "Descend into subdirectories"},
        "max_depth": {"minimum": 1, "maximum": LIST_MAX_DEPTH},
        "include_hidden": {"description": "Include dotfiles"},
        "limit": {"minimum": 1, "maximum": LIST_MAX_ENTRIES},
    },
)
def list_dir(
    ctx: Context,
    dir: str = ".",
    recursive: bool = False,
    max_depth: int = LIST_MAX_DEPTH,
    include_hidden: bool = False,
    limit: int = 200,
) -> Dict[str, Any]:
    base = resolve_inside_root(dir or ".", ctx.repo_root)
    if not base.is_dir():
        raise PreconditionError(f"Not a directory: {dir}")
    cap = max(1, min(limit, LIST_MAX_ENTRIES))
    depth_cap = max(1, min(max_depth, LIST_MAX_DEPTH))
    entries: List[Dict[str, Any]] = []
    truncated = False
    # queue holds (directory, level of its children)
    queue = collections.deque([(base, 1)])
    while queue and not truncated:
        current, level = queue.popleft()
        with os.scandir(current) as it:
            children = sorted(it, key=lambda e: e.name)
        for entry in children:
            if not include_hidden and entry.name.startswith("."):
                continue
            if len(entries) >= cap:
                truncated = True
                break
            kind = _entry_kind(entry)
            st = entry.stat(follow_symlinks=False)
            entries.append({
                "path": relative_posix(pathlib.Path(entry.path), ctx.repo_root),
                "name": entry.name,
                "type": kind,
                "size": st.st_size,
                "mtime_ms": int(st.st_mtime * 1000),
            })
            if kind == "dir" and recursive and level < depth_cap:
                queue.append((pathlib.Path(entry.path), level + 1))
    root_rel = relative_posix(base, ctx.repo_root) if base != ctx.repo_root else "."
    return {"ok": True, "root": root_rel, "count": len(entries), "truncated": truncated, "entries": entries}


@tool(
    name="write_file",
    description="Write a text file inside the workspace atomically (temp file + rename).",
    start_message="Writing file...",
    fail_message="Error writing file",
    success=lambda r: f"Wrote {r['size']} bytes to {r['path']}",
    param_overrides={
        "filepath": {"description": "Path relative to the workspace root"},
        "content": {"description": "Full text content to write"},
        "mode": {"enum": list(WRITE_MODES)},
        "mkdirp": {"description": "Create parent directories if needed"},
        "make_backup": {"description": "Create .bak before overwrite"},
        "max_bytes": {"minimum": 1, "maximum": WRITE_MAX_BYTES},
        "eol": {"enum": ["lf", "crlf", "auto"], "description": "Line ending normalization; auto keeps content as-is"},
        "chmod": {"description": "Optional chmod like '644' or '755' (octal string)"},
    },
)
def write_file(
    ctx: Context,
    filepath: str,
    content: str,
    mode: str = "overwrite",
    mkdirp: bool = True,
    make_backup: bool = False,
    max_bytes: int = WRITE_MAX_BYTES,
    eol: str = "auto",
    chmod: Optional[str] = None,
) -> Dict[str, Any]:
    if not isinstance(filepath, str) or not filepath or not isinstance(content, str):
        raise InputValidationError("Invalid 'filepath' or 'content'")
    if mode not in WRITE_MODES:
        raise PreconditionError("Invalid mode. Use overwrite | append | create")
    abs_path = resolve_inside_root(filepath, ctx.repo_root)
    ext = _write_extension(abs_path)
    if ext not in ALLOWED_WRITE_EXTENSIONS:
        raise PreconditionError(f"Disallowed file type: {ext or abs_path.name}")

    cap = min(max_bytes, WRITE_MAX_BYTES)
    text = _normalize_eol(content, eol)
    size = len(text.encode("utf-8"))
    if size > cap:
        raise PreconditionError(f"Content too large: {size} bytes (max {cap})")

    perm: Optional[int] = None
    if chmod:
        try:
            perm = int(chmod, 8)
        except ValueError:
            raise InputValidationError(f"Invalid chmod value: {chmod}")

    if mkdirp:
        abs_path.parent.mkdir(parents=True, exist_ok=True)
    elif not abs_path.parent.is_dir():
        raise FileNotFoundError(f"Parent directory does not exist: {relative_posix(abs_path.parent, ctx.repo_root)}")

    exists = abs_path.exists()
    if mode == "create" and exists:
        raise PreconditionError("File already exists (mode=create).")
    if mode == "append" and exists:
        text = abs_path.read_text(encoding="utf-8") + text
        size = len(text.encode("utf-8"))
        if size > cap:
            raise PreconditionError(f"Content too large after append: {size} bytes (max {cap})")

    backup_path = abs_path.with_name(abs_path.name + ".bak")
    if make_backup and mode != "create" and exists:
        shutil.copy2(abs_path, backup_path)

    atomic_write_text(abs_path, text, chmod=perm)
    st = abs_path.stat()
    rel = relative_posix(abs_path, ctx.repo_root)
    ctx.log(f"write_file {rel} ({st.st_size} bytes, mode={mode})")
    return {
        "ok": True,
        "path": rel,
        "size": st.st_size,
        "mtime_ms": int(st.st_mtime * 1000),
        "mode": mode,
        "backup": bool(make_backup and backup_path.exists()),
    }


@tool(
    name="write_multiple_files",
    description="Write several files in one call. Each file is written independently; failures are reported per file.",
    start_message="Writing files...",
    fail_message="Error writing files",
    success=lambda r: f"Wrote {r['files_written']} files ({r['files_failed']} failed)",
    param_overrides={
        "files": {
            "description": "Files to write",
            "items": {
                "type": "object",
                "properties": {
                    "filepath": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["filepath", "content"],
            },
        },
    },
)
def write_multiple_files(ctx: Context, files: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(files, list) or not files:
        raise InputValidationError("'files' must be a non-empty array")
    results: List[Dict[str, Any]] = []
    for item in files:
        item = item if isinstance(item, dict) else {}
        filepath = item.get("filepath")
        try:
            results.append(write_file(ctx, filepath, item.get("content"), mode=item.get("mode", "overwrite")))
        except Exception as e:
            # per-file failure is part of the result
            results.append({"ok": False, "path": filepath, "error": str(e)})
    failed = sum(1 for r in results if not r.get("ok"))
    return {
        "ok": failed == 0,
        "files_written": len(results) - failed,
        "files_failed": failed,
        "total_files": len(files),
        "results": results,
    }
