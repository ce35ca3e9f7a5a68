# sigrid: Structured-output channel. Parses <sg-file path="...">BODY</sg-file> elements from model output,
# writes them through the sandbox atomically, and tracks elements incrementally while a response streams.

import logging
import pathlib
import re
from typing import Dict, List, Optional, Tuple

from .errors import ParseError, SandboxViolation
from .fs import atomic_write_text, relative_posix, resolve_inside_root
from .models import WrittenFile
from .progress import ProgressCallback, ProgressEvent, emit

logger = logging.getLogger(__name__)

SG_FILE_RE = re.compile(r'<sg-file\s+path="([^"]+)"[^>]*>(.*?)</sg-file>', re.DOTALL)
OPEN_TAG_RE = re.compile(r'<sg-file\s+path="([^"]+)"[^>]*>')
CLOSE_TAG = "</sg-file>"


def strip_body(body: str) -> str:
    """Drop the single newline that delimits the body from each tag; everything else is kept verbatim."""
    if body.startswith("\r\n"):
        body = body[2:]
    elif body.startswith("\n"):
        body = body[1:]
    if body.endswith("\r\n"):
        body = body[:-2]
    elif body.endswith("\n"):
        body = body[:-1]
    return body


def parse_sg_files(content: str) -> List[Tuple[str, str]]:
    """Return (path, body) pairs in source order."""
    return [(m.group(1), strip_body(m.group(2))) for m in SG_FILE_RE.finditer(content or "")]


def find_sg_paths(content: str) -> List[str]:
    """Unique sg-file paths in first-seen order (complete or not)."""
    seen: Dict[str, None] = {}
    for m in OPEN_TAG_RE.finditer(content or ""):
        seen.setdefault(m.group(1), None)
    return list(seen)


def _unterminated_path(content: str) -> Optional[str]:
    tail_start = 0
    for m in SG_FILE_RE.finditer(content or ""):
        tail_start = m.end()
    m = OPEN_TAG_RE.search(content or "", tail_start)
    return m.group(1) if m else None


def write_sg_files(root: pathlib.Path, content: str) -> List[WrittenFile]:
    """
    Write every complete sg-file element under root and report {path, size} per file.

    Elements naming the same file (after resolution) collapse to one write of the
    last body. Every target is checked before anything is written: paths that
    escape root, name root itself or name an existing directory raise
    SandboxViolation. A trailing unterminated element raises ParseError carrying
    the files already written.
    """
    root = pathlib.Path(root).resolve()
    latest: Dict[str, Tuple[pathlib.Path, str]] = {}
    for path, body in parse_sg_files(content):
        target = resolve_inside_root(path, root)
        if target == root or target.is_dir():
            raise SandboxViolation(f"sg-file path must name a file, not a directory: {path}", path=path)
        rel = relative_posix(target, root)
        latest[rel] = (target, body)

    written: List[WrittenFile] = []
    for rel, (target, body) in latest.items():
        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(target, body)
        written.append(WrittenFile(path=rel, size=len(body)))
        logger.info("Wrote %s (%d chars)", written[-1].path, len(body))

    dangling = _unterminated_path(content)
    if dangling is not None:
        raise ParseError(f"Unterminated <sg-file> element for path {dangling}", partial=written)
    return written


class SgFileStreamParser:
    """
    Incremental scanner over streamed text.

    Emits FILE_STREAMING_START {path, action} when an opening tag completes,
    FILE_STREAMING_CONTENT {path, chunk} as the body grows, and
    FILE_STREAMING_END {path, full_content} on the closing tag. Nothing is written here.
    """

    def __init__(self, root: pathlib.Path, progress_callback: Optional[ProgressCallback]) -> None:
        self.root = pathlib.Path(root)
        self.progress_callback = progress_callback
        self.buffer = ""
        self.current_path: Optional[str] = None
        self.parts: List[str] = []
        self.completed: List[str] = []

    def _action(self, path: str) -> str:
        try:
            return "update" if resolve_inside_root(path, self.root).exists() else "create"
        except SandboxViolation:
            return "create"

    def _content(self, chunk: str) -> None:
        if not chunk:
            return
        self.parts.append(chunk)
        emit(self.progress_callback, ProgressEvent.FILE_STREAMING_CONTENT, {"path": self.current_path, "chunk": chunk})

    def feed(self, chunk: str) -> None:
        self.buffer += chunk
        while True:
            if self.current_path is None:
                m = OPEN_TAG_RE.search(self.buffer)
                if not m:
                    # keep only what could still become an opening tag
                    idx = self.buffer.rfind("<")
                    self.buffer = self.buffer[idx:] if idx != -1 else ""
                    return
                self.current_path = m.group(1)
                self.parts = []
                self.buffer = self.buffer[m.end():]
                emit(self.progress_callback, ProgressEvent.FILE_STREAMING_START, {
                    "path": self.current_path,
                    "action": self._action(self.current_path),
                })
                continue
            idx = self.buffer.find(CLOSE_TAG)
            if idx == -1:
                safe = len(self.buffer) - (len(CLOSE_TAG) - 1)
                if safe > 0:
                    self._content(self.buffer[:safe])
                    self.buffer = self.buffer[safe:]
                return
            self._content(self.buffer[:idx])
            self.buffer = self.buffer[idx + len(CLOSE_TAG):]
            emit(self.progress_callback, ProgressEvent.FILE_STREAMING_END, {
                "path": self.current_path,
                "full_content": strip_body("".join(self.parts)),
            })
            self.completed.append(self.current_path)
            self.current_path = None
