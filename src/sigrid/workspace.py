# sigrid: Workspace orchestrator. Combines the snapshotter, the chat driver and the sg-file writer for
# execute(); adds chat() for read-only Q&A and compact_history() for stored conversations. Also owns the
# workspace lifecycle (create/open/populate/export/delete).

import io
import json
import logging
import os
import pathlib
import shutil
import tarfile
import tempfile
from typing import Any, Dict, List, Optional, Union

from .addons import apply_addon, is_addon_applied
from .client import ChatCompletionsClient
from .config import SIGRID_DIR
from .context import Storage
from .errors import ParseError, PreconditionError
from .fs import atomic_write_bytes, random_hex, resolve_inside_root
from .llm import ChatDriver, resolve_options
from .models import (
    Addon,
    AddonResult,
    ChatOptions,
    ChatResult,
    CompactionResult,
    IncludeWorkspace,
    Snapshot,
    SnapshotOptions,
    WorkspaceMetadata,
    WrittenFile,
)
from .progress import ProgressEvent, emit
from .prompts import (
    CHAT_PROMPT,
    READONLY_TOOLING_PROMPT,
    SNAPSHOT_HEADER,
    STATIC_CONTEXT_PROMPT,
    TOOLING_PROMPT,
    get_prompt,
)
from .settings import load_settings
from .snapshot import create_snapshot, list_workspace_paths
from .sgfile import SgFileStreamParser, find_sg_paths, write_sg_files
from .tokens import estimate_tokens
from .tools import discover_tools, execute_file_tool

logger = logging.getLogger(__name__)

MODES = ("dynamic", "static")
COMPACTION_MODES = ("files-only",)
AI_RULES_FILE = "AI_RULES.md"


def _as_list(value: Optional[Union[str, List[str]]]) -> List[str]:
    if value is None:
        return []
    return [value] if isinstance(value, str) else list(value)


def _instructions_with(options: Dict[str, Any], mode_prompt: str) -> List[str]:
    """Caller instructions, then the single instruction option, then the mode prompt."""
    instructions = _as_list(options.pop("instructions", None)) + _as_list(options.pop("instruction", None))
    return instructions + [mode_prompt]


def _message_tokens(message: Dict[str, Any]) -> int:
    content = message.get("content")
    if isinstance(content, str):
        return estimate_tokens(content)
    return estimate_tokens(json.dumps(content, ensure_ascii=False)) if content is not None else 0


def _snapshot_options(snapshot: Optional[Union[SnapshotOptions, Dict[str, Any]]]) -> Optional[SnapshotOptions]:
    if snapshot is None or isinstance(snapshot, SnapshotOptions):
        return snapshot
    if isinstance(snapshot, dict):
        return SnapshotOptions(**snapshot)
    raise PreconditionError("snapshot must be a serialized string, a SnapshotOptions or a mapping")


class _WriteRecorder:
    """Wraps a tool executor and records files reported written by write tools."""

    def __init__(self, executor: Any) -> None:
        self.executor = executor
        self.written: List[WrittenFile] = []

    def __call__(self, name: str, args: Dict[str, Any], progress_callback: Any = None, workspace: Any = None) -> Any:
        result = self.executor(name, args, progress_callback, workspace)
        if not isinstance(result, dict):
            return result
        if name == "write_file":
            self._record(result)
        elif name == "write_multiple_files":
            for r in result.get("results") or []:
                self._record(r)
        return result

    def _record(self, result: Any) -> None:
        # executors supplied by callers may report success without path/size
        if not isinstance(result, dict) or not result.get("ok"):
            return
        path, size = result.get("path"), result.get("size")
        if isinstance(path, str) and isinstance(size, int):
            self.written.append(WrittenFile(path=path, size=size))


class Workspace:
    def __init__(self, path: Union[str, os.PathLike], workspace_id: Optional[str] = None, settings: Optional[Dict[str, Any]] = None) -> None:
        self.path = pathlib.Path(path).resolve()
        self.id = workspace_id or self.path.name
        self.storage = Storage(self.path)
        self.settings = settings if settings is not None else load_settings(self.path)
        self._populated = False
        self._deleted = False

    def __repr__(self) -> str:
        return f"Workspace(id={self.id!r}, path={str(self.path)!r})"

    @property
    def populated(self) -> bool:
        return self._populated

    @property
    def metadata(self) -> Optional[WorkspaceMetadata]:
        md = self.storage.load_metadata()
        return WorkspaceMetadata.model_validate(md) if md else None

    # -----------------------------
    # Snapshots
    # -----------------------------

    def create_snapshot(self, options: Optional[Union[SnapshotOptions, Dict[str, Any]]] = None) -> Snapshot:
        return create_snapshot(self.path, _snapshot_options(options), settings=self.settings)

    def snapshot(self, options: Optional[Union[SnapshotOptions, Dict[str, Any]]] = None) -> str:
        """Serialized XML snapshot of the workspace."""
        return self.create_snapshot(options).xml

    def read_ai_rules(self) -> Optional[str]:
        p = self.path / AI_RULES_FILE
        return p.read_text(encoding="utf-8") if p.is_file() else None

    # -----------------------------
    # Driver plumbing
    # -----------------------------

    def _options(self, options: Dict[str, Any]) -> ChatOptions:
        if options.get("client") is None:
            options["client"] = ChatCompletionsClient.from_settings(self.path, self.settings)
        return resolve_options(None, **options)

    def _run(self, prompt: str, opts: ChatOptions) -> ChatResult:
        cb = opts.progress_callback
        if opts.stream:
            emit(cb, ProgressEvent.RESPONSE_STREAMING)
            result = ChatDriver(prompt, opts).run()
            emit(cb, ProgressEvent.RESPONSE_STREAMED)
        else:
            emit(cb, ProgressEvent.RESPONSE_WAITING)
            result = ChatDriver(prompt, opts).run()
            emit(cb, ProgressEvent.RESPONSE_RECEIVED)
        return result

    # -----------------------------
    # Operations
    # -----------------------------

    def execute(
        self,
        prompt: str,
        mode: str = "dynamic",
        snapshot: Optional[Union[str, SnapshotOptions, Dict[str, Any]]] = None,
        **options: Any,
    ) -> ChatResult:
        """
        Run a code-mutation request against this workspace.

        Args:
            prompt: What to change.
            mode: "static" sends a snapshot and parses <sg-file> output; "dynamic"
                lets the model read and write through the file tools.
            snapshot: Pre-serialized snapshot XML, or snapshot options (static mode).
            **options: Chat driver options (see ChatOptions).

        Returns:
            ChatResult with files_written populated.

        Raises:
            ParseError: static output ended inside an <sg-file> element; .partial holds the files written.
            SandboxViolation: an <sg-file> path escapes the workspace or names a directory.
        """
        if mode not in MODES:
            raise PreconditionError(f"Invalid mode '{mode}'. Use dynamic | static")
        if mode == "static":
            return self._execute_static(prompt, snapshot, options)
        return self._execute_dynamic(prompt, options)

    def _execute_static(self, prompt: str, snapshot: Any, options: Dict[str, Any]) -> ChatResult:
        cb = options.get("progress_callback")
        if isinstance(snapshot, str):
            xml = snapshot
        else:
            emit(cb, ProgressEvent.SNAPSHOT_GENERATING)
            snap = self.create_snapshot(snapshot)
            emit(cb, ProgressEvent.SNAPSHOT_GENERATED, {
                "files": len(snap.files),
                "omitted": len(snap.omitted),
                "estimated_tokens": snap.estimated_tokens,
            })
            xml = snap.xml

        context = f"{SNAPSHOT_HEADER}\n\n{xml}"
        prompts = _as_list(options.pop("prompts", None))
        if prompts:
            prompts[0] = f"{context}\n\n{prompts[0]}"
        else:
            prompts = [context]
        options["prompts"] = prompts
        options["instructions"] = _instructions_with(options, get_prompt(STATIC_CONTEXT_PROMPT))

        streamed: List[str] = []
        if options.get("stream"):
            parser = SgFileStreamParser(self.path, cb)
            user_callback = options.get("stream_callback")

            def on_chunk(chunk: str) -> None:
                streamed.append(chunk)
                parser.feed(chunk)
                if user_callback is not None:
                    user_callback(chunk)

            options["stream_callback"] = on_chunk

        opts = self._options(options)
        result = self._run(prompt, opts)
        content = "".join(streamed) if opts.stream else result.content

        emit(cb, ProgressEvent.FILES_WRITING)
        try:
            files = write_sg_files(self.path, content)
        except ParseError as e:
            emit(cb, ProgressEvent.FILES_WRITTEN, {"count": len(e.partial)})
            e.result = result.model_copy(update={"files_written": list(e.partial)})
            raise
        emit(cb, ProgressEvent.FILES_WRITTEN, {"count": len(files)})
        return result.model_copy(update={"files_written": files})

    def _execute_dynamic(self, prompt: str, options: Dict[str, Any]) -> ChatResult:
        recorder = _WriteRecorder(options.get("tool_executor") or execute_file_tool)
        options["tool_executor"] = recorder
        options["tools"] = options.get("tools") or discover_tools()
        options.setdefault("tool_choice", "auto")
        options["workspace"] = str(self.path)
        tooling = READONLY_TOOLING_PROMPT if options.get("pure") else TOOLING_PROMPT
        options["instructions"] = _instructions_with(options, get_prompt(tooling))
        result = self._run(prompt, self._options(options))
        return result.model_copy(update={"files_written": recorder.written})

    def chat(
        self,
        prompt: str,
        include_workspace: Optional[Union[IncludeWorkspace, Dict[str, Any]]] = None,
        instruction: Optional[str] = None,
        **options: Any,
    ) -> ChatResult:
        """Read-only Q&A about the workspace. Conversation mode is on when conversation_persistence is given."""
        for key in ("tools", "tool_executor", "tool_choice"):
            if options.get(key) is not None:
                raise PreconditionError(f"chat() does not accept '{key}'; use execute()")
        inc = include_workspace if isinstance(include_workspace, IncludeWorkspace) else IncludeWorkspace(**(include_workspace or {}))

        instructions: List[str] = []
        if inc.ai_rules:
            rules = self.read_ai_rules()
            if rules:
                instructions.append(rules)
        instructions.extend(_as_list(options.pop("instructions", None)))
        if instruction:
            instructions.append(instruction)
        instructions.append(get_prompt(CHAT_PROMPT))
        options["instructions"] = instructions

        prompts: List[str] = []
        if inc.file_structure:
            paths = list_workspace_paths(self.path, settings=self.settings)
            prompts.append("Workspace file structure:\n\n" + "\n".join(paths))
        if inc.files:
            prompts.append(f"{SNAPSHOT_HEADER}\n\n{self.snapshot()}")
        prompts.extend(_as_list(options.pop("prompts", None)))
        options["prompts"] = prompts

        if options.get("conversation_persistence") is not None:
            options.setdefault("conversation", True)
        return self._run(prompt, self._options(options))

    def compact_history(
        self,
        conversation_id: str,
        persistence: Any = None,
        mode: str = "files-only",
        dry_run: bool = False,
    ) -> CompactionResult:
        """
        Replace assistant messages that carried <sg-file> elements with "Modified: <paths>".

        The original content length is kept as _original_length. With dry_run the
        stats are computed and nothing is written back.
        """
        if persistence is None:
            raise PreconditionError("conversationPersistence required")
        if not conversation_id:
            raise PreconditionError("conversationID required")
        if mode not in COMPACTION_MODES:
            raise PreconditionError(f"Unsupported compaction mode: {mode}")

        messages = persistence.get(conversation_id) or []
        compacted: List[Dict[str, Any]] = []
        count = 0
        for message in messages:
            content = message.get("content")
            if message.get("role") == "assistant" and isinstance(content, str):
                paths = find_sg_paths(content)
                if paths:
                    rewritten = dict(message)
                    rewritten["content"] = "Modified: " + ", ".join(paths)
                    rewritten["_original_length"] = len(content)
                    compacted.append(rewritten)
                    count += 1
                    continue
            compacted.append(message)

        original_tokens = sum(_message_tokens(m) for m in messages)
        compacted_tokens = sum(_message_tokens(m) for m in compacted)
        if original_tokens:
            reduction = f"{(original_tokens - compacted_tokens) / original_tokens * 100:.1f}%"
        else:
            reduction = "0%"

        if count and not dry_run:
            if callable(getattr(persistence, "replace", None)):
                persistence.replace(conversation_id, compacted)
            else:
                persistence.delete(conversation_id)
                for message in compacted:
                    persistence.append(conversation_id, json.dumps(message, ensure_ascii=False))
            logger.info("Compacted %d assistant messages in %s (%s)", count, conversation_id, reduction)

        return CompactionResult(
            original_tokens=original_tokens,
            compacted_tokens=compacted_tokens,
            reduction=reduction,
            messages_processed=len(messages),
            messages_compacted=count,
        )

    def deserialize_xml_output(self, content: str) -> List[WrittenFile]:
        """Write the <sg-file> elements found in content into the workspace."""
        return write_sg_files(self.path, content)

    # -----------------------------
    # Addons
    # -----------------------------

    def apply_addon(self, addon: Union[Addon, Dict[str, Any]]) -> AddonResult:
        return apply_addon(self.path, addon)

    def is_addon_applied(self, addon: Union[Addon, Dict[str, Any]]) -> bool:
        return is_addon_applied(self.path, addon)

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def populate_with_tarball(self, source: Union[str, os.PathLike, bytes], strip: int = 0) -> int:
        """Extract a (optionally gzipped) tarball into the workspace; returns the number of files written."""
        fileobj = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else open(source, "rb")
        count = 0
        with fileobj, tarfile.open(fileobj=fileobj, mode="r:*") as tar:
            for member in tar.getmembers():
                parts = pathlib.PurePosixPath(member.name).parts[strip:]
                if not parts:
                    continue
                target = resolve_inside_root("/".join(parts), self.path)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    logger.debug("Skipping non-regular tar member %s", member.name)
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                atomic_write_bytes(target, extracted.read(), chmod=member.mode & 0o777 or None)
                count += 1
        self._populated = True
        logger.info("Populated %s with %d files", self.path, count)
        return count

    def export(self) -> bytes:
        """Return the workspace (without .sigrid/) as tar.gz bytes."""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for dirpath, dirnames, filenames in os.walk(self.path):
                current = pathlib.Path(dirpath)
                dirnames[:] = sorted(d for d in dirnames if not (current == self.path and d == SIGRID_DIR))
                for name in sorted(filenames):
                    full = current / name
                    tar.add(str(full), arcname=full.relative_to(self.path).as_posix(), recursive=False)
        return buf.getvalue()

    def delete(self) -> None:
        if self._deleted or not self.path.exists():
            raise PreconditionError("Workspace already deleted or does not exist")
        shutil.rmtree(self.path)
        self._deleted = True
        logger.info("Deleted workspace %s", self.id)


def open_workspace(path: Union[str, os.PathLike]) -> Workspace:
    """Open an existing directory as a workspace, initializing .sigrid/metadata.json when absent."""
    if not isinstance(path, (str, os.PathLike)):
        raise PreconditionError("Workspace path must be a string")
    p = pathlib.Path(path).resolve()
    if not p.exists():
        raise PreconditionError(f"Workspace path does not exist: {p}")
    if not p.is_dir():
        raise PreconditionError(f"Workspace path is not a directory: {p}")
    ws = Workspace(p)
    md = ws.storage.ensure_metadata(ws.id)
    ws.id = md.get("workspaceId") or ws.id
    ws._populated = any(child.name != SIGRID_DIR for child in p.iterdir())
    return ws


def create_workspace(
    tarball: Optional[Union[str, os.PathLike, bytes]] = None,
    base_dir: Optional[Union[str, os.PathLike]] = None,
    strip: int = 0,
) -> Workspace:
    """Create a fresh workspace directory with a random id under base_dir (default: <tmp>/sigrid-workspaces)."""
    base = pathlib.Path(base_dir) if base_dir is not None else pathlib.Path(tempfile.gettempdir()) / "sigrid-workspaces"
    workspace_id = random_hex(8)
    path = base / workspace_id
    path.mkdir(parents=True, exist_ok=False)
    ws = Workspace(path, workspace_id)
    ws.storage.ensure_metadata(workspace_id)
    if tarball is not None:
        ws.populate_with_tarball(tarball, strip=strip)
    logger.info("Created workspace %s at %s", workspace_id, path)
    return ws
