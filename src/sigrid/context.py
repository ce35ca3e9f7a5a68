# sigrid: Explicit workspace context threaded through every tool call, and per-workspace Storage for the
# .sigrid/ metadata directory (workspace metadata and the applied-addons registry).

import logging
import pathlib
import threading
from typing import Any, Dict, Optional

from .config import SIGRID_DIR, SIGRID_VERSION
from .fs import now_iso, read_json, write_json
from .progress import ProgressCallback, ToolAction, emit

logger = logging.getLogger("sigrid")


class Context:
    def __init__(
        self,
        repo_root: pathlib.Path,
        settings: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.repo_root = pathlib.Path(repo_root).resolve()
        self.settings = settings or {}
        self.progress_callback = progress_callback

    def log(self, message: str) -> None:
        logger.info(message)

    def error_message(self, message: str) -> None:
        logger.error(message)

    def progress(self, action: ToolAction, message: str) -> None:
        emit(self.progress_callback, action, message)


# -----------------------------
# Default root for callers that do not pass a workspace
# -----------------------------

_default_root_lock = threading.Lock()
_default_root: Optional[pathlib.Path] = None


def set_default_root(path: Optional[pathlib.Path]) -> None:
    """Set the process-wide fallback root used by execute_file_tool when no workspace is passed."""
    global _default_root
    with _default_root_lock:
        _default_root = pathlib.Path(path).resolve() if path is not None else None


def get_default_root() -> pathlib.Path:
    with _default_root_lock:
        return _default_root if _default_root is not None else pathlib.Path.cwd().resolve()


class Storage:
    def __init__(self, repo_root: pathlib.Path) -> None:
        self.repo_root = pathlib.Path(repo_root)
        self.sigrid_dir = self.repo_root / SIGRID_DIR
        self.metadata_file = self.sigrid_dir / "metadata.json"
        self.addons_file = self.sigrid_dir / "addons.json"

    def default_metadata(self, workspace_id: str) -> Dict[str, Any]:
        return {
            "workspaceId": workspace_id,
            "createdAt": now_iso(),
            "sigridVersion": SIGRID_VERSION,
        }

    def load_metadata(self) -> Optional[Dict[str, Any]]:
        md = read_json(self.metadata_file, None)
        return md if isinstance(md, dict) else None

    def ensure_metadata(self, workspace_id: str) -> Dict[str, Any]:
        md = self.load_metadata()
        if md is None:
            md = self.default_metadata(workspace_id)
            self.save_metadata(md)
        return md

    def save_metadata(self, md: Dict[str, Any]) -> None:
        write_json(self.metadata_file, md)

    def load_addons(self) -> Dict[str, Any]:
        """Return the applied-addons registry, always with an 'applied' mapping."""
        reg = read_json(self.addons_file, {})
        if not isinstance(reg, dict):
            reg = {}
        if not isinstance(reg.get("applied"), dict):
            reg["applied"] = {}
        return reg

    def save_addons(self, registry: Dict[str, Any]) -> None:
        write_json(self.addons_file, registry)
