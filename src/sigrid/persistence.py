# sigrid: Conversation persistence. Providers store ordered message lists per conversation id; append()
# takes an already-serialized JSON message so providers never reinterpret the driver's records.

import copy
import json
import logging
import os
import pathlib
import re
import threading
from typing import Any, Dict, List, Optional

from .errors import PreconditionError
from .fs import atomic_write_text

logger = logging.getLogger(__name__)

_UNSAFE_ID = re.compile(r"[^a-zA-Z0-9_-]")


class ConversationPersistence:
    """Provider contract: get/append/delete are required; list/clear/size/replace are optional."""

    def get(self, conversation_id: str) -> Optional[List[Dict[str, Any]]]:
        raise NotImplementedError

    def append(self, conversation_id: str, serialized_message: str) -> None:
        raise NotImplementedError

    def delete(self, conversation_id: str) -> None:
        raise NotImplementedError


class InMemoryPersistence(ConversationPersistence):
    def __init__(self) -> None:
        self._conversations: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            messages = self._conversations.get(conversation_id)
            return copy.deepcopy(messages) if messages is not None else None

    def append(self, conversation_id: str, serialized_message: str) -> None:
        message = json.loads(serialized_message)
        with self._lock:
            self._conversations.setdefault(conversation_id, []).append(message)

    def replace(self, conversation_id: str, messages: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._conversations[conversation_id] = copy.deepcopy(messages)

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            self._conversations.pop(conversation_id, None)

    def list(self) -> List[str]:
        with self._lock:
            return list(self._conversations)

    def clear(self) -> None:
        with self._lock:
            self._conversations.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._conversations)


class FileSystemPersistence(ConversationPersistence):
    """One JSON-Lines file per conversation: <directory>/<sanitized-id>.jsonl."""

    def __init__(self, directory: os.PathLike) -> None:
        self.directory = pathlib.Path(directory)

    def _path(self, conversation_id: str) -> pathlib.Path:
        return self.directory / f"{_UNSAFE_ID.sub('_', conversation_id)}.jsonl"

    def get(self, conversation_id: str) -> Optional[List[Dict[str, Any]]]:
        try:
            with self._path(conversation_id).open("r", encoding="utf-8") as f:
                return [json.loads(line) for line in f if line.strip()]
        except FileNotFoundError:
            return None

    def append(self, conversation_id: str, serialized_message: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with self._path(conversation_id).open("a", encoding="utf-8") as f:
            f.write(serialized_message + "\n")

    def replace(self, conversation_id: str, messages: List[Dict[str, Any]]) -> None:
        """Rewrite the whole conversation file atomically."""
        self.directory.mkdir(parents=True, exist_ok=True)
        body = "".join(json.dumps(m, ensure_ascii=False) + "\n" for m in messages)
        atomic_write_text(self._path(conversation_id), body)

    def delete(self, conversation_id: str) -> None:
        try:
            self._path(conversation_id).unlink()
        except FileNotFoundError:
            pass

    def list(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.jsonl"))

    def clear(self) -> None:
        for conversation_id in self.list():
            self.delete(conversation_id)

    def size(self) -> int:
        return len(self.list())


# -----------------------------
# Process-wide default provider
# -----------------------------

_default_lock = threading.Lock()
_default_persistence: Optional[ConversationPersistence] = None


def get_default_persistence() -> ConversationPersistence:
    """Return the process-wide default provider, creating an in-memory one on first use."""
    global _default_persistence
    with _default_lock:
        if _default_persistence is None:
            _default_persistence = InMemoryPersistence()
        return _default_persistence


def set_default_persistence(provider: Any) -> None:
    for method in ("get", "append", "delete"):
        if not callable(getattr(provider, method, None)):
            raise PreconditionError(f"Persistence provider must implement {method}()")
    global _default_persistence
    with _default_lock:
        _default_persistence = provider
    logger.debug("Default persistence set to %s", type(provider).__name__)
