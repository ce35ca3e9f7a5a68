"""Shared fakes and fixtures for sigrid tests."""

import copy
import json
from typing import Any, Dict, List, Optional

import pytest

from sigrid import config
from sigrid.workspace import open_workspace


class FakeClient:
    """
    Stands in for ChatCompletionsClient.

    Scripted non-streaming responses are consumed in order; the last one repeats
    forever. Items that are exceptions are raised instead of returned.
    """

    def __init__(self, responses: Optional[List[Any]] = None, streams: Optional[List[Any]] = None, model: str = "fake-model") -> None:
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.model = model
        self.payloads: List[Dict[str, Any]] = []
        self.stream_payloads: List[Dict[str, Any]] = []

    def _next(self, queue: List[Any]) -> Any:
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return copy.deepcopy(item)

    def create_chat_completion(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.payloads.append(copy.deepcopy(payload))
        return self._next(self.responses)

    def stream_chat_completion(self, payload: Dict[str, Any]):
        self.stream_payloads.append(copy.deepcopy(payload))
        return iter(self._next(self.streams))


def completion(content: Optional[str] = "", tool_calls: Optional[List[Dict[str, Any]]] = None, usage: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    response: Dict[str, Any] = {"choices": [{"index": 0, "message": message}]}
    if usage is not None:
        response["usage"] = usage
    return response


def tool_call(call_id: str, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


def text_chunks(*parts: str, usage: Optional[Dict[str, int]] = None) -> List[Dict[str, Any]]:
    chunks: List[Dict[str, Any]] = [{"choices": [{"index": 0, "delta": {"content": p}}]} for p in parts]
    if usage is not None:
        chunks.append({"choices": [], "usage": usage})
    return chunks


class EventRecorder:
    """progress_callback that keeps (event, data) pairs."""

    def __init__(self) -> None:
        self.events: List[Any] = []

    def __call__(self, event: Any, data: Any = None) -> None:
        self.events.append((event, data))

    def names(self) -> List[Any]:
        return [e for e, _ in self.events]

    def of(self, event: Any) -> List[Any]:
        return [d for e, d in self.events if e == event]


@pytest.fixture(autouse=True)
def _tool_iteration_cap(monkeypatch):
    monkeypatch.setattr(config, "MAX_TOOL_ITERATIONS", 10)


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def ws_root(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def workspace(ws_root):
    return open_workspace(ws_root)
