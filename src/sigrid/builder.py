# sigrid: Fluent front end over the chat driver and the workspace orchestrator.
#
#   sigrid().model("gpt-5-mini").instruction("Be terse").prompt("Context...").stream(print).execute("Hello")
#   sigrid().workspace(path).static().execute("Add a README")

import logging
import os
from typing import Any, Callable, Dict, List, Optional, Union

from . import llm
from .models import ChatResult
from .workspace import Workspace, open_workspace

logger = logging.getLogger(__name__)


class SigridBuilder:
    """Accumulates chat options; execute() runs them against the driver or, when bound, a workspace."""

    def __init__(self) -> None:
        self._options: Dict[str, Any] = {}
        self._instructions: List[str] = []
        self._prompts: List[str] = []
        self._workspace: Optional[Workspace] = None
        self._mode = "dynamic"
        self._snapshot: Any = None

    def model(self, name: str) -> "SigridBuilder":
        self._options["model"] = name
        return self

    def client(self, client: Any) -> "SigridBuilder":
        self._options["client"] = client
        return self

    def instruction(self, text: str) -> "SigridBuilder":
        self._instructions.append(text)
        return self

    def instructions(self, texts: List[str]) -> "SigridBuilder":
        self._instructions.extend(texts)
        return self

    def consolidate(self, separator: Union[bool, str] = True) -> "SigridBuilder":
        self._options["consolidate_system_messages"] = separator
        return self

    def prompt(self, text: str) -> "SigridBuilder":
        self._prompts.append(text)
        return self

    def conversation(self, persistence: Any, conversation_id: Optional[str] = None) -> "SigridBuilder":
        self._options.update(conversation=True, conversation_persistence=persistence)
        if conversation_id:
            self._options["conversation_id"] = conversation_id
        return self

    def stream(self, callback: Optional[Callable[[str], Any]] = None) -> "SigridBuilder":
        self._options["stream"] = True
        if callback is not None:
            self._options["stream_callback"] = callback
        return self

    def tools(self, tools: List[Dict[str, Any]], tool_choice: Optional[Any] = None, executor: Optional[Callable[..., Any]] = None) -> "SigridBuilder":
        self._options["tools"] = tools
        if tool_choice is not None:
            self._options["tool_choice"] = tool_choice
        if executor is not None:
            self._options["tool_executor"] = executor
        return self

    def pure(self) -> "SigridBuilder":
        """Raw output only; write tools are withheld from the model."""
        self._options["pure"] = True
        return self

    def reasoning(self, effort: str) -> "SigridBuilder":
        self._options["reasoning_effort"] = effort
        return self

    def progress(self, callback: Callable[[Any, Any], Any]) -> "SigridBuilder":
        self._options["progress_callback"] = callback
        return self

    def attach(self, attachment: Dict[str, Any]) -> "SigridBuilder":
        self._options.setdefault("attachments", []).append(attachment)
        return self

    def response_format(self, fmt: Dict[str, Any]) -> "SigridBuilder":
        self._options["response_format"] = fmt
        return self

    def option(self, **kwargs: Any) -> "SigridBuilder":
        """Set any other ChatOptions field (temperature, max_retries, ...)."""
        self._options.update(kwargs)
        return self

    def workspace(self, ws: Union[Workspace, str, os.PathLike]) -> "SigridBuilder":
        self._workspace = ws if isinstance(ws, Workspace) else open_workspace(ws)
        return self

    def static(self, snapshot: Any = None) -> "SigridBuilder":
        self._mode = "static"
        self._snapshot = snapshot
        return self

    def dynamic(self) -> "SigridBuilder":
        self._mode = "dynamic"
        return self

    def build_options(self) -> Dict[str, Any]:
        options = dict(self._options)
        if self._instructions:
            options["instructions"] = list(self._instructions)
        if self._prompts:
            options["prompts"] = list(self._prompts)
        return options

    def execute(self, prompt: str) -> ChatResult:
        options = self.build_options()
        if self._workspace is None:
            return llm.execute(prompt, **options)
        logger.debug("builder execute in %s (mode=%s)", self._workspace.path, self._mode)
        return self._workspace.execute(prompt, mode=self._mode, snapshot=self._snapshot, **options)


def sigrid() -> SigridBuilder:
    return SigridBuilder()
