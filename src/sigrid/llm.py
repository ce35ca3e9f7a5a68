# sigrid: Chat driver. Assembles messages (system instructions, priming prompts, persisted history, the
# current user turn), calls the upstream through the retry layer, runs the tool-calling loop in both
# streaming and non-streaming modes, and persists the user/assistant turn.

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from . import config
from .attachments import format_message_with_attachments, format_messages_with_attachments, validate_attachment
from .client import ChatCompletionsClient
from .errors import InputValidationError, PreconditionError, ToolExecutionError
from .fs import random_hex
from .models import ChatOptions, ChatResult, TokenUsage
from .progress import ProgressEvent, emit
from .prompts import PURE_MODE_INSTRUCTIONS
from .retry import call_with_retry
from .tokens import accumulate_token_usage, estimate_messages_tokens, estimate_tokens, extract_token_usage
from .tools import execute_file_tool, normalize_tools

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_SEPARATOR = "\n\n---\n\n"
PASS_THROUGH_PARAMS = ("max_tokens", "temperature", "top_p", "frequency_penalty", "presence_penalty", "stop")
# History fields forwarded to the upstream; bookkeeping such as _original_length stays local
HISTORY_FIELDS = ("role", "content", "name", "attachments")
# Withheld from the model in pure mode
WRITE_TOOLS = ("write_file", "write_multiple_files")


def generate_conversation_id() -> str:
    return f"conv_{random_hex(16)}"


def _as_list(value: Optional[Union[str, List[str]]]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def consolidate_system_messages(instructions: List[str], consolidate: Union[bool, str] = False) -> List[Dict[str, Any]]:
    """
    Turn instructions into system messages.

    consolidate=False emits one system message per instruction. True joins them
    with a horizontal-rule separator; a string (including "") is used as the separator.
    """
    items = [i for i in instructions if i]
    if consolidate is False or not items:
        return [{"role": "system", "content": i} for i in items]
    separator = DEFAULT_SYSTEM_SEPARATOR if consolidate is True else consolidate
    return [{"role": "system", "content": separator.join(items)}]


def resolve_options(options: Optional[ChatOptions] = None, **overrides: Any) -> ChatOptions:
    """Merge keyword overrides into options; unknown keys raise PreconditionError."""
    values: Dict[str, Any] = {}
    if options is not None:
        values.update({name: getattr(options, name) for name in options.model_fields_set})
    values.update(overrides)
    try:
        return ChatOptions(**values)
    except ValidationError as e:
        raise PreconditionError(f"Invalid chat options: {e}") from e


def _history_message(message: Dict[str, Any]) -> Dict[str, Any]:
    return {k: message[k] for k in HISTORY_FIELDS if k in message}


def _first_message(response: Dict[str, Any]) -> Dict[str, Any]:
    choice = (response.get("choices") or [{}])[0] or {}
    return choice.get("message") or {}


def _parse_arguments(name: str, raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        args = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InputValidationError(f"Invalid JSON arguments for {name}: {e}") from e
    if not isinstance(args, dict):
        raise InputValidationError(f"Arguments for {name} must be a JSON object")
    return args


def accumulate_tool_call_delta(acc: Dict[int, Dict[str, Any]], delta: Dict[str, Any]) -> None:
    """Merge one streamed tool-call fragment into acc, keyed by the fragment's index."""
    index = delta.get("index", len(acc))
    fn = delta.get("function") or {}
    entry = acc.get(index)
    if entry is None:
        acc[index] = {
            "id": delta.get("id"),
            "type": delta.get("type") or "function",
            "function": {"name": fn.get("name") or "", "arguments": fn.get("arguments") or ""},
        }
        return
    if delta.get("id") and not entry["id"]:
        entry["id"] = delta["id"]
    name = fn.get("name")
    if name and name != entry["function"]["name"]:
        entry["function"]["name"] += name
    if fn.get("arguments"):
        entry["function"]["arguments"] += fn["arguments"]


class ChatDriver:
    """One driver invocation. Holds the live message list; tool frames never leave it."""

    def __init__(self, prompt: str, opts: ChatOptions) -> None:
        if opts.conversation and opts.conversation_persistence is None:
            raise PreconditionError("conversationPersistence required when conversation mode is enabled")
        self.prompt = prompt
        self.opts = opts
        self.persistence = opts.conversation_persistence if opts.conversation else None
        self.conversation_id = opts.conversation_id
        if self.persistence is not None and not self.conversation_id:
            self.conversation_id = generate_conversation_id()
        self.client = opts.client if opts.client is not None else self._default_client()
        self.model = opts.model or getattr(self.client, "model", None) or config.AI_MODEL
        self.executor: Callable[..., Any] = opts.tool_executor or execute_file_tool
        self.tools, self.blocked_tools = self._select_tools()
        self.retry = opts.retry_config()
        self.user_message = self._build_user_message()
        self.messages: List[Dict[str, Any]] = []

    @staticmethod
    def _default_client() -> Any:
        return ChatCompletionsClient()

    def _select_tools(self) -> Tuple[Optional[List[Dict[str, Any]]], Set[str]]:
        blocked = set(self.opts.disable_tools or [])
        if self.opts.pure:
            blocked.update(WRITE_TOOLS)
        tools = [t for t in normalize_tools(self.opts.tools) or [] if t["function"]["name"] not in blocked]
        return tools or None, blocked

    def _build_user_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "user", "content": self.prompt}
        if self.opts.attachments:
            message["attachments"] = [validate_attachment(a) for a in self.opts.attachments]
        return message

    def build_messages(self) -> List[Dict[str, Any]]:
        instructions = _as_list(self.opts.instructions) + _as_list(self.opts.instruction)
        if self.opts.pure:
            instructions.extend(PURE_MODE_INSTRUCTIONS)
        messages = consolidate_system_messages(instructions, self.opts.consolidate_system_messages)
        messages.extend({"role": "user", "content": p} for p in _as_list(self.opts.prompts))
        if self.persistence is not None:
            history = self.persistence.get(self.conversation_id) or []
            messages.extend(format_messages_with_attachments([_history_message(m) for m in history]))
        messages.append(format_message_with_attachments(self.user_message))
        return messages

    def build_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": list(self.messages)}
        if self.tools:
            payload["tools"] = self.tools
            if self.opts.tool_choice is not None:
                payload["tool_choice"] = self.opts.tool_choice
        if self.opts.response_format is not None:
            payload["response_format"] = self.opts.response_format
        if self.opts.reasoning_effort:
            payload["reasoning"] = {"effort": self.opts.reasoning_effort}
        for key in PASS_THROUGH_PARAMS:
            value = getattr(self.opts, key)
            if value is not None:
                payload[key] = value
        return payload

    # -----------------------------
    # Tool dispatch
    # -----------------------------

    def call_tool(self, name: str, args: Dict[str, Any]) -> Any:
        """Run one tool through the executor; any failure surfaces as ToolExecutionError."""
        if name in self.blocked_tools:
            raise ToolExecutionError(name, f"Tool {name} is not available")
        try:
            return self.executor(name, args, self.opts.progress_callback, self.opts.workspace)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(name, str(e)) from e

    def run_tool_calls(self, tool_calls: List[Dict[str, Any]]) -> None:
        """Execute tool calls sequentially in model order; failures become {ok: false, error} tool messages."""
        for tc in tool_calls:
            fn = tc.get("function") or {}
            name = fn.get("name") or ""
            try:
                output = self.call_tool(name, _parse_arguments(name, fn.get("arguments")))
            except (ToolExecutionError, InputValidationError) as e:
                logger.warning("Tool %s failed: %s", name, e)
                output = {"ok": False, "error": str(e)}
            self.messages.append({
                "role": "tool",
                "tool_call_id": tc.get("id"),
                "content": json.dumps(output, ensure_ascii=False, default=str),
            })

    def _tool_round(self, iteration: int, assistant: Dict[str, Any]) -> None:
        tool_calls = assistant["tool_calls"]
        emit(self.opts.progress_callback, ProgressEvent.TOOL_CALL_START, {"iteration": iteration, "tool_count": len(tool_calls)})
        self.messages.append({"role": "assistant", "content": assistant.get("content"), "tool_calls": tool_calls})
        self.run_tool_calls(tool_calls)
        emit(self.opts.progress_callback, ProgressEvent.TOOL_CALL_END, {"iteration": iteration})

    def _complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = call_with_retry(lambda: self.client.create_chat_completion(payload), self.retry)
        usage = extract_token_usage(response)
        if usage is not None:
            logger.info("usage prompt=%d completion=%d total=%d", usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)
        return response

    # -----------------------------
    # Loops
    # -----------------------------

    def run_non_streaming(self) -> Tuple[str, List[Optional[TokenUsage]]]:
        payload = self.build_payload()
        response = self._complete(payload)
        usages = [extract_token_usage(response)]
        assistant = _first_message(response)
        iteration = 0
        while assistant.get("tool_calls") and iteration < config.MAX_TOOL_ITERATIONS:
            iteration += 1
            self._tool_round(iteration, assistant)
            payload = dict(payload, messages=list(self.messages))
            payload.pop("tool_choice", None)
            response = self._complete(payload)
            usages.append(extract_token_usage(response))
            assistant = _first_message(response)
        if assistant.get("tool_calls"):
            logger.warning("Tool loop stopped after %d iterations", iteration)
        content = assistant.get("content") or ""
        if self.opts.stream_callback is not None and content:
            self.opts.stream_callback(content)
        return content, usages

    def run_streaming(self) -> Tuple[str, List[Optional[TokenUsage]]]:
        payload = self.build_payload()
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        chunks: Iterable[Dict[str, Any]] = call_with_retry(lambda: self.client.stream_chat_completion(payload), self.retry)

        parts: List[str] = []
        tool_acc: Dict[int, Dict[str, Any]] = {}
        stream_usage: Optional[TokenUsage] = None
        for chunk in chunks:
            usage = extract_token_usage(chunk)
            if usage is not None:
                stream_usage = usage
            choice = (chunk.get("choices") or [{}])[0] or {}
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                parts.append(text)
                if self.opts.stream_callback is not None:
                    self.opts.stream_callback(text)
            for fragment in delta.get("tool_calls") or []:
                accumulate_tool_call_delta(tool_acc, fragment)

        full_content = "".join(parts)
        usages = [stream_usage]
        if tool_acc:
            assistant = {"content": full_content or None, "tool_calls": [tool_acc[i] for i in sorted(tool_acc)]}
            self._tool_round(1, assistant)
            follow_up = {k: v for k, v in payload.items() if k not in ("stream", "stream_options", "tools", "tool_choice")}
            follow_up["messages"] = list(self.messages)
            response = self._complete(follow_up)
            usages.append(extract_token_usage(response))
            full_content = _first_message(response).get("content") or ""
            if full_content and self.opts.stream_callback is not None:
                self.opts.stream_callback(full_content)
        return full_content, usages

    def persist(self, content: str) -> None:
        if self.persistence is None:
            return
        self.persistence.append(self.conversation_id, json.dumps(self.user_message, ensure_ascii=False))
        if self.opts.save_assistant_message:
            self.persistence.append(self.conversation_id, json.dumps({"role": "assistant", "content": content}, ensure_ascii=False))

    def run(self) -> ChatResult:
        self.messages = self.build_messages()
        if self.opts.stream:
            content, usages = self.run_streaming()
        else:
            content, usages = self.run_non_streaming()
        token_count = accumulate_token_usage(usages)
        if token_count is None:
            prompt_tokens = estimate_messages_tokens(self.messages)
            completion_tokens = estimate_tokens(content)
            token_count = TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                estimated=True,
            )
        self.persist(content)
        return ChatResult(
            content="" if self.opts.stream else content,
            conversation_id=self.conversation_id,
            token_count=token_count,
        )


def execute(prompt: str, options: Optional[ChatOptions] = None, **kwargs: Any) -> ChatResult:
    """
    Run one chat-completions exchange and return {content, conversation_id, token_count}.

    Args:
        prompt: The current user message.
        options: A ChatOptions instance; keyword arguments override its fields.
        **kwargs: Any ChatOptions field (model, client, instructions, stream, tools, ...).

    Returns:
        ChatResult. content is "" for streaming calls; the text was delivered to stream_callback.

    Raises:
        PreconditionError: conversation mode without persistence, or unknown/invalid options.
        UpstreamError: non-2xx or transport failures (after 429 retries are exhausted).
    """
    opts = resolve_options(options, **kwargs)
    return ChatDriver(prompt, opts).run()

