# sigrid: Token accounting helpers. Server-reported usage when present, else a 4-chars-per-token estimate.

import math
from typing import Any, Dict, Iterable, List, Optional

from .models import TokenUsage


def estimate_tokens(text: Optional[str]) -> int:
    """Cheap estimate: ceil(len(text) / 4); 0 for empty input."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_messages_tokens(messages: List[Dict[str, Any]]) -> int:
    """Estimate over the text parts of a message list."""
    total = 0
    for m in messages:
        content = m.get("content")
        if isinstance(content, str):
            total += estimate_tokens(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    total += estimate_tokens(block.get("text") or "")
    return total


def extract_token_usage(response: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    """
    Read usage from an upstream response or terminal stream chunk.

    Accepts OpenAI names (prompt_tokens/completion_tokens/total_tokens) and falls
    back to Claude names (input_tokens/output_tokens). Returns None when usage is missing.
    """
    usage = (response or {}).get("usage")
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("prompt_tokens") or usage.get("input_tokens") or 0
    completion = usage.get("completion_tokens") or usage.get("output_tokens") or 0
    total = usage.get("total_tokens") or prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def accumulate_token_usage(usages: Iterable[Optional[TokenUsage]]) -> Optional[TokenUsage]:
    """Pointwise sum; None entries are skipped. Returns None when nothing was counted."""
    present = [u for u in usages if u is not None]
    if not present:
        return None
    return TokenUsage(
        prompt_tokens=sum(u.prompt_tokens for u in present),
        completion_tokens=sum(u.completion_tokens for u in present),
        total_tokens=sum(u.total_tokens for u in present),
        estimated=any(u.estimated for u in present),
    )
