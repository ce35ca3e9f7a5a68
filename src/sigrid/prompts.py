# sigrid: Load prompt templates from sigrid.resources via importlib.resources.

from importlib import resources

STATIC_CONTEXT_PROMPT = "static_context.md"
TOOLING_PROMPT = "tooling.md"
CHAT_PROMPT = "chat.md"
READONLY_TOOLING_PROMPT = "tooling_readonly.md"

# Pure mode: one system message per line, after the caller's instructions
PURE_MODE_INSTRUCTIONS = [
    "Respond with only the requested content, no explanations or commentary.",
    "Generate content appropriate for the current operating system.",
    "Do not add any preamble or postamble.",
    "Do not include markdown code fences (```) or formatting.",
    "Output should be raw content, ready to use directly.",
]

# Header placed in front of the serialized workspace in the first priming message
SNAPSHOT_HEADER = "Here is the full codebase for context:"


def get_prompt(name: str, **kwargs) -> str:
    """
    Load a text prompt from the sigrid.resources package.

    If kwargs are provided, apply str.format(**kwargs) to the content so prompts can
    contain placeholders. Without kwargs the raw text is returned, so prompts that
    show code examples with braces are safe.
    """
    data = resources.files("sigrid.resources").joinpath(name).read_text(encoding="utf-8")
    if kwargs:
        return data.format(**kwargs)
    return data
