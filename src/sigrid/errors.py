# sigrid: Error taxonomy shared by the sandbox, tools, driver and orchestrator.

from typing import Any, Dict, List, Optional


class SigridError(Exception):
    """Base class for every error raised by sigrid."""


class PreconditionError(SigridError):
    """Invalid option combination or missing collaborator (e.g. conversation mode without persistence)."""


class SandboxViolation(SigridError):
    """A resolved path falls outside the workspace root."""

    def __init__(self, message: str = "Access outside sandbox is not allowed.", path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ToolExecutionError(SigridError):
    """A tool raised while handling a model-requested call."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class InputValidationError(SigridError):
    """Attachment missing required fields, or tool arguments that are not valid JSON."""


class UpstreamError(SigridError):
    """Non-2xx response or transport failure talking to the chat-completions endpoint."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}


class UpstreamRateLimit(UpstreamError):
    """HTTP 429 from upstream; the only error the retry layer retries."""

    def __init__(self, message: str, body: str = "", headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message, status=429, body=body, headers=headers)


class ParseError(SigridError):
    """sg-file or snapshot parsing failure. Carries whatever was collected before the failure."""

    def __init__(self, message: str, partial: Optional[List[Any]] = None) -> None:
        super().__init__(message)
        self.partial = list(partial or [])
        self.result: Any = None
