# sigrid: Centralized Pydantic v2 models for driver options, results, snapshot records, attachments and
# addons. Config(extra='forbid') keeps option objects strict so typos surface as errors.

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .fs import normalize_path


class CustomBaseModel(BaseModel):
    """Pydantic base model configured to forbid unknown fields for strict validation."""
    model_config = ConfigDict(extra="forbid")


# -----------------------------
# Usage and results
# -----------------------------

class TokenUsage(CustomBaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = Field(default=False, description="True when counted with the 4-chars-per-token heuristic")


class WrittenFile(CustomBaseModel):
    path: str = Field(..., description="Workspace-relative POSIX path")
    size: int = Field(..., description="Length of the written body")

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, v: str) -> str:
        return normalize_path(v)


class ChatResult(CustomBaseModel):
    content: str = ""
    conversation_id: Optional[str] = None
    token_count: Optional[TokenUsage] = None
    files_written: Optional[List[WrittenFile]] = None


class CompactionResult(CustomBaseModel):
    original_tokens: int
    compacted_tokens: int
    reduction: str
    messages_processed: int
    messages_compacted: int


class WorkspaceMetadata(BaseModel):
    """Contents of .sigrid/metadata.json."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    workspace_id: str = Field(..., alias="workspaceId")
    created_at: str = Field(..., alias="createdAt")
    sigrid_version: str = Field(..., alias="sigridVersion")


# -----------------------------
# Snapshot
# -----------------------------

class OmitReason(str, Enum):
    gitignore = "gitignore"
    size = "size"
    read_error = "read_error"


class SnapshotFile(CustomBaseModel):
    path: str
    content: str
    size: int


class OmittedFile(CustomBaseModel):
    path: str
    reason: OmitReason
    size: Optional[int] = None
    error: Optional[str] = None


class SnapshotOptions(CustomBaseModel):
    extensions: Optional[List[str]] = Field(default=None, description="Allowed extensions; empty list disables the filter")
    max_file_size: Optional[int] = Field(default=None, description="Per-file byte cap")
    exclude: Optional[List[str]] = Field(default=None, description="Exclude globs; bare names expand to **/NAME/**")
    include: Optional[List[str]] = Field(default=None, description="Include globs")
    respect_gitignore: bool = True
    include_placeholders: bool = True


class Snapshot(CustomBaseModel):
    files: List[SnapshotFile] = Field(default_factory=list)
    omitted: List[OmittedFile] = Field(default_factory=list)
    xml: str = ""
    estimated_tokens: int = 0


# -----------------------------
# Attachments
# -----------------------------

class Attachment(BaseModel):
    """User-turn attachment. Stored on persisted user messages as-is."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = None
    filename: str = Field(..., min_length=1)
    mime_type: str = Field(..., min_length=1, alias="mimeType")
    data: str = Field(..., min_length=1, description="Base64 payload")
    size: Optional[int] = None


# -----------------------------
# Driver options
# -----------------------------

class RetryConfig(CustomBaseModel):
    enabled: bool = True
    max_retries: int = 2
    base_delay: float = 5.0
    max_delay: float = 60.0
    on_retry: Optional[Callable[[Dict[str, Any]], Any]] = None


class ChatOptions(CustomBaseModel):
    """Every option the chat driver recognizes."""
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    model: Optional[str] = None
    client: Optional[Any] = None
    instructions: Optional[Union[str, List[str]]] = None
    instruction: Optional[str] = None
    consolidate_system_messages: Union[bool, str] = False
    prompts: Optional[Union[str, List[str]]] = None
    conversation: bool = False
    conversation_id: Optional[str] = None
    conversation_persistence: Optional[Any] = None
    save_assistant_message: bool = True
    stream: bool = False
    stream_callback: Optional[Callable[[str], Any]] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    tool_executor: Optional[Callable[..., Any]] = None
    disable_tools: Optional[List[str]] = None
    pure: bool = False
    workspace: Optional[str] = None
    progress_callback: Optional[Callable[[Any, Any], Any]] = None
    response_format: Optional[Dict[str, Any]] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    retry: bool = True
    max_retries: int = 2
    retry_base_delay: float = 5.0
    retry_max_delay: float = 60.0
    on_retry: Optional[Callable[[Dict[str, Any]], Any]] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    reasoning_effort: Optional[str] = None

    @field_validator("workspace", mode="before")
    @classmethod
    def _workspace_to_str(cls, v: Any) -> Any:
        return str(v) if v is not None else None

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            enabled=self.retry,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            on_retry=self.on_retry,
        )


class IncludeWorkspace(CustomBaseModel):
    ai_rules: bool = True
    file_structure: bool = True
    files: bool = False


# -----------------------------
# Addons
# -----------------------------

class Addon(BaseModel):
    """Externally supplied bundle of files, dependency declarations and AI-rules text."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(..., min_length=1)
    version: str = "1.0.0"
    description: Optional[str] = None
    files: Dict[str, str]
    dependencies: Dict[str, str] = Field(default_factory=dict)
    ai_rules_addition: Optional[str] = Field(default=None, alias="aiRulesAddition")
    api: Optional[Dict[str, Dict[str, Any]]] = Field(default=None, description="import path -> {exports, methods}")
    docs: Optional[str] = None
    technology: Optional[str] = None
    use_cases: Optional[str] = Field(default=None, alias="useCases")
    internal: List[str] = Field(default_factory=list, description="Paths omitted from snapshots")

    @field_validator("internal")
    @classmethod
    def _normalize_paths(cls, v: List[str]) -> List[str]:
        return [normalize_path(p) for p in v]


class AddonResult(CustomBaseModel):
    addon: str
    version: str
    files_added: List[str] = Field(default_factory=list)
    dependencies_added: Optional[List[str]] = None
    ai_rules_updated: bool = False
    already_applied: bool = False
