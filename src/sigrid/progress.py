# sigrid: Progress bus. One enumeration of stage events plus the tool-local actions, delivered through a
# single callback shape: callback(event, data).

import logging
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Any, Any], None]


class ProgressEvent(str, Enum):
    SNAPSHOT_GENERATING = "SNAPSHOT_GENERATING"
    SNAPSHOT_GENERATED = "SNAPSHOT_GENERATED"
    RESPONSE_WAITING = "RESPONSE_WAITING"
    RESPONSE_RECEIVED = "RESPONSE_RECEIVED"
    RESPONSE_STREAMING = "RESPONSE_STREAMING"
    RESPONSE_STREAMED = "RESPONSE_STREAMED"
    FILES_WRITING = "FILES_WRITING"
    FILES_WRITTEN = "FILES_WRITTEN"
    FILE_STREAMING_START = "FILE_STREAMING_START"
    FILE_STREAMING_CONTENT = "FILE_STREAMING_CONTENT"
    FILE_STREAMING_END = "FILE_STREAMING_END"
    TOOL_CALL_START = "TOOL_CALL_START"
    TOOL_CALL_END = "TOOL_CALL_END"


class ToolAction(str, Enum):
    """Tool-local progress actions; the data payload is a human-readable message."""
    start = "start"
    succeed = "succeed"
    fail = "fail"
    stop = "stop"


def emit(callback: Optional[ProgressCallback], event: Any, data: Any = None) -> None:
    """Deliver one event to callback when one is configured."""
    if callback is None:
        return
    logger.debug("progress %s", getattr(event, "value", event))
    callback(event, data)
