# sigrid: Attachment formatting. User messages carrying attachments are expanded into content blocks
# only when formatted for an API call; persisted messages keep the raw attachments.

import base64
import binascii
import logging
import os
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import InputValidationError
from .fs import random_hex
from .models import Attachment

logger = logging.getLogger(__name__)

MIME_CATEGORIES = {
    "image/png": "image",
    "image/jpeg": "image",
    "image/jpg": "image",
    "image/gif": "image",
    "image/webp": "image",
    "image/svg+xml": "svg",
    "text/plain": "text",
    "text/csv": "text",
    "text/markdown": "text",
    "text/html": "text",
    "application/json": "text",
    "application/pdf": "document",
}

VISION_CATEGORIES = ("image", "svg")


def get_mime_category(mime_type: str) -> str:
    """Return image | svg | text | document | unknown."""
    mime = (mime_type or "").lower()
    if mime in MIME_CATEGORIES:
        return MIME_CATEGORIES[mime]
    if mime.startswith("text/"):
        return "text"
    return "unknown"


def generate_attachment_id() -> str:
    return f"att_{int(time.time() * 1000)}_{random_hex(5)[:9]}"


def validate_attachment(attachment: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy with an id assigned; raise InputValidationError when filename, mimeType or data is missing."""
    if not isinstance(attachment, dict):
        raise InputValidationError("Attachment must be an object")
    try:
        parsed = Attachment.model_validate(attachment)
    except ValidationError as e:
        missing = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise InputValidationError(f"Attachment is missing required fields: {', '.join(missing)}") from e
    out = dict(attachment)
    out["id"] = parsed.id or generate_attachment_id()
    return out


def attachment_to_content_block(attachment: Dict[str, Any]) -> Dict[str, Any]:
    att = Attachment.model_validate(attachment)
    category = get_mime_category(att.mime_type)
    if category in VISION_CATEGORIES:
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{att.mime_type};base64,{att.data}", "detail": "auto"},
        }
    if category == "text":
        ext = os.path.splitext(att.filename)[1].lstrip(".")
        try:
            text = base64.b64decode(att.data, validate=True).decode("utf-8")
        except (binascii.Error, ValueError):
            logger.warning("Could not decode attachment %s", att.filename)
            return {"type": "text", "text": f"[File: {att.filename} - could not decode]"}
        return {"type": "text", "text": f"File: {att.filename}\n```{ext}\n{text}\n```"}
    if category == "document":
        return {"type": "text", "text": f"[Document: {att.filename} - PDF text extraction not yet implemented]"}
    return {"type": "text", "text": f"[Attachment: {att.filename} - unsupported type: {att.mime_type}]"}


def _merge_text_blocks(blocks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: List[Dict[str, Any]] = []
    for block in blocks:
        if block.get("type") == "text" and merged and merged[-1].get("type") == "text":
            merged[-1] = {"type": "text", "text": merged[-1]["text"] + "\n\n" + block["text"]}
        else:
            merged.append(dict(block))
    return merged


def format_message_with_attachments(message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Expand a user message's attachments into content blocks.

    Non-user messages and user messages without attachments come back unchanged
    (minus the attachments key). A lone text block collapses to a plain string.
    """
    out = {k: v for k, v in message.items() if k != "attachments"}
    attachments = message.get("attachments") or []
    if message.get("role") != "user" or not attachments:
        return out
    content = message.get("content")
    blocks: List[Dict[str, Any]] = []
    if isinstance(content, list):
        blocks.extend(content)
    elif content:
        blocks.append({"type": "text", "text": content})
    blocks.extend(attachment_to_content_block(a) for a in attachments)
    merged = _merge_text_blocks(blocks)
    if len(merged) == 1 and merged[0].get("type") == "text":
        out["content"] = merged[0]["text"]
    else:
        out["content"] = merged
    return out


def format_messages_with_attachments(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [format_message_with_attachments(m) for m in messages]


def attachments_require_vision(messages: List[Dict[str, Any]], attachments: Optional[List[Dict[str, Any]]] = None) -> bool:
    """True when any user attachment (in history or the current turn) is an image."""
    pending = list(attachments or [])
    for m in messages:
        if m.get("role") == "user":
            pending.extend(m.get("attachments") or [])
    return any(get_mime_category(a.get("mimeType") or a.get("mime_type") or "") in VISION_CATEGORIES for a in pending)
