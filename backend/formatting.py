"""
Rendering of normalized items into MCP content blocks.

Blocks are plain dicts in the wire shape of the tool-calling protocol:
`{"type": "text", "text": ...}` and
`{"type": "image", "data": <base64>, "mimeType": ..., "_meta": {...}}`.
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from errors import ItemFormattingFailure, SerializationFailure
from normalizer import (
    ContentKind,
    Diagnostic,
    NormalizedItem,
    ReadOutcome,
    classify,
    mime_type_for,
)

Block = Dict[str, Any]


def text_block(text: str) -> Block:
    return {"type": "text", "text": text}


def image_block(data: bytes, content_type: str, width: Optional[int] = None) -> Block:
    block: Block = {
        "type": "image",
        "data": base64.b64encode(data).decode("ascii"),
        "mimeType": mime_type_for(content_type),
    }
    if width is not None:
        # Display hint for the client; the payload itself is not resized.
        block["_meta"] = {"width": width}
    return block


def _describe(item: NormalizedItem) -> str:
    text_content = item.primary_text()
    flags = ""
    if item.pinned:
        flags += " 📌 Pinned"
    if item.has_images:
        flags += " 🖼️ Has Images"
    application = item.application or "Unknown application"
    return (
        f"📋 **{application}** ({item.last_copied}) [ID: {item.id}]\n"
        f"   Content: {text_content if text_content is not None else '(no text content)'}\n"
        f"   Content Types: {', '.join(item.content_types)}\n"
        f"   Copied {item.copy_count} times{flags}\n"
    )


def format_item(
    item: NormalizedItem,
    include_images: bool = False,
    thumbnail_width: Optional[int] = None,
) -> List[Block]:
    """
    Render one item: a description block, then one image block per binary
    image fragment when `include_images` is set.

    Raises ItemFormattingFailure if any part of the item cannot be rendered or
    would not survive UTF-8 encoding.
    """
    item_id = getattr(item, "id", None)
    try:
        blocks = [text_block(_describe(item))]
        if include_images:
            for content_type, value in item.content.items():
                if classify(content_type) is not ContentKind.IMAGE:
                    continue
                if isinstance(value, str):
                    continue
                blocks.append(image_block(value, content_type, thumbnail_width))
        for block in blocks:
            if block["type"] == "text":
                block["text"].encode("utf-8")
        return blocks
    except Exception as exc:
        raise ItemFormattingFailure(item_id, str(exc)) from exc


# =============================================================================
# Per-item error isolation
# =============================================================================


@dataclass(frozen=True)
class Formatted:
    item_id: int
    blocks: List[Block]


def diagnostic_block(diagnostic: Diagnostic) -> Block:
    return text_block(f"⚠️ Error formatting item {diagnostic.item_id}: {diagnostic.message}\n")


ItemOutcome = Union[Formatted, Diagnostic]


def try_format_item(
    item: ReadOutcome,
    include_images: bool = False,
    thumbnail_width: Optional[int] = None,
) -> ItemOutcome:
    if isinstance(item, Diagnostic):
        return item
    try:
        return Formatted(item.id, format_item(item, include_images, thumbnail_width))
    except ItemFormattingFailure as exc:
        return Diagnostic(exc.item_id, str(exc))


def format_items(
    items: Iterable[ReadOutcome],
    include_images: bool = False,
    thumbnail_width: Optional[int] = None,
) -> List[ItemOutcome]:
    """
    Format every item; a failing item yields a Diagnostic and the fold goes on.
    Items that already failed to normalize pass through as their Diagnostic.
    """
    outcomes: List[ItemOutcome] = []
    for item in items:
        outcomes.append(try_format_item(item, include_images, thumbnail_width))
    return outcomes


def outcome_blocks(outcomes: Iterable[ItemOutcome]) -> List[Block]:
    blocks: List[Block] = []
    for outcome in outcomes:
        if isinstance(outcome, Diagnostic):
            blocks.append(diagnostic_block(outcome))
        else:
            blocks.extend(outcome.blocks)
    return blocks


def diagnostics(outcomes: Iterable[ItemOutcome]) -> List[Diagnostic]:
    return [outcome for outcome in outcomes if isinstance(outcome, Diagnostic)]


# =============================================================================
# Tool results
# =============================================================================


@dataclass
class ToolResult:
    content: List[Block] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(content=[text_block(f"Error: {message}")], is_error=True)

    @property
    def text(self) -> str:
        return "".join(block.get("text", "") for block in self.content if block.get("type") == "text")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": self.content}
        if self.is_error:
            payload["isError"] = True
        return payload


def validate_response(result: ToolResult) -> int:
    """
    Check that the result encodes as JSON and UTF-8; returns the encoded size.

    Raises SerializationFailure otherwise.
    """
    try:
        serialized = json.dumps(result.to_payload(), ensure_ascii=False)
        return len(serialized.encode("utf-8"))
    except (TypeError, ValueError) as exc:
        raise SerializationFailure(f"Response serialization failed: {exc}") from exc
