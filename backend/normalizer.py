"""
Content normalization for clipboard history items.

A Maccy history entry owns several content fragments, one per pasteboard type
(`public.utf8-plain-text`, `public.png`, ...). This module turns those raw
fragments into one `NormalizedItem`:

- every fragment is classified once as TEXT or IMAGE,
- text is sanitized so it can travel inside JSON,
- binary image payloads are kept byte-for-byte,
- precedence rules pick "the" text and "the" image of an item.

Nothing in here touches the database or the filesystem.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from epoch import format_timestamp

SANITIZE_FAILED = "[Content could not be sanitized]"

IMAGE_TYPES = frozenset(
    {"public.png", "public.jpeg", "public.tiff", "com.apple.NSImage"}
)
IMAGE_TYPE_PREFIX = "image/"

TEXT_PRECEDENCE = ("public.utf8-plain-text", "public.text")
IMAGE_PRECEDENCE = ("public.png", "public.jpeg", "public.tiff")

IMAGE_MIME_TYPES = {
    "public.png": "image/png",
    "public.jpeg": "image/jpeg",
    "public.tiff": "image/tiff",
    "com.apple.NSImage": "image/png",
}

# \t, \n and \r survive both levels.
_MINIMAL_STRIP = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_STRICT_STRIP = re.compile(
    r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F\u200B-\u200D\uFEFF\uFFFE\uFFFF]"
)

ContentValue = Union[str, bytes]


class ContentKind(Enum):
    TEXT = "text"
    IMAGE = "image"


class Strictness(Enum):
    MINIMAL = "minimal"
    STRICT = "strict"

    @classmethod
    def parse(cls, value: Union[str, "Strictness", None]) -> "Strictness":
        if isinstance(value, Strictness):
            return value
        try:
            return cls(str(value or "minimal").strip().lower())
        except ValueError:
            return cls.MINIMAL


def classify(content_type: Optional[str]) -> ContentKind:
    """IMAGE for the known image pasteboard types and any `image/*` tag."""
    if content_type in IMAGE_TYPES:
        return ContentKind.IMAGE
    if content_type and content_type.startswith(IMAGE_TYPE_PREFIX):
        return ContentKind.IMAGE
    return ContentKind.TEXT


def is_binary(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray, memoryview))


def mime_type_for(content_type: str) -> str:
    if content_type in IMAGE_MIME_TYPES:
        return IMAGE_MIME_TYPES[content_type]
    return content_type


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if is_binary(value):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _repair_surrogates(text: str) -> str:
    # Joins surrogate pairs and swaps lone halves for U+FFFD.
    return text.encode("utf-16", "surrogatepass").decode("utf-16", "replace")


def sanitize_text(value: Any, strictness: Strictness = Strictness.MINIMAL) -> str:
    """
    Make text safe for JSON transport.

    MINIMAL strips the C0 control characters except tab, newline and carriage
    return. STRICT additionally strips DEL, the noncharacters U+FFFE/U+FFFF and
    zero-width characters, and repairs unpaired surrogates. Other Unicode is
    left alone; no normalization form is applied.
    """
    text = _coerce_text(value)
    if strictness is Strictness.STRICT:
        return _STRICT_STRIP.sub("", _repair_surrogates(text))
    return _MINIMAL_STRIP.sub("", text)


def safe_sanitize(value: Any, strictness: Strictness = Strictness.MINIMAL) -> str:
    """sanitize_text that degrades to a sentinel instead of raising."""
    try:
        return sanitize_text(value, strictness)
    except Exception:
        return SANITIZE_FAILED


@dataclass(frozen=True)
class ContentFragment:
    """One typed representation of a clipboard event."""

    content_type: str
    value: Any
    kind: ContentKind

    @classmethod
    def from_row(cls, content_type: Optional[str], value: Any) -> "ContentFragment":
        content_type = content_type or ""
        return cls(content_type=content_type, value=value, kind=classify(content_type))


def normalize(
    fragments: Iterable[ContentFragment],
    strictness: Strictness = Strictness.MINIMAL,
    exclude_images: bool = False,
) -> Dict[str, ContentValue]:
    """
    Build the content map of an item.

    Image fragments stored as bytes are kept verbatim. Everything else is text
    and goes through sanitization; bytes under a text type are decoded first.
    Duplicate types keep the last fragment.
    """
    content: Dict[str, ContentValue] = {}
    for fragment in fragments:
        if fragment.value is None:
            continue
        if fragment.kind is ContentKind.IMAGE:
            if exclude_images:
                continue
            if is_binary(fragment.value):
                content[fragment.content_type] = bytes(fragment.value)
                continue
        content[fragment.content_type] = safe_sanitize(fragment.value, strictness)
    return content


def primary_text(content: Dict[str, ContentValue], title: Optional[str] = None) -> Optional[str]:
    """`public.utf8-plain-text` > `public.text` > title; first non-empty wins."""
    for content_type in TEXT_PRECEDENCE:
        value = content.get(content_type)
        if isinstance(value, str) and value:
            return value
    return title or None


def primary_image(content: Dict[str, ContentValue]) -> Optional[Tuple[str, bytes]]:
    """`public.png` > `public.jpeg` > `public.tiff`, binary payloads only."""
    for content_type in IMAGE_PRECEDENCE:
        value = content.get(content_type)
        if isinstance(value, bytes) and value:
            return content_type, value
    return None


@dataclass
class NormalizedItem:
    id: int
    title: Optional[str]
    application: Optional[str]
    last_copied: Optional[str]
    copy_count: int
    pinned: bool
    last_copied_at: Optional[float] = None
    content: Dict[str, ContentValue] = field(default_factory=dict)

    @property
    def content_types(self) -> List[str]:
        return list(self.content)

    @property
    def has_images(self) -> bool:
        return any(classify(content_type) is ContentKind.IMAGE for content_type in self.content)

    def primary_text(self) -> Optional[str]:
        return primary_text(self.content, self.title)

    def primary_image(self) -> Optional[Tuple[str, bytes]]:
        return primary_image(self.content)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready view; binary payloads become size placeholders."""
        content: Dict[str, str] = {}
        for content_type, value in self.content.items():
            if isinstance(value, bytes):
                content[content_type] = f"[Binary data: {len(value)} bytes]"
            else:
                content[content_type] = value
        return {
            "id": self.id,
            "title": self.title,
            "application": self.application,
            "lastCopied": self.last_copied,
            "copyCount": self.copy_count,
            "pinned": self.pinned,
            "content": content,
        }


def normalize_item(
    entry: Dict[str, Any],
    fragments: Iterable[ContentFragment],
    strictness: Strictness = Strictness.MINIMAL,
    exclude_images: bool = False,
    tz=None,
) -> NormalizedItem:
    """
    Assemble a NormalizedItem from an entry row and its fragments.

    `entry` carries `id`, `title`, `application`, `last_copied_at` (source
    epoch), `copy_count` and `pin`; pinned is true whenever `pin` is set.
    """
    title = entry.get("title")
    last_copied_at = entry.get("last_copied_at")
    return NormalizedItem(
        id=entry["id"],
        title=safe_sanitize(title, strictness) if title is not None else None,
        application=entry.get("application"),
        last_copied=format_timestamp(last_copied_at, tz),
        copy_count=entry.get("copy_count") or 0,
        pinned=entry.get("pin") is not None,
        last_copied_at=last_copied_at,
        content=normalize(fragments, strictness, exclude_images=exclude_images),
    )


@dataclass(frozen=True)
class Diagnostic:
    """Placeholder for an item that could not be normalized or formatted."""

    item_id: Any
    message: str


ReadOutcome = Union[NormalizedItem, Diagnostic]


def normalize_or_diagnose(
    entry: Dict[str, Any],
    fragments: Iterable[ContentFragment],
    strictness: Strictness = Strictness.MINIMAL,
    exclude_images: bool = False,
    tz=None,
) -> ReadOutcome:
    """normalize_item for one row of a batch; a failure becomes a Diagnostic."""
    try:
        return normalize_item(entry, fragments, strictness, exclude_images, tz)
    except Exception as exc:
        return Diagnostic(entry.get("id"), f"{type(exc).__name__}: {exc}")
