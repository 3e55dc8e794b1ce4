"""
Error taxonomy for clipboard tool calls.

Every error below is caught by the tool dispatcher in `mcp_server` and turned
into an error-flagged tool response; none of them terminates the server.
"""

from typing import Optional


class ClipboardError(Exception):
    """Base class for errors surfaced to the MCP client."""

    kind = "error"


class NotFoundError(ClipboardError):
    """A lookup by item id matched nothing."""

    kind = "not_found"

    def __init__(self, message: str, item_id: Optional[int] = None):
        super().__init__(message)
        self.item_id = item_id


class ValidationError(ClipboardError):
    """A precondition failed locally, before any I/O."""

    kind = "validation"


class SerializationFailure(ClipboardError):
    """The assembled response cannot be encoded for the transport."""

    kind = "serialization"


class ItemFormattingFailure(ClipboardError):
    """One item of a batch could not be formatted."""

    kind = "item_formatting"

    def __init__(self, item_id: int, message: str):
        super().__init__(message)
        self.item_id = item_id


class StoreIOError(ClipboardError):
    """The database, the filesystem or the system clipboard failed."""

    kind = "io"
