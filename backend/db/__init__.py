from .sqlite_client import (
    ClipboardClient,
    HistoryItem,
    HistoryItemContent,
    create_clipboard_client,
    open_clipboard_client,
)

__all__ = [
    "ClipboardClient",
    "HistoryItem",
    "HistoryItemContent",
    "create_clipboard_client",
    "open_clipboard_client",
]
