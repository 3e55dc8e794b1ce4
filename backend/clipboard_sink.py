"""
Copy-back of a history item into the macOS clipboard.

Text goes through pyperclip. Images are written to a temporary file and read
back into the pasteboard by `osascript`; the file is removed afterwards.
"""

import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Callable, Optional

import pyperclip

from errors import NotFoundError, StoreIOError
from normalizer import NormalizedItem

# AppleScript class per pasteboard type.
_APPLESCRIPT_IMAGE_CLASSES = {
    "public.png": ("«class PNGf»", ".png"),
    "public.jpeg": ("JPEG picture", ".jpg"),
    "public.tiff": ("TIFF picture", ".tiff"),
}


@dataclass(frozen=True)
class CopyResult:
    kind: str  # "image" | "text"
    text: Optional[str] = None
    byte_count: int = 0

    def describe(self, preview_chars: int = 200) -> str:
        if self.kind == "image":
            return f"Image of {self.byte_count} bytes copied to clipboard."
        text = self.text or ""
        if len(text) > preview_chars:
            return text[:preview_chars] + "..."
        return text


class ClipboardSink:
    def __init__(
        self,
        copy_text: Optional[Callable[[str], None]] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self._copy_text = copy_text or pyperclip.copy
        self._run = run

    def copy_text(self, text: str) -> None:
        try:
            self._copy_text(text)
        except pyperclip.PyperclipException as exc:
            raise StoreIOError(f"Failed to copy to clipboard: {exc}") from exc

    def copy_image(self, data: bytes, content_type: str = "public.png") -> None:
        picture_class, suffix = _APPLESCRIPT_IMAGE_CLASSES.get(
            content_type, _APPLESCRIPT_IMAGE_CLASSES["public.png"]
        )
        fd, temp_path = tempfile.mkstemp(prefix="maccy-temp-", suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            script = f'set the clipboard to (read (POSIX file "{temp_path}") as {picture_class})'
            self._run(["osascript", "-e", script], check=True, capture_output=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise StoreIOError(f"Failed to copy image to clipboard: {stderr or exc}") from exc
        except OSError as exc:
            raise StoreIOError(f"Failed to copy image to clipboard: {exc}") from exc
        finally:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass


def copy_item(item: NormalizedItem, sink: ClipboardSink) -> CopyResult:
    """
    Put the best representation of `item` on the clipboard: the primary image
    when there is one, otherwise the primary text.

    Raises:
        NotFoundError: the item has neither
    """
    image = item.primary_image()
    if image is not None:
        content_type, data = image
        sink.copy_image(data, content_type)
        return CopyResult(kind="image", byte_count=len(data))

    text = item.primary_text()
    if not text:
        raise NotFoundError("No content found to copy", item_id=item.id)
    sink.copy_text(text)
    return CopyResult(kind="text", text=text)
