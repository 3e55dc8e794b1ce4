"""
Export of clipboard history to json, csv or txt files.
"""

import csv
import io
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Union

from errors import SerializationFailure, StoreIOError, ValidationError
from normalizer import NormalizedItem

SUPPORTED_FORMATS = ("json", "csv", "txt")

CSV_HEADER = ["ID", "Title", "Application", "LastCopied", "CopyCount", "Pinned", "Content"]


@dataclass(frozen=True)
class ExportResult:
    file_path: Path
    format: str
    item_count: int
    file_size: int


def normalize_format(fmt: str) -> str:
    value = str(fmt or "json").strip().lower()
    if value not in SUPPORTED_FORMATS:
        raise ValidationError(
            f"Unsupported format: {fmt}. Supported formats: {', '.join(SUPPORTED_FORMATS)}"
        )
    return value


def _export_text(item: NormalizedItem) -> str:
    return item.primary_text() or ""


def render_json(items: Sequence[NormalizedItem]) -> str:
    return json.dumps([item.to_dict() for item in items], indent=2, ensure_ascii=False)


def render_csv(items: Sequence[NormalizedItem]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for item in items:
        writer.writerow(
            [
                item.id,
                item.title or "",
                item.application or "",
                item.last_copied or "",
                item.copy_count,
                "true" if item.pinned else "false",
                _export_text(item),
            ]
        )
    return buffer.getvalue()


def render_txt(items: Sequence[NormalizedItem]) -> str:
    rule = "=" * 50
    return "\n\n".join(
        f"[{item.last_copied}] {item.application or ''}\n{_export_text(item)}\n{rule}"
        for item in items
    )


_RENDERERS: Dict[str, Callable[[Sequence[NormalizedItem]], str]] = {
    "json": render_json,
    "csv": render_csv,
    "txt": render_txt,
}


def render_export(items: Sequence[NormalizedItem], fmt: str) -> str:
    return _RENDERERS[normalize_format(fmt)](items)


def resolve_export_path(file_path: Union[str, Path], overwrite: bool = False) -> Path:
    """
    Resolve the target path and check it can be written.

    Raises:
        ValidationError: empty path, a directory, or an existing file without `overwrite`
        StoreIOError: the parent directory does not exist
    """
    if not str(file_path or "").strip():
        raise ValidationError("file_path must not be empty.")
    resolved = Path(file_path).expanduser().resolve()
    if not resolved.parent.is_dir():
        raise StoreIOError(f"Directory does not exist: {resolved.parent}")
    if resolved.is_dir():
        raise ValidationError(f"{resolved} is a directory.")
    if resolved.exists() and not overwrite:
        raise ValidationError(
            f"{resolved} already exists. Pass overwrite=true to replace it."
        )
    return resolved


def write_export(
    items: List[NormalizedItem],
    file_path: Union[str, Path],
    fmt: str = "json",
    overwrite: bool = False,
) -> ExportResult:
    fmt = normalize_format(fmt)
    target = resolve_export_path(file_path, overwrite=overwrite)
    data = render_export(items, fmt)
    try:
        encoded = data.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise SerializationFailure(f"Export is not valid UTF-8: {exc}") from exc
    try:
        target.write_bytes(encoded)
    except OSError as exc:
        raise StoreIOError(f"Failed to write {target}: {exc}") from exc
    return ExportResult(
        file_path=target,
        format=fmt,
        item_count=len(items),
        file_size=len(encoded),
    )
