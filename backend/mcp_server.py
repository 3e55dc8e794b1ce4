"""
MCP Server for Maccy clipboard history (SQLite backend)

This module exposes the clipboard history kept by Maccy to an AI agent
through the Model Context Protocol (MCP):

- search_clipboard / get_recent_items / get_items_by_app  - browse history
- copy_to_clipboard                                       - copy an item back
- pin_item / unpin_item                                   - toggle the pin marker
- export_history                                          - write json/csv/txt
- get_clipboard_stats                                     - usage statistics

Every tool goes through `dispatch_tool`, which owns the per-call database
handle and turns any failure into an error-flagged tool response.
"""

import asyncio
import os
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from datetime import datetime

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ImageContent, TextContent
from sqlalchemy.exc import SQLAlchemyError

from clipboard_sink import ClipboardSink, copy_item
from db import ClipboardClient, open_clipboard_client
from epoch import parse_iso_datetime
from errors import ClipboardError, StoreIOError, ValidationError
from exporter import normalize_format, resolve_export_path, write_export
from formatting import (
    Block,
    ToolResult,
    diagnostics,
    format_items,
    outcome_blocks,
    text_block,
    validate_response,
)
from logging_setup import configure_logging, get_logger
from normalizer import Diagnostic, NormalizedItem, ReadOutcome
from request_context import RequestContext
from settings import get_settings

# Initialize FastMCP server
mcp = FastMCP("Maccy Clipboard History")

logger = get_logger("tools")

# Tools that need a writable handle (pin marker) or touch the system clipboard.
WRITE_TOOLS = frozenset({"copy_to_clipboard", "pin_item", "unpin_item"})

clipboard_sink = ClipboardSink()

Handler = Callable[[RequestContext, ClipboardClient], Awaitable[List[Block]]]


# =============================================================================
# Argument validation
# =============================================================================


def _validate_limit(limit: Any) -> int:
    settings = get_settings()
    if limit is None:
        return settings.default_limit
    if isinstance(limit, bool):
        raise ValidationError("limit must be an integer.")
    if isinstance(limit, float) and limit.is_integer():
        limit = int(limit)
    if not isinstance(limit, int):
        raise ValidationError("limit must be an integer.")
    if limit < 1 or limit > settings.max_limit:
        raise ValidationError(f"limit must be between 1 and {settings.max_limit}.")
    return limit


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.")
    if not value.strip():
        raise ValidationError(f"{field} must not be empty.")
    return value


def _optional_text(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.")
    return value.strip() or None


def _validate_item_id(item_id: Any) -> int:
    if isinstance(item_id, float) and item_id.is_integer():
        item_id = int(item_id)
    if isinstance(item_id, bool) or not isinstance(item_id, int) or item_id <= 0:
        raise ValidationError("item_id must be a positive integer.")
    return item_id


def _date_range(
    since: Optional[str], until: Optional[str]
) -> Tuple[Optional[datetime], Optional[datetime]]:
    since_dt = parse_iso_datetime(since, "since")
    until_dt = parse_iso_datetime(until, "until")
    if since_dt and until_dt and since_dt > until_dt:
        raise ValidationError("since must not be later than until.")
    return since_dt, until_dt


# =============================================================================
# Dispatch
# =============================================================================


def _failure(ctx: RequestContext, exc: ClipboardError) -> ToolResult:
    logger.error(
        "Tool call failed: %s",
        ctx.tool,
        extra=ctx.log_extra(error=str(exc), error_kind=exc.kind, elapsed_ms=ctx.elapsed_ms()),
    )
    return ToolResult.error(str(exc))


async def dispatch_tool(
    tool: str, arguments: Dict[str, Any], handler: Handler
) -> ToolResult:
    """
    Run one tool call.

    Opens a clipboard client for the call (read-only unless the tool is in
    WRITE_TOOLS), runs `handler`, checks that the response serializes, and
    closes the client on every path. Failures come back as error results.
    """
    ctx = RequestContext(tool)
    logger.info(
        "Tool call started: %s", tool, extra=ctx.log_extra(arguments=arguments)
    )
    try:
        async with open_clipboard_client(read_only=tool not in WRITE_TOOLS) as client:
            blocks = await handler(ctx, client)
        result = ToolResult(content=blocks)
        response_size = validate_response(result)
    except ClipboardError as exc:
        return _failure(ctx, exc)
    except SQLAlchemyError as exc:
        cause = getattr(exc, "orig", None) or exc
        return _failure(ctx, StoreIOError(f"Clipboard database error: {cause}"))
    except OSError as exc:
        return _failure(ctx, StoreIOError(str(exc)))
    except Exception as exc:
        logger.exception("Unexpected error in %s", tool, extra=ctx.log_extra())
        return ToolResult.error(str(exc))

    logger.info(
        "Tool call completed: %s",
        tool,
        extra=ctx.log_extra(
            response_size=response_size,
            content_blocks=len(blocks),
            elapsed_ms=ctx.elapsed_ms(),
        ),
    )
    return result


def _render_batch(
    ctx: RequestContext,
    header: str,
    items: List[ReadOutcome],
    include_images: bool,
) -> List[Block]:
    width = get_settings().thumbnail_width if include_images else None
    outcomes = format_items(items, include_images=include_images, thumbnail_width=width)
    for diagnostic in diagnostics(outcomes):
        logger.warning(
            "Error formatting clipboard item %s",
            diagnostic.item_id,
            extra=ctx.log_extra(item_id=diagnostic.item_id, error=diagnostic.message),
        )
    return [text_block(header)] + outcome_blocks(outcomes)


def _to_mcp_content(result: ToolResult) -> List[Union[TextContent, ImageContent]]:
    """ToolResult -> MCP content; error results raise ToolError (isError=true)."""
    if result.is_error:
        raise ToolError(result.text)
    content: List[Union[TextContent, ImageContent]] = []
    for block in result.content:
        if block["type"] == "image":
            content.append(ImageContent.model_validate(block))
        else:
            content.append(TextContent(type="text", text=block["text"]))
    return content


# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool(structured_output=False)
async def search_clipboard(
    query: str,
    limit: Optional[int] = None,
    use_regex: bool = False,
    app_filter: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
) -> List[Union[TextContent, ImageContent]]:
    """
    Search clipboard history by text pattern.

    Matches the pattern as a case-sensitive substring of item titles and text
    content. `use_regex` is accepted, but patterns are still matched literally.

    Args:
        query: Text to search for.
        limit: Maximum number of results to return (default: 10).
        use_regex: Accepted for compatibility; matching stays literal.
        app_filter: Only items copied from this application bundle identifier.
        since: ISO date string - only items copied since this date.
        until: ISO date string - only items copied before this date.
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        query_value = _require_text(query, "query")
        limit_value = _validate_limit(limit)
        app_value = _optional_text(app_filter, "app_filter")
        since_dt, until_dt = _date_range(since, until)
        items = await client.search(
            query_value,
            limit=limit_value,
            use_regex=bool(use_regex),
            since=since_dt,
            until=until_dt,
            app_filter=app_value,
        )
        header = f'Found {len(items)} clipboard items matching "{query_value}":\n\n'
        return _render_batch(ctx, header, items, include_images=True)

    arguments = {
        "query": query,
        "limit": limit,
        "use_regex": use_regex,
        "app_filter": app_filter,
        "since": since,
        "until": until,
    }
    return _to_mcp_content(await dispatch_tool("search_clipboard", arguments, handler))


@mcp.tool(structured_output=False)
async def get_recent_items(
    limit: Optional[int] = None,
    application: Optional[str] = None,
    exclude_images: bool = False,
) -> List[Union[TextContent, ImageContent]]:
    """
    Get recent clipboard items with optional filters.

    Args:
        limit: Maximum number of items to return (default: 10).
        application: Only items copied from this application.
        exclude_images: Leave image content out of the results.
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        limit_value = _validate_limit(limit)
        app_value = _optional_text(application, "application")
        items = await client.get_recent_items(
            limit_value, application=app_value, exclude_images=bool(exclude_images)
        )
        filter_text = f" from {app_value}" if app_value else ""
        header = f"Recent {len(items)} clipboard items{filter_text}:\n\n"
        return _render_batch(ctx, header, items, include_images=not exclude_images)

    arguments = {
        "limit": limit,
        "application": application,
        "exclude_images": exclude_images,
    }
    return _to_mcp_content(await dispatch_tool("get_recent_items", arguments, handler))


@mcp.tool(structured_output=False)
async def get_items_by_app(
    application: str,
    limit: Optional[int] = None,
) -> List[Union[TextContent, ImageContent]]:
    """
    Get clipboard items from a specific application.

    Args:
        application: Application bundle identifier (e.g., com.google.Chrome).
        limit: Maximum number of items to return (default: 10).
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        app_value = _require_text(application, "application").strip()
        limit_value = _validate_limit(limit)
        items = await client.get_items_by_application(app_value, limit_value)
        header = f"Found {len(items)} clipboard items from {app_value}:\n\n"
        return _render_batch(ctx, header, items, include_images=False)

    arguments = {"application": application, "limit": limit}
    return _to_mcp_content(await dispatch_tool("get_items_by_app", arguments, handler))


@mcp.tool(structured_output=False)
async def copy_to_clipboard(item_id: int) -> List[Union[TextContent, ImageContent]]:
    """
    Copy a specific history item back to the current clipboard.

    Images win over text when the item has both.

    Args:
        item_id: ID of the clipboard item to copy.
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        item_value = _validate_item_id(item_id)
        item = await client.get_item(item_value)
        outcome = await asyncio.to_thread(copy_item, item, clipboard_sink)
        logger.info(
            "Copied item to clipboard",
            extra=ctx.log_extra(item_id=item_value, kind=outcome.kind, byte_count=outcome.byte_count),
        )
        preview = outcome.describe(get_settings().preview_chars)
        return [
            text_block(f"✅ Successfully copied item {item_value} to clipboard:\n{preview}")
        ]

    return _to_mcp_content(
        await dispatch_tool("copy_to_clipboard", {"item_id": item_id}, handler)
    )


@mcp.tool(structured_output=False)
async def pin_item(item_id: int) -> List[Union[TextContent, ImageContent]]:
    """
    Pin a clipboard item so Maccy keeps it.

    Args:
        item_id: ID of the clipboard item to pin.
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        item_value = _validate_item_id(item_id)
        await client.pin_item(item_value)
        return [text_block(f"📌 Successfully pinned clipboard item {item_value}")]

    return _to_mcp_content(await dispatch_tool("pin_item", {"item_id": item_id}, handler))


@mcp.tool(structured_output=False)
async def unpin_item(item_id: int) -> List[Union[TextContent, ImageContent]]:
    """
    Unpin a clipboard item.

    Args:
        item_id: ID of the clipboard item to unpin.
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        item_value = _validate_item_id(item_id)
        await client.unpin_item(item_value)
        return [text_block(f"📌 Successfully unpinned clipboard item {item_value}")]

    return _to_mcp_content(await dispatch_tool("unpin_item", {"item_id": item_id}, handler))


@mcp.tool(structured_output=False)
async def export_history(
    file_path: str,
    format: str = "json",
    since: Optional[str] = None,
    until: Optional[str] = None,
    overwrite: bool = False,
) -> List[Union[TextContent, ImageContent]]:
    """
    Export clipboard history to a local file.

    Args:
        file_path: Where to save the export (e.g., ~/Desktop/clipboard_export.json).
        format: json, csv or txt (default: json).
        since: ISO date string - only export items since this date.
        until: ISO date string - only export items before this date.
        overwrite: Replace the file if it already exists (default: false).
    """

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        path_value = _require_text(file_path, "file_path")
        fmt = normalize_format(format)
        since_dt, until_dt = _date_range(since, until)
        resolve_export_path(path_value, overwrite=bool(overwrite))
        outcomes = await client.get_export_items(since=since_dt, until=until_dt)
        items = [outcome for outcome in outcomes if isinstance(outcome, NormalizedItem)]
        skipped = [outcome for outcome in outcomes if isinstance(outcome, Diagnostic)]
        for diagnostic in skipped:
            logger.warning(
                "Skipping unreadable clipboard item in export",
                extra=ctx.log_extra(item_id=diagnostic.item_id, error=diagnostic.message),
            )
        result = write_export(items, path_value, fmt, overwrite=bool(overwrite))
        logger.info(
            "Exported clipboard history",
            extra=ctx.log_extra(
                file_path=str(result.file_path),
                item_count=result.item_count,
                file_size=result.file_size,
                skipped=len(skipped),
            ),
        )
        summary = (
            "📄 Successfully exported clipboard history!\n\n"
            f"**File:** {result.file_path}\n"
            f"**Format:** {fmt.upper()}\n"
            f"**Items:** {result.item_count}\n"
            f"**File Size:** {result.file_size / 1024:.1f} KB"
        )
        if skipped:
            ids = ", ".join(str(diagnostic.item_id) for diagnostic in skipped)
            summary += f"\n**Skipped (unreadable):** {ids}"
        return [text_block(summary)]

    arguments = {
        "file_path": file_path,
        "format": format,
        "since": since,
        "until": until,
        "overwrite": overwrite,
    }
    return _to_mcp_content(await dispatch_tool("export_history", arguments, handler))


@mcp.tool(structured_output=False)
async def get_clipboard_stats() -> List[Union[TextContent, ImageContent]]:
    """Get clipboard usage statistics."""

    async def handler(ctx: RequestContext, client: ClipboardClient) -> List[Block]:
        stats = await client.get_statistics()
        top_apps = "\n".join(
            f"• {app['application'] or 'Unknown application'}: {app['item_count']} items"
            for app in stats["top_applications"]
        )
        return [
            text_block(
                "📊 **Clipboard Statistics**\n\n"
                f"Total Items: {stats['total_items']}\n"
                f"Date Range: {stats['oldest_item'] or 'n/a'} → {stats['newest_item'] or 'n/a'}\n\n"
                "**Top Applications:**\n"
                f"{top_apps}"
            )
        ]

    return _to_mcp_content(await dispatch_tool("get_clipboard_stats", {}, handler))


# =============================================================================
# Startup
# =============================================================================


def main() -> None:
    """Run the server over stdio."""
    configure_logging()
    settings = get_settings()
    get_logger().info(
        "Maccy Clipboard MCP server starting up",
        extra={"pid": os.getpid(), "cwd": os.getcwd(), "db_path": str(settings.db_path)},
    )
    mcp.run()


if __name__ == "__main__":
    main()
