"""
SQLite client for the Maccy clipboard history store.

Maccy keeps its history in a Core Data SQLite file with two tables:
- ZHISTORYITEM: one row per clipboard event
- ZHISTORYITEMCONTENT: one row per pasteboard representation of an event

The client only reads, except for toggling the pin marker. Each tool call
opens its own client and disposes of it when the call ends.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    Text,
    and_,
    cast,
    func,
    not_,
    or_,
    select,
    update,
)
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from epoch import datetime_to_source_epoch, format_timestamp
from errors import ItemFormattingFailure, NotFoundError, StoreIOError
from normalizer import (
    IMAGE_TYPE_PREFIX,
    IMAGE_TYPES,
    ContentFragment,
    Diagnostic,
    NormalizedItem,
    ReadOutcome,
    Strictness,
    normalize_or_diagnose,
)
from settings import get_settings

Base = declarative_base()

# Keeps IN (...) lists below SQLite's bound-parameter limit.
_ID_BATCH_SIZE = 500


# =============================================================================
# ORM Models
# =============================================================================


class HistoryItem(Base):
    """A clipboard event. ZPIN is a pin marker; only its presence matters."""

    __tablename__ = "ZHISTORYITEM"

    id = Column("Z_PK", Integer, primary_key=True)
    title = Column("ZTITLE", Text, nullable=True)
    application = Column("ZAPPLICATION", Text, nullable=True)
    last_copied_at = Column("ZLASTCOPIEDAT", Float)
    number_of_copies = Column("ZNUMBEROFCOPIES", Integer, default=1)
    pin = Column("ZPIN", Text, nullable=True)


class HistoryItemContent(Base):
    """One typed representation of a HistoryItem."""

    __tablename__ = "ZHISTORYITEMCONTENT"

    id = Column("Z_PK", Integer, primary_key=True)
    item_id = Column("ZITEM", Integer, ForeignKey("ZHISTORYITEM.Z_PK"), index=True)
    type = Column("ZTYPE", Text)
    # TEXT or BLOB depending on the pasteboard type.
    value = Column("ZVALUE", LargeBinary, nullable=True)


_TEXT_ENTRY_FIELDS = ("title", "application", "pin")

# Text columns are read as blobs and decoded here; the driver would raise on
# invalid UTF-8 and fail the whole result set.
_ENTRY_COLUMNS = (
    HistoryItem.id.label("id"),
    cast(HistoryItem.title, LargeBinary).label("title"),
    cast(HistoryItem.application, LargeBinary).label("application"),
    HistoryItem.last_copied_at.label("last_copied_at"),
    HistoryItem.number_of_copies.label("copy_count"),
    cast(HistoryItem.pin, LargeBinary).label("pin"),
)


def _decode_cell(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    return bytes(raw).decode("utf-8", errors="replace")


def _fragment_value(storage_class: Optional[str], raw: Any) -> Any:
    """BLOB cells stay bytes; every other storage class comes back as text."""
    if storage_class == "blob":
        return bytes(raw)
    return _decode_cell(raw)


def _row_entry(row: Any) -> Dict[str, Any]:
    entry = dict(row._mapping)
    for name in _TEXT_ENTRY_FIELDS:
        entry[name] = _decode_cell(entry[name])
    return entry


def _is_text_content():
    # A NULL type classifies as text, so it must not fall out through NOT IN.
    return or_(
        HistoryItemContent.type.is_(None),
        and_(
            HistoryItemContent.type.notin_(sorted(IMAGE_TYPES)),
            not_(HistoryItemContent.type.startswith(IMAGE_TYPE_PREFIX)),
        ),
    )


def build_database_url(db_path: Union[str, Path], read_only: bool = True) -> URL:
    """SQLAlchemy async URL; read-only handles use SQLite's `mode=ro` URI."""
    path = Path(db_path).expanduser().resolve()
    if not read_only:
        return URL.create("sqlite+aiosqlite", database=str(path))
    return URL.create(
        "sqlite+aiosqlite",
        database=f"file:{path.as_uri()[len('file://'):]}",
        query={"mode": "ro", "uri": "true"},
    )


class ClipboardClient:
    """
    Async client for Maccy history queries.

    Core operations:
    - search: substring search over titles and text content
    - get_recent_items / get_items_by_application: newest-first listings
    - get_item: single entry with all of its content
    - set_pinned: toggle the pin marker
    - get_statistics / get_export_items: aggregate reads
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        read_only: bool = True,
        busy_timeout_sec: float = 10.0,
        strictness: Union[str, Strictness] = Strictness.MINIMAL,
        exclude_images_overfetch: int = 3,
        tz=None,
    ):
        """
        Args:
            db_path: Path to Maccy's Storage.sqlite
            read_only: Open the file with `mode=ro`
            busy_timeout_sec: How long SQLite waits on a locked database
            strictness: Text sanitization level
            exclude_images_overfetch: Over-fetch multiplier when images are excluded
            tz: Display timezone for formatted timestamps (local when None)
        """
        self.db_path = Path(db_path).expanduser()
        self.read_only = read_only
        self.strictness = Strictness.parse(strictness)
        self.exclude_images_overfetch = max(1, int(exclude_images_overfetch))
        self.tz = tz
        self.database_url = build_database_url(self.db_path, read_only=read_only)
        self.engine = create_async_engine(
            self.database_url,
            echo=False,
            poolclass=NullPool,
            connect_args={"timeout": busy_timeout_sec},
        )
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        if not self.db_path.exists():
            raise StoreIOError(f"Clipboard database not found at {self.db_path}")
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Row helpers
    # =========================================================================

    async def _fetch_fragments(
        self,
        session: AsyncSession,
        item_ids: List[int],
        exclude_images: bool = False,
    ) -> Dict[int, List[ContentFragment]]:
        grouped: Dict[int, List[ContentFragment]] = {item_id: [] for item_id in item_ids}
        for start in range(0, len(item_ids), _ID_BATCH_SIZE):
            batch = item_ids[start : start + _ID_BATCH_SIZE]
            stmt = (
                select(
                    HistoryItemContent.item_id,
                    cast(HistoryItemContent.type, LargeBinary),
                    func.typeof(HistoryItemContent.value),
                    cast(HistoryItemContent.value, LargeBinary),
                )
                .where(HistoryItemContent.item_id.in_(batch))
                .order_by(HistoryItemContent.id)
            )
            if exclude_images:
                stmt = stmt.where(_is_text_content())
            result = await session.execute(stmt)
            for item_id, content_type, storage_class, raw in result.all():
                grouped.setdefault(item_id, []).append(
                    ContentFragment.from_row(
                        _decode_cell(content_type), _fragment_value(storage_class, raw)
                    )
                )
        return grouped

    def _build_item(
        self,
        row: Any,
        fragments: Iterable[ContentFragment],
        exclude_images: bool = False,
    ) -> ReadOutcome:
        return normalize_or_diagnose(
            _row_entry(row),
            fragments,
            strictness=self.strictness,
            exclude_images=exclude_images,
            tz=self.tz,
        )

    async def _items_for_rows(
        self,
        session: AsyncSession,
        rows: List[Any],
        exclude_images: bool = False,
    ) -> List[ReadOutcome]:
        """One outcome per row; a row that fails to normalize becomes a Diagnostic."""
        fragments = await self._fetch_fragments(
            session, [row.id for row in rows], exclude_images=exclude_images
        )
        return [
            self._build_item(row, fragments.get(row.id, []), exclude_images)
            for row in rows
        ]

    def _display_timestamp(self, source_ts: Any) -> Optional[str]:
        try:
            return format_timestamp(source_ts, self.tz)
        except (OverflowError, ValueError, OSError):
            return str(source_ts)

    @staticmethod
    def _apply_date_range(stmt, since: Optional[datetime], until: Optional[datetime]):
        if since is not None:
            stmt = stmt.where(HistoryItem.last_copied_at >= datetime_to_source_epoch(since))
        if until is not None:
            stmt = stmt.where(HistoryItem.last_copied_at <= datetime_to_source_epoch(until))
        return stmt

    # =========================================================================
    # Read operations
    # =========================================================================

    async def search(
        self,
        query: str,
        limit: int = 10,
        use_regex: bool = False,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        app_filter: Optional[str] = None,
    ) -> List[ReadOutcome]:
        """
        Case-sensitive substring search over titles and text content.

        `use_regex` is accepted for compatibility; the pattern is still matched
        as a plain substring.

        Returns:
            Up to `limit` matching entries, newest first
        """
        _ = use_regex
        matches_text = and_(
            _is_text_content(),
            func.instr(cast(HistoryItemContent.value, Text), query) > 0,
        )
        stmt = (
            select(*_ENTRY_COLUMNS)
            .distinct()
            .select_from(HistoryItem)
            .outerjoin(HistoryItemContent, HistoryItemContent.item_id == HistoryItem.id)
            .where(or_(func.instr(HistoryItem.title, query) > 0, matches_text))
        )
        stmt = self._apply_date_range(stmt, since, until)
        if app_filter:
            stmt = stmt.where(HistoryItem.application == app_filter)
        stmt = stmt.order_by(HistoryItem.last_copied_at.desc()).limit(limit)

        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
            return await self._items_for_rows(session, rows)

    async def get_recent_items(
        self,
        limit: int = 10,
        application: Optional[str] = None,
        exclude_images: bool = False,
    ) -> List[ReadOutcome]:
        """
        Newest entries first.

        With `exclude_images`, image fragments are dropped and `limit *
        exclude_images_overfetch` entries are scanned so that entries left
        empty can be skipped. An entry without content is kept only if it has
        a title. Diagnostics for unreadable rows count toward `limit`.
        """
        fetch_limit = limit * self.exclude_images_overfetch if exclude_images else limit
        stmt = select(*_ENTRY_COLUMNS)
        if application:
            stmt = stmt.where(HistoryItem.application == application)
        stmt = stmt.order_by(HistoryItem.last_copied_at.desc()).limit(fetch_limit)

        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
            candidates = await self._items_for_rows(
                session, rows, exclude_images=exclude_images
            )

        results: List[ReadOutcome] = []
        for item in candidates:
            if isinstance(item, NormalizedItem) and not item.content and not item.title:
                continue
            results.append(item)
            if len(results) >= limit:
                break
        return results

    async def get_items_by_application(
        self, application: str, limit: int = 10
    ) -> List[ReadOutcome]:
        return await self.get_recent_items(limit, application, exclude_images=False)

    async def get_item(self, item_id: int) -> NormalizedItem:
        """
        Get one entry with all of its content.

        Raises:
            NotFoundError: no entry has this id
            ItemFormattingFailure: the entry exists but cannot be read
        """
        async with self.session() as session:
            row = (
                await session.execute(
                    select(*_ENTRY_COLUMNS).where(HistoryItem.id == item_id)
                )
            ).first()
            if row is None:
                raise NotFoundError(f"Item with ID {item_id} not found", item_id=item_id)
            outcome = (await self._items_for_rows(session, [row]))[0]
        if isinstance(outcome, Diagnostic):
            raise ItemFormattingFailure(outcome.item_id, outcome.message)
        return outcome

    async def get_statistics(self) -> Dict[str, Any]:
        async with self.session() as session:
            total = (
                await session.execute(select(func.count()).select_from(HistoryItem))
            ).scalar_one()
            item_count = func.count().label("item_count")
            application = cast(HistoryItem.application, LargeBinary).label("application")
            top_apps = (
                await session.execute(
                    select(application, item_count)
                    .group_by(application)
                    .order_by(item_count.desc())
                    .limit(5)
                )
            ).all()
            oldest, newest = (
                await session.execute(
                    select(
                        func.min(HistoryItem.last_copied_at),
                        func.max(HistoryItem.last_copied_at),
                    )
                )
            ).one()

        return {
            "total_items": total,
            "top_applications": [
                {"application": _decode_cell(app), "item_count": count}
                for app, count in top_apps
            ],
            "oldest_item": self._display_timestamp(oldest),
            "newest_item": self._display_timestamp(newest),
        }

    async def get_export_items(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ReadOutcome]:
        """Every entry in the date range, newest first, with its content."""
        stmt = self._apply_date_range(select(*_ENTRY_COLUMNS), since, until)
        stmt = stmt.order_by(HistoryItem.last_copied_at.desc())
        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
            return await self._items_for_rows(session, rows)

    # =========================================================================
    # Pin marker
    # =========================================================================

    async def set_pinned(self, item_id: int, pinned: bool) -> Dict[str, Any]:
        """
        Set or clear ZPIN. Content rows are never touched.

        Raises:
            NotFoundError: no entry has this id
        """
        marker = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z") if pinned else None
        async with self.session() as session:
            result = await session.execute(
                update(HistoryItem)
                .where(HistoryItem.id == item_id)
                .values(pin=marker)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Item with ID {item_id} not found", item_id=item_id)
        return {"item_id": item_id, "action": "pinned" if pinned else "unpinned"}

    async def pin_item(self, item_id: int) -> Dict[str, Any]:
        return await self.set_pinned(item_id, True)

    async def unpin_item(self, item_id: int) -> Dict[str, Any]:
        return await self.set_pinned(item_id, False)


# =============================================================================
# Per-call factory
# =============================================================================


def create_clipboard_client(read_only: bool = True) -> ClipboardClient:
    """Build a client from the process settings."""
    settings = get_settings()
    return ClipboardClient(
        settings.db_path,
        read_only=read_only,
        busy_timeout_sec=settings.busy_timeout_sec,
        strictness=settings.sanitize_strictness,
        exclude_images_overfetch=settings.exclude_images_overfetch,
    )


@asynccontextmanager
async def open_clipboard_client(read_only: bool = True):
    """Client scoped to one tool call; disposed on every exit path."""
    client = create_clipboard_client(read_only=read_only)
    try:
        yield client
    finally:
        await client.close()
