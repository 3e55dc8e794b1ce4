from datetime import datetime, timezone

import pytest

from db.sqlite_client import ClipboardClient, build_database_url
from epoch import datetime_to_source_epoch
from errors import ItemFormattingFailure, NotFoundError, StoreIOError
from normalizer import Diagnostic, NormalizedItem

from conftest import PNG_BYTES

TEXT = "public.utf8-plain-text"


def _client(store, **kwargs) -> ClipboardClient:
    kwargs.setdefault("tz", timezone.utc)
    return ClipboardClient(store.path, **kwargs)


@pytest.fixture
def populated_store(maccy_store):
    maccy_store.add_item(
        1,
        application="com.apple.Terminal",
        last_copied_at=100.0,
        copies=4,
        contents=[(TEXT, "Hello World"), ("public.html", "<b>Hello</b>")],
    )
    maccy_store.add_item(
        2,
        application="com.google.Chrome",
        last_copied_at=200.0,
        contents=[("public.png", PNG_BYTES)],
    )
    maccy_store.add_item(
        3,
        title="Meeting notes",
        application="com.google.Chrome",
        last_copied_at=300.0,
        pin="2024-01-01T00:00:00Z",
        contents=[(TEXT, "agenda\x00 items")],
    )
    return maccy_store


@pytest.mark.asyncio
async def test_search_is_case_sensitive_substring(populated_store) -> None:
    client = _client(populated_store)
    try:
        assert [item.id for item in await client.search("Hello")] == [1]
        assert await client.search("hello") == []
        assert [item.id for item in await client.search("lo Wo")] == [1]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_matches_title_and_ignores_image_bytes(populated_store) -> None:
    client = _client(populated_store)
    try:
        assert [item.id for item in await client.search("Meeting")] == [3]
        assert await client.search("PNG") == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_regex_flag_still_matches_literally(populated_store) -> None:
    client = _client(populated_store)
    try:
        assert await client.search("H.llo", use_regex=True) == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_filters_by_app_and_dates(populated_store) -> None:
    populated_store.add_item(
        4, application="com.apple.Terminal", last_copied_at=400.0, contents=[(TEXT, "Hello again")]
    )
    client = _client(populated_store)
    try:
        newest_first = await client.search("Hello")
        assert [item.id for item in newest_first] == [4, 1]

        since = datetime(2001, 1, 1, 0, 5, tzinfo=timezone.utc)  # source epoch 300
        assert [item.id for item in await client.search("Hello", since=since)] == [4]

        until = datetime(2001, 1, 1, 0, 3, tzinfo=timezone.utc)  # source epoch 180
        assert [item.id for item in await client.search("Hello", until=until)] == [1]

        assert await client.search("Hello", app_filter="com.google.Chrome") == []
        assert len(await client.search("Hello", limit=1)) == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_recent_items_newest_first_with_content(populated_store) -> None:
    client = _client(populated_store)
    try:
        items = await client.get_recent_items(10)
        assert [item.id for item in items] == [3, 2, 1]

        notes, image, hello = items
        assert notes.pinned is True
        assert notes.content == {TEXT: "agenda items"}
        assert notes.last_copied == "Mon, Jan 1, 2001, 12:05:00 AM UTC"
        assert image.content == {"public.png": PNG_BYTES}
        assert image.has_images is True
        assert hello.copy_count == 4
        assert hello.content_types == [TEXT, "public.html"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_recent_items_exclude_images_backfills_to_limit(maccy_store) -> None:
    # Every third entry is an untitled screenshot.
    for item_id in range(1, 16):
        if item_id % 3 == 0:
            contents = [("public.png", PNG_BYTES)]
        else:
            contents = [(TEXT, f"text {item_id}")]
        maccy_store.add_item(item_id, last_copied_at=float(item_id * 100), contents=contents)

    client = _client(maccy_store)
    try:
        items = await client.get_recent_items(5, exclude_images=True)
    finally:
        await client.close()

    assert [item.id for item in items] == [14, 13, 11, 10, 8]
    assert all(not item.has_images for item in items)
    assert all(item.content for item in items)


@pytest.mark.asyncio
async def test_exclude_images_scans_a_bounded_window(maccy_store) -> None:
    # Older text entries sit outside the limit * 3 rows that are scanned.
    for item_id in range(1, 21):
        if item_id <= 5 or item_id in (12, 20):
            contents = [(TEXT, f"text {item_id}")]
        else:
            contents = [("public.png", PNG_BYTES)]
        maccy_store.add_item(item_id, last_copied_at=float(item_id * 100), contents=contents)

    client = _client(maccy_store)
    try:
        items = await client.get_recent_items(5, exclude_images=True)
    finally:
        await client.close()

    assert [item.id for item in items] == [20, 12]


@pytest.mark.asyncio
async def test_untyped_fragment_counts_as_text(maccy_store) -> None:
    maccy_store.add_item(1, last_copied_at=10.0, contents=[(None, "orphan text")])
    maccy_store.add_item(2, last_copied_at=20.0, contents=[("public.png", PNG_BYTES)])

    client = _client(maccy_store)
    try:
        assert [item.id for item in await client.search("orphan")] == [1]
        items = await client.get_recent_items(10, exclude_images=True)
    finally:
        await client.close()

    assert [item.id for item in items] == [1]
    assert items[0].content == {"": "orphan text"}


@pytest.mark.asyncio
async def test_exclude_images_keeps_titled_image_only_entry(maccy_store) -> None:
    maccy_store.add_item(1, title="Screenshot", last_copied_at=10.0, contents=[("public.png", PNG_BYTES)])
    maccy_store.add_item(2, last_copied_at=20.0, contents=[("public.png", PNG_BYTES)])

    client = _client(maccy_store)
    try:
        items = await client.get_recent_items(10, exclude_images=True)
    finally:
        await client.close()

    assert [item.id for item in items] == [1]
    assert items[0].content == {}
    assert items[0].primary_text() == "Screenshot"


@pytest.mark.asyncio
async def test_items_by_application(populated_store) -> None:
    client = _client(populated_store)
    try:
        items = await client.get_items_by_application("com.google.Chrome", 10)
        assert [item.id for item in items] == [3, 2]
        assert await client.get_items_by_application("com.example.None", 10) == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_get_item_returns_every_fragment(populated_store) -> None:
    client = _client(populated_store)
    try:
        item = await client.get_item(2)
        assert item.primary_image() == ("public.png", PNG_BYTES)

        with pytest.raises(NotFoundError, match="Item with ID 99 not found"):
            await client.get_item(99)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_invalid_utf8_under_text_type_is_replaced(maccy_store) -> None:
    maccy_store.add_item(1, contents=[(TEXT, b"caf\xc3\xa9 \xff")])
    client = _client(maccy_store)
    try:
        item = await client.get_item(1)
    finally:
        await client.close()
    assert item.content[TEXT] == "café \ufffd"


@pytest.mark.asyncio
async def test_invalid_utf8_in_text_cells_does_not_fail_listing(maccy_store) -> None:
    maccy_store.add_item(1, last_copied_at=10.0, contents=[(TEXT, "good")])
    maccy_store.add_item(2, application=None, last_copied_at=20.0)
    maccy_store.execute(
        "UPDATE ZHISTORYITEM SET ZTITLE = CAST(X'6361ff' AS TEXT), "
        "ZAPPLICATION = CAST(X'6170ff' AS TEXT) WHERE Z_PK = 2"
    )
    maccy_store.execute(
        "INSERT INTO ZHISTORYITEMCONTENT (Z_ENT, Z_OPT, ZITEM, ZTYPE, ZVALUE) "
        "VALUES (2, 1, 2, ?, CAST(X'6361ff' AS TEXT))",
        (TEXT,),
    )

    client = _client(maccy_store)
    try:
        items = await client.get_recent_items(10)
        stats = await client.get_statistics()
    finally:
        await client.close()

    assert [item.id for item in items] == [2, 1]
    assert items[0].title == "ca\ufffd"
    assert items[0].application == "ap\ufffd"
    assert items[0].content == {TEXT: "ca\ufffd"}
    assert items[1].content == {TEXT: "good"}
    assert {"application": "ap\ufffd", "item_count": 1} in stats["top_applications"]


@pytest.mark.asyncio
async def test_out_of_range_timestamp_is_isolated_to_its_item(maccy_store) -> None:
    maccy_store.add_item(1, last_copied_at=100.0, contents=[(TEXT, "fine")])
    maccy_store.add_item(2, last_copied_at=1e300, contents=[(TEXT, "far future")])

    client = _client(maccy_store)
    try:
        items = await client.get_recent_items(10)
        exported = await client.get_export_items()
        stats = await client.get_statistics()
        with pytest.raises(ItemFormattingFailure):
            await client.get_item(2)
    finally:
        await client.close()

    assert isinstance(items[0], Diagnostic)
    assert items[0].item_id == 2
    assert isinstance(items[1], NormalizedItem)
    assert items[1].content == {TEXT: "fine"}
    assert [type(item) for item in exported] == [Diagnostic, NormalizedItem]
    assert stats["oldest_item"] == "Mon, Jan 1, 2001, 12:01:40 AM UTC"
    assert stats["newest_item"] == str(1e300)


@pytest.mark.asyncio
async def test_pin_and_unpin_only_touch_marker(populated_store) -> None:
    before = populated_store.content_rows(1)
    client = _client(populated_store, read_only=False)
    try:
        assert await client.pin_item(1) == {"item_id": 1, "action": "pinned"}
        assert populated_store.pin_of(1) is not None
        assert (await client.get_item(1)).pinned is True

        assert await client.unpin_item(1) == {"item_id": 1, "action": "unpinned"}
        assert populated_store.pin_of(1) is None

        with pytest.raises(NotFoundError):
            await client.pin_item(404)
    finally:
        await client.close()
    assert populated_store.content_rows(1) == before


@pytest.mark.asyncio
async def test_statistics(populated_store) -> None:
    client = _client(populated_store)
    try:
        stats = await client.get_statistics()
    finally:
        await client.close()

    assert stats["total_items"] == 3
    assert stats["top_applications"][0] == {"application": "com.google.Chrome", "item_count": 2}
    assert stats["oldest_item"] == "Mon, Jan 1, 2001, 12:01:40 AM UTC"
    assert stats["newest_item"] == "Mon, Jan 1, 2001, 12:05:00 AM UTC"


@pytest.mark.asyncio
async def test_statistics_on_empty_store(maccy_store) -> None:
    client = _client(maccy_store)
    try:
        stats = await client.get_statistics()
    finally:
        await client.close()
    assert stats == {
        "total_items": 0,
        "top_applications": [],
        "oldest_item": None,
        "newest_item": None,
    }


@pytest.mark.asyncio
async def test_export_items_respect_date_range(populated_store) -> None:
    client = _client(populated_store)
    try:
        everything = await client.get_export_items()
        assert [item.id for item in everything] == [3, 2, 1]

        since = datetime(2001, 1, 1, 0, 2, 30, tzinfo=timezone.utc)
        assert datetime_to_source_epoch(since) == 150
        assert [item.id for item in await client.get_export_items(since=since)] == [3, 2]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_database_raises_store_error(tmp_path) -> None:
    client = ClipboardClient(tmp_path / "absent.sqlite")
    try:
        with pytest.raises(StoreIOError, match="Clipboard database not found"):
            await client.get_recent_items(5)
    finally:
        await client.close()


def test_read_only_url_uses_sqlite_uri(tmp_path) -> None:
    url = build_database_url(tmp_path / "Storage 1.sqlite", read_only=True)
    assert url.drivername == "sqlite+aiosqlite"
    assert url.database.startswith("file:/")
    assert url.database.endswith("Storage%201.sqlite")
    assert dict(url.query) == {"mode": "ro", "uri": "true"}

    writable = build_database_url(tmp_path / "Storage.sqlite", read_only=False)
    assert writable.database.endswith("Storage.sqlite")
    assert not writable.query
