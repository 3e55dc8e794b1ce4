import sqlite3
from pathlib import Path
from typing import Iterable, Optional, Tuple

import pytest

import settings

# Column layout of Maccy's Core Data store (the subset plus bookkeeping columns).
MACCY_SCHEMA = """
CREATE TABLE ZHISTORYITEM (
    Z_PK INTEGER PRIMARY KEY,
    Z_ENT INTEGER,
    Z_OPT INTEGER,
    ZNUMBEROFCOPIES INTEGER,
    ZFIRSTCOPIEDAT TIMESTAMP,
    ZLASTCOPIEDAT TIMESTAMP,
    ZAPPLICATION VARCHAR,
    ZTITLE VARCHAR,
    ZPIN VARCHAR
);
CREATE TABLE ZHISTORYITEMCONTENT (
    Z_PK INTEGER PRIMARY KEY,
    Z_ENT INTEGER,
    Z_OPT INTEGER,
    ZITEM INTEGER,
    ZTYPE VARCHAR,
    ZVALUE BLOB
);
CREATE INDEX ZHISTORYITEMCONTENT_ZITEM_INDEX ON ZHISTORYITEMCONTENT (ZITEM);
"""

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01PNG-tail"


class MaccyStore:
    """Writes fixture rows straight into a Maccy-shaped SQLite file."""

    def __init__(self, path: Path):
        self.path = path
        with sqlite3.connect(self.path) as conn:
            conn.executescript(MACCY_SCHEMA)

    def add_item(
        self,
        item_id: int,
        *,
        title: Optional[str] = None,
        application: Optional[str] = "com.apple.Terminal",
        last_copied_at: float = 700000000.0,
        copies: int = 1,
        pin: Optional[str] = None,
        contents: Iterable[Tuple[str, object]] = (),
    ) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                "INSERT INTO ZHISTORYITEM (Z_PK, Z_ENT, Z_OPT, ZNUMBEROFCOPIES, ZFIRSTCOPIEDAT, "
                "ZLASTCOPIEDAT, ZAPPLICATION, ZTITLE, ZPIN) VALUES (?, 1, 1, ?, ?, ?, ?, ?, ?)",
                (item_id, copies, last_copied_at, last_copied_at, application, title, pin),
            )
            for content_type, value in contents:
                conn.execute(
                    "INSERT INTO ZHISTORYITEMCONTENT (Z_ENT, Z_OPT, ZITEM, ZTYPE, ZVALUE) "
                    "VALUES (2, 1, ?, ?, ?)",
                    (item_id, content_type, value),
                )

    def pin_of(self, item_id: int) -> Optional[str]:
        with sqlite3.connect(self.path) as conn:
            row = conn.execute(
                "SELECT ZPIN FROM ZHISTORYITEM WHERE Z_PK = ?", (item_id,)
            ).fetchone()
        return row[0] if row else None

    def content_rows(self, item_id: int):
        with sqlite3.connect(self.path) as conn:
            return conn.execute(
                "SELECT ZTYPE, ZVALUE FROM ZHISTORYITEMCONTENT WHERE ZITEM = ? ORDER BY Z_PK",
                (item_id,),
            ).fetchall()

    def execute(self, sql: str, params: Tuple = ()) -> None:
        """Runs raw SQL, for cells the parameter binding cannot produce."""
        with sqlite3.connect(self.path) as conn:
            conn.execute(sql, params)


@pytest.fixture
def maccy_store(tmp_path) -> MaccyStore:
    return MaccyStore(tmp_path / "Storage.sqlite")


@pytest.fixture
def clipboard_env(monkeypatch, maccy_store):
    """Point the process settings at the fixture store."""
    monkeypatch.setenv("CLIPBOARD_DB_PATH", str(maccy_store.path))
    monkeypatch.setenv("CLIPBOARD_LOG_FILE", "")
    monkeypatch.delenv("CLIPBOARD_DEFAULT_LIMIT", raising=False)
    monkeypatch.delenv("CLIPBOARD_MAX_LIMIT", raising=False)
    monkeypatch.delenv("CLIPBOARD_SANITIZE_STRICTNESS", raising=False)
    settings.reset_settings()
    yield maccy_store
    settings.reset_settings()
