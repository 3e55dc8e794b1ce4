"""
Runtime configuration for the clipboard history MCP server.

Values come from environment variables. A `.env` file in the project root is
loaded first; otherwise the nearest one found from the working directory.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv, find_dotenv

current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
dotenv_path = os.path.join(root_dir, ".env")

if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)
else:
    _dotenv_path = find_dotenv(usecwd=True)
    if _dotenv_path:
        load_dotenv(_dotenv_path)


MACCY_DB_PATH = (
    Path.home()
    / "Library/Containers/org.p0deje.Maccy/Data/Library/Application Support/Maccy/Storage.sqlite"
)

SANITIZE_STRICTNESS_LEVELS = {"minimal", "strict"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration snapshot."""

    db_path: Path
    busy_timeout_sec: float
    default_limit: int
    max_limit: int
    exclude_images_overfetch: int
    sanitize_strictness: str
    thumbnail_width: int
    preview_chars: int
    log_level: str
    log_file: Optional[Path]

    @classmethod
    def from_env(cls) -> "Settings":
        strictness = _env_str("CLIPBOARD_SANITIZE_STRICTNESS", "minimal").lower()
        if strictness not in SANITIZE_STRICTNESS_LEVELS:
            strictness = "minimal"

        log_file_raw = _env_str("CLIPBOARD_LOG_FILE", "mcp-debug.jsonl")
        log_file = Path(log_file_raw).expanduser() if log_file_raw else None

        max_limit = _env_int("CLIPBOARD_MAX_LIMIT", 100, minimum=1)
        return cls(
            db_path=Path(
                _env_str("CLIPBOARD_DB_PATH", str(MACCY_DB_PATH)) or str(MACCY_DB_PATH)
            ).expanduser(),
            busy_timeout_sec=_env_float("CLIPBOARD_BUSY_TIMEOUT_SEC", 10.0, minimum=0.0),
            default_limit=min(
                max_limit, _env_int("CLIPBOARD_DEFAULT_LIMIT", 10, minimum=1)
            ),
            max_limit=max_limit,
            exclude_images_overfetch=_env_int(
                "CLIPBOARD_EXCLUDE_IMAGES_OVERFETCH", 3, minimum=1
            ),
            sanitize_strictness=strictness,
            thumbnail_width=_env_int("CLIPBOARD_THUMBNAIL_WIDTH", 100, minimum=1),
            preview_chars=_env_int("CLIPBOARD_PREVIEW_CHARS", 200, minimum=1),
            log_level=_env_str("CLIPBOARD_LOG_LEVEL", "INFO").upper() or "INFO",
            log_file=log_file,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached Settings so the next call re-reads the environment."""
    global _settings
    _settings = None
