"""SQLite persistence for selected volume bookmarks and user preferences."""
import sqlite3
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from .logs import structured_log

PREFERENCE_KEYS = ("use_secure_erase", "leave_safety_buffer", "test_mode")


@dataclass(frozen=True)
class VolumeReference:
    id: str
    token: bytes
    cached_display_path: str = ""


class _Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init()

    def _conn(self):
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _init(self):
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.cursor()
                cur.execute("CREATE TABLE IF NOT EXISTS bookmarks (volume_id TEXT PRIMARY KEY, token BLOB, display_path TEXT, idx INTEGER)")
                cur.execute("CREATE TABLE IF NOT EXISTS preferences (key TEXT PRIMARY KEY, value INTEGER)")
                conn.commit()
            finally:
                conn.close()


class BookmarkStore(_Database):
    """Maps a volume id to its opaque bookmark token, in selection order."""

    def load(self) -> Dict[str, bytes]:
        return {ref.id: ref.token for ref in self.references()}

    def references(self) -> List[VolumeReference]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute("SELECT volume_id, token, display_path FROM bookmarks ORDER BY idx").fetchall()
            finally:
                conn.close()
        return [VolumeReference(id=r[0], token=bytes(r[1]), cached_display_path=r[2] or r[0]) for r in rows]

    def save(self, mapping: Dict[str, bytes], display_paths: Optional[Dict[str, str]] = None):
        display_paths = display_paths or {}
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.cursor()
                start = cur.execute("SELECT COALESCE(MAX(idx), -1) + 1 FROM bookmarks").fetchone()[0]
                for offset, (volume_id, token) in enumerate(mapping.items()):
                    existing = cur.execute("SELECT idx FROM bookmarks WHERE volume_id=?", (volume_id,)).fetchone()
                    idx = existing[0] if existing else start + offset
                    cur.execute(
                        "INSERT OR REPLACE INTO bookmarks(volume_id, token, display_path, idx) VALUES (?,?,?,?)",
                        (volume_id, sqlite3.Binary(token), display_paths.get(volume_id, volume_id), idx),
                    )
                conn.commit()
            finally:
                conn.close()
        structured_log("bookmarks_saved", volumes=list(mapping))

    def clear(self):
        with self._lock:
            conn = self._conn()
            try:
                conn.execute("DELETE FROM bookmarks")
                conn.commit()
            finally:
                conn.close()
        structured_log("bookmarks_cleared")


class PreferenceStore(_Database):
    """Boolean user toggles; falls back to the configured defaults."""

    def __init__(self, db_path: str, defaults: Dict[str, bool]):
        self.defaults = {k: bool(defaults.get(k, False)) for k in PREFERENCE_KEYS}
        super().__init__(db_path)

    def get(self, key: str) -> bool:
        if key not in PREFERENCE_KEYS:
            raise KeyError(key)
        return self.all()[key]

    def all(self) -> Dict[str, bool]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute("SELECT key, value FROM preferences").fetchall()
            finally:
                conn.close()
        prefs = dict(self.defaults)
        for key, value in rows:
            if key in prefs:
                prefs[key] = bool(value)
        return prefs

    def set(self, key: str, value: bool):
        if key not in PREFERENCE_KEYS:
            raise KeyError(key)
        with self._lock:
            conn = self._conn()
            try:
                conn.execute("INSERT OR REPLACE INTO preferences(key, value) VALUES (?,?)", (key, int(bool(value))))
                conn.commit()
            finally:
                conn.close()
        structured_log("preference_updated", key=key, value=bool(value))

    @property
    def use_secure_erase(self) -> bool:
        return self.get("use_secure_erase")

    @property
    def leave_safety_buffer(self) -> bool:
        return self.get("leave_safety_buffer")

    @property
    def test_mode(self) -> bool:
        return self.get("test_mode")
