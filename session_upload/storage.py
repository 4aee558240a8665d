"""Storage backend for the reference session store."""

import os
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Optional

from session_upload.completion import CompletionTracker
from session_upload.content_hash import hash_file


class SessionStorage(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def create_session(self, session_id: str) -> None:
        """Create a new, empty upload session."""
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        """Get session information, including its contiguous ``length``."""
        pass

    @abstractmethod
    def write_chunk(self, session_id: str, offset: int, data: bytes) -> None:
        """Write a chunk of data at ``offset`` of the session. Chunks may arrive in any order."""
        pass

    @abstractmethod
    def close_session(self, session_id: str, length: int) -> None:
        """Mark a session as closed: no data will be appended past ``length``."""
        pass

    @abstractmethod
    def commit_session(
        self, session_id: str, length: int, path: str, client_modified: Optional[str] = None
    ) -> dict[str, Any]:
        """Turn the first ``length`` bytes of a session into a file at ``path``."""
        pass

    @abstractmethod
    def get_file(self, path: str) -> Optional[dict[str, Any]]:
        """Get file information, or None."""
        pass

    @abstractmethod
    def folder_exists(self, path: str) -> bool:
        """Whether ``path`` is a folder ("" is the root)."""
        pass

    @abstractmethod
    def list_entries(self, path: str, recursive: bool = False) -> list[dict[str, Any]]:
        """List files and folders under ``path``, sorted by path."""
        pass

    @abstractmethod
    def read_file(self, path: str, start: int = 0, end: Optional[int] = None) -> bytes:
        """Read bytes ``[start, end)`` of a committed file."""
        pass


class SQLiteSessionStorage(SessionStorage):
    """SQLite-based storage backend.

    Session data is written to one file per session in ``upload_dir``; committed files are
    moved to ``upload_dir/files``.
    """

    def __init__(self, db_path: str = "sessions.db", upload_dir: str = "uploads"):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
            upload_dir: Directory to store uploaded data
        """
        self.db_path = db_path
        self.upload_dir = upload_dir
        self.files_dir = os.path.join(upload_dir, "files")
        os.makedirs(self.files_dir, exist_ok=True)
        self._lock = RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = sqlite3.connect(self.db_path)
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                closed_length INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE TABLE IF NOT EXISTS session_ranges (
                session_id TEXT NOT NULL,
                chunk_offset INTEGER NOT NULL,
                length INTEGER NOT NULL,
                PRIMARY KEY (session_id, chunk_offset)
            );
            CREATE TABLE IF NOT EXISTS files (
                path_lower TEXT PRIMARY KEY,
                path_display TEXT NOT NULL,
                id TEXT NOT NULL,
                size INTEGER NOT NULL,
                content_hash TEXT NOT NULL,
                client_modified TEXT,
                server_modified TEXT NOT NULL,
                rev TEXT NOT NULL
            );
            """
        )
        conn.commit()
        conn.close()

    def create_session(self, session_id: str) -> None:
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.execute("INSERT INTO sessions (session_id) VALUES (?)", (session_id,))
            conn.commit()
            conn.close()

        with open(self._session_path(session_id), "wb"):
            pass

    def get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            ranges = conn.execute(
                "SELECT chunk_offset, length FROM session_ranges "
                "WHERE session_id = ? ORDER BY chunk_offset",
                (session_id,),
            ).fetchall()
            conn.close()

        if row is None:
            return None

        tracker = CompletionTracker()
        for offset, length in ranges:
            tracker.complete_block(offset, length)

        return {
            "session_id": row["session_id"],
            "closed": row["closed_length"] is not None,
            "closed_length": row["closed_length"],
            "length": tracker.complete_up_to,
            "pending_chunks": tracker.pending_blocks,
        }

    def write_chunk(self, session_id: str, offset: int, data: bytes) -> None:
        with open(self._session_path(session_id), "r+b") as f:
            f.seek(offset)
            f.write(data)

        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.execute(
                "INSERT OR REPLACE INTO session_ranges (session_id, chunk_offset, length) "
                "VALUES (?, ?, ?)",
                (session_id, offset, len(data)),
            )
            conn.commit()
            conn.close()

    def close_session(self, session_id: str, length: int) -> None:
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.execute(
                "UPDATE sessions SET closed_length = ? WHERE session_id = ?", (length, session_id)
            )
            conn.commit()
            conn.close()

    def commit_session(
        self, session_id: str, length: int, path: str, client_modified: Optional[str] = None
    ) -> dict[str, Any]:
        session_path = self._session_path(session_id)
        with open(session_path, "r+b") as f:
            f.truncate(length)
        content_hash = hash_file(session_path)

        file_id = f"id:{uuid.uuid4().hex}"
        os.replace(session_path, os.path.join(self.files_dir, file_id))

        record = {
            "path_lower": path.lower(),
            "path_display": path,
            "id": file_id,
            "size": length,
            "content_hash": content_hash,
            "client_modified": client_modified,
            "server_modified": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "rev": uuid.uuid4().hex[:16],
        }

        with self._lock:
            conn = sqlite3.connect(self.db_path)
            old = conn.execute(
                "SELECT id FROM files WHERE path_lower = ?", (record["path_lower"],)
            ).fetchone()
            conn.execute(
                """
                INSERT OR REPLACE INTO files
                (path_lower, path_display, id, size, content_hash,
                 client_modified, server_modified, rev)
                VALUES (:path_lower, :path_display, :id, :size, :content_hash,
                        :client_modified, :server_modified, :rev)
                """,
                record,
            )
            conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM session_ranges WHERE session_id = ?", (session_id,))
            conn.commit()
            conn.close()

        if old is not None:
            os.remove(os.path.join(self.files_dir, old[0]))

        return self._file_info(record)

    def get_file(self, path: str) -> Optional[dict[str, Any]]:
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM files WHERE path_lower = ?", (path.lower(),)
            ).fetchone()
            conn.close()
        return self._file_info(dict(row)) if row else None

    def folder_exists(self, path: str) -> bool:
        if path in ("", "/"):
            return True
        prefix = path.lower().rstrip("/") + "/"
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            row = conn.execute(
                "SELECT 1 FROM files WHERE substr(path_lower, 1, ?) = ? LIMIT 1",
                (len(prefix), prefix),
            ).fetchone()
            conn.close()
        return row is not None

    def list_entries(self, path: str, recursive: bool = False) -> list[dict[str, Any]]:
        base = path.rstrip("/")
        prefix = base.lower() + "/"
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM files WHERE substr(path_lower, 1, ?) = ? ORDER BY path_lower",
                (len(prefix), prefix),
            ).fetchall()
            conn.close()

        entries: dict[str, dict[str, Any]] = {}
        for row in rows:
            relative = row["path_display"][len(prefix) :].split("/")
            # every folder between the listed folder and the file
            depth = len(relative) - 1 if recursive else min(len(relative) - 1, 1)
            for i in range(depth):
                folder = f"{base}/" + "/".join(relative[: i + 1])
                entries.setdefault(
                    folder.lower(),
                    {"tag": "folder", "name": relative[i], "path_display": folder},
                )
            if recursive or len(relative) == 1:
                entries[row["path_lower"]] = {"tag": "file", **self._file_info(dict(row))}

        return [entries[key] for key in sorted(entries)]

    def read_file(self, path: str, start: int = 0, end: Optional[int] = None) -> bytes:
        info = self.get_file(path)
        if info is None:
            raise FileNotFoundError(f"File not found: {path}")
        end = info["size"] if end is None else min(end, info["size"])
        with open(os.path.join(self.files_dir, info["id"]), "rb") as f:
            f.seek(start)
            return f.read(max(end - start, 0))

    def _session_path(self, session_id: str) -> str:
        return os.path.join(self.upload_dir, f"session-{session_id}")

    @staticmethod
    def _file_info(record: dict[str, Any]) -> dict[str, Any]:
        return {
            "name": record["path_display"].rsplit("/", 1)[-1],
            "path_display": record["path_display"],
            "id": record["id"],
            "size": record["size"],
            "content_hash": record["content_hash"],
            "client_modified": record["client_modified"],
            "server_modified": record["server_modified"],
            "rev": record["rev"],
        }
