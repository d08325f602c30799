"""SQLite-backed store for session metadata (nicknames, tags, project paths).

Transcripts stay where their IDE or agent wrote them; this database only
holds what a user layers on top of a session. It lives in its own file so
the transcript sources can stay strictly read-only.

The connection is lazy: constructing a MetadataStore touches nothing on
disk. The first operation creates the file (and its parent directory) and
the schema. Every public operation runs in one SQLite transaction, so it
either completes or leaves the database as it was. Each thread gets its own
connection and SQLite's file locking arbitrates between writers.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .core import (
    ListSessionsOptions,
    MetadataStats,
    ProjectInfo,
    SearchResult,
    SessionMetadata,
    TagCount,
)
from .errors import (
    AmbiguousReferenceError,
    ConfigurationError,
    ConflictError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS session_metadata (
    session_id            TEXT PRIMARY KEY,
    nickname              TEXT UNIQUE,
    project_path          TEXT,
    source                TEXT,
    message_count         INTEGER NOT NULL DEFAULT 0,
    first_message_preview TEXT,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_nickname ON session_metadata(nickname);
CREATE INDEX IF NOT EXISTS idx_project_path ON session_metadata(project_path);
CREATE INDEX IF NOT EXISTS idx_created_at ON session_metadata(created_at DESC);

CREATE TABLE IF NOT EXISTS session_tags (
    session_id TEXT NOT NULL,
    tag        TEXT NOT NULL,
    PRIMARY KEY (session_id, tag),
    FOREIGN KEY (session_id) REFERENCES session_metadata(session_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_tag ON session_tags(tag);

INSERT OR IGNORE INTO schema_version (version) VALUES ({SCHEMA_VERSION});
"""

_FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS session_content_fts USING fts5(
    session_id UNINDEXED,
    content,
    tokenize='porter unicode61'
)
"""

_UPSERT = """
INSERT INTO session_metadata (
    session_id, nickname, project_path, source, message_count,
    first_message_preview, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(session_id) DO UPDATE SET
    nickname = excluded.nickname,
    project_path = excluded.project_path,
    source = excluded.source,
    message_count = excluded.message_count,
    first_message_preview = excluded.first_message_preview,
    updated_at = excluded.updated_at
"""

# SQLite's default host-parameter limit is 999 on older builds.
_IN_CHUNK = 500


class MetadataStore:
    """Session metadata kept in a single SQLite file.

    Usage::

        with MetadataStore(get_metadata_db_path()) as store:
            store.add_tag("claude:proj:3f2a", "work")
            store.find_by_tag("work")

    A closed store stays closed; build a new instance to reopen the file.
    Nickname and tag comparisons are exact and case-sensitive.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._lock = threading.Lock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._schema_ready = False
        self._fts_available = False
        self._closed = False

    def __enter__(self) -> "MetadataStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Lifecycle ────────────────────────────────────────────────────

    def is_connected(self) -> bool:
        """Return True once a connection is open and the store isn't closed."""
        return not self._closed and bool(self._connections)

    def close(self) -> None:
        """Close every connection. Safe before connecting and when repeated."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connections, self._connections = self._connections, []

        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("Error closing metadata database %s: %s", self.db_path, e)

    @property
    def fts_available(self) -> bool:
        """Whether this SQLite build supports the full-text index."""
        self._connect()
        return self._fts_available

    # ── Session records ──────────────────────────────────────────────

    def upsert_session_metadata(self, metadata: SessionMetadata) -> None:
        """Insert a record, or replace every field of the existing one.

        ``created_at`` is kept from the first write; ``updated_at`` is
        refreshed. The tag set is replaced, not merged.
        """
        _require_text(metadata.session_id, "session_id")
        if metadata.nickname is not None:
            _require_text(metadata.nickname, "nickname")
        tags = _validate_tags(metadata.tags)
        now = _now()
        created = _format_ts(metadata.created_at) if metadata.created_at else now

        with self._transaction(write=True) as conn:
            if metadata.nickname is not None:
                self._check_nickname(conn, metadata.nickname, metadata.session_id)
            conn.execute(_UPSERT, (
                metadata.session_id,
                metadata.nickname,
                metadata.project_path or None,
                metadata.source or None,
                metadata.message_count or 0,
                metadata.first_message_preview or None,
                created,
                now,
            ))
            conn.execute("DELETE FROM session_tags WHERE session_id = ?", (metadata.session_id,))
            conn.executemany(
                "INSERT INTO session_tags (session_id, tag) VALUES (?, ?)",
                [(metadata.session_id, tag) for tag in sorted(tags)],
            )

    def get_session_metadata(self, session_id: str) -> Optional[SessionMetadata]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM session_metadata WHERE session_id = ?", (session_id,)
            ).fetchone()
            return self._to_metadata(conn, [row])[0] if row else None

    def delete_session_metadata(self, session_id: str) -> None:
        """Remove a record with its tags, nickname and indexed content."""
        with self._transaction(write=True) as conn:
            if self._fts_available:
                conn.execute("DELETE FROM session_content_fts WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM session_tags WHERE session_id = ?", (session_id,))
            cur = conn.execute("DELETE FROM session_metadata WHERE session_id = ?", (session_id,))
            if cur.rowcount:
                logger.info("Deleted metadata for session %s", session_id)

    def set_project(self, session_id: str, project_path: Optional[str]) -> None:
        """Bind a project path to a session (None clears it)."""
        _require_text(session_id, "session_id")
        now = _now()
        with self._transaction(write=True) as conn:
            self._ensure_record(conn, session_id, now)
            conn.execute(
                "UPDATE session_metadata SET project_path = ?, updated_at = ? WHERE session_id = ?",
                (project_path or None, now, session_id),
            )

    # ── Nicknames ────────────────────────────────────────────────────

    def set_nickname(self, session_id: str, nickname: str) -> None:
        """Bind a nickname to a session, creating the record if needed.

        Raises ConflictError if another session already holds the nickname.
        """
        _require_text(session_id, "session_id")
        _require_text(nickname, "nickname")
        now = _now()
        with self._transaction(write=True) as conn:
            self._check_nickname(conn, nickname, session_id)
            self._ensure_record(conn, session_id, now)
            conn.execute(
                "UPDATE session_metadata SET nickname = ?, updated_at = ? "
                "WHERE session_id = ? AND nickname IS NOT ?",
                (nickname, now, session_id, nickname),
            )

    def clear_nickname(self, session_id: str) -> None:
        now = _now()
        with self._transaction(write=True) as conn:
            conn.execute(
                "UPDATE session_metadata SET nickname = NULL, updated_at = ? "
                "WHERE session_id = ? AND nickname IS NOT NULL",
                (now, session_id),
            )

    def get_session_by_nickname(self, nickname: str) -> Optional[SessionMetadata]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM session_metadata WHERE nickname = ?", (nickname,)
            ).fetchone()
            return self._to_metadata(conn, [row])[0] if row else None

    def list_nicknames(self) -> list[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT nickname FROM session_metadata WHERE nickname IS NOT NULL ORDER BY nickname"
            ).fetchall()
        return [row["nickname"] for row in rows]

    # ── Lookup by reference ──────────────────────────────────────────

    def find_session_by_id_prefix(self, prefix: str) -> Optional[SessionMetadata]:
        """Find the one session whose id starts with ``prefix``.

        Works like abbreviated commit hashes in git: no match returns None,
        several matches raise AmbiguousReferenceError rather than guessing.
        """
        _require_text(prefix, "prefix")
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM session_metadata WHERE substr(session_id, 1, ?) = ? ORDER BY session_id",
                (len(prefix), prefix),
            ).fetchall()
            if not rows:
                return None
            if len(rows) > 1:
                raise AmbiguousReferenceError(prefix, [row["session_id"] for row in rows])
            return self._to_metadata(conn, rows)[0]

    def resolve_session(self, ref: str) -> Optional[SessionMetadata]:
        """Resolve a user-typed reference: nickname, then exact id, then id prefix."""
        return (
            self.get_session_by_nickname(ref)
            or self.get_session_metadata(ref)
            or self.find_session_by_id_prefix(ref)
        )

    # ── Tags ─────────────────────────────────────────────────────────

    def add_tag(self, session_id: str, tag: str) -> None:
        """Add a tag, creating the record if needed. Re-adding is a no-op."""
        _require_text(session_id, "session_id")
        _require_text(tag, "tag")
        now = _now()
        with self._transaction(write=True) as conn:
            self._ensure_record(conn, session_id, now)
            cur = conn.execute(
                "INSERT OR IGNORE INTO session_tags (session_id, tag) VALUES (?, ?)",
                (session_id, tag),
            )
            if cur.rowcount:
                self._touch(conn, session_id, now)

    def remove_tag(self, session_id: str, tag: str) -> None:
        """Remove a tag. Missing tags and missing sessions are a no-op."""
        now = _now()
        with self._transaction(write=True) as conn:
            cur = conn.execute(
                "DELETE FROM session_tags WHERE session_id = ? AND tag = ?",
                (session_id, tag),
            )
            if cur.rowcount:
                self._touch(conn, session_id, now)

    def find_by_tag(self, tag: str) -> list[SessionMetadata]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT m.* FROM session_metadata m
                JOIN session_tags t ON t.session_id = m.session_id
                WHERE t.tag = ?
                ORDER BY m.created_at DESC, m.session_id
                """,
                (tag,),
            ).fetchall()
            return self._to_metadata(conn, rows)

    def list_all_tags(self) -> list[TagCount]:
        """Every distinct tag with the number of sessions carrying it, most used first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT tag, COUNT(*) AS count FROM session_tags GROUP BY tag ORDER BY count DESC, tag"
            ).fetchall()
        return [TagCount(tag=row["tag"], count=row["count"]) for row in rows]

    # ── Projects and listing ─────────────────────────────────────────

    def list_sessions_by_project(self, project_path: str) -> list[SessionMetadata]:
        return self.list_sessions(ListSessionsOptions(project=project_path))

    def list_projects(self) -> list[ProjectInfo]:
        """Distinct project paths with session counts. Sessions without a project are skipped."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT project_path, COUNT(*) AS session_count
                FROM session_metadata
                WHERE project_path IS NOT NULL
                GROUP BY project_path
                ORDER BY session_count DESC, project_path
                """
            ).fetchall()
        return [
            ProjectInfo(project_path=row["project_path"], session_count=row["session_count"])
            for row in rows
        ]

    def list_sessions(self, options: Optional[ListSessionsOptions] = None) -> list[SessionMetadata]:
        """List sessions, newest first, filtered by ``options``."""
        options = options or ListSessionsOptions()
        if options.limit is not None and options.limit < 1:
            raise ValueError("limit must be a positive number")

        query = "SELECT m.* FROM session_metadata m WHERE 1=1"
        params: list = []

        if options.project is not None:
            query += " AND m.project_path = ?"
            params.append(options.project)

        if options.tagged_only:
            query += " AND EXISTS (SELECT 1 FROM session_tags t WHERE t.session_id = m.session_id)"

        query += " ORDER BY m.created_at DESC, m.session_id"

        if options.limit is not None:
            query += " LIMIT ?"
            params.append(options.limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return self._to_metadata(conn, rows)

    def get_stats(self) -> MetadataStats:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_sessions,
                    COALESCE(SUM(CASE WHEN nickname IS NOT NULL THEN 1 ELSE 0 END), 0)
                        AS sessions_with_nicknames,
                    COALESCE(SUM(CASE WHEN EXISTS (
                        SELECT 1 FROM session_tags t WHERE t.session_id = m.session_id
                    ) THEN 1 ELSE 0 END), 0) AS sessions_with_tags,
                    COALESCE(SUM(CASE WHEN project_path IS NOT NULL THEN 1 ELSE 0 END), 0)
                        AS sessions_with_projects,
                    COUNT(DISTINCT project_path) AS total_projects
                FROM session_metadata m
                """
            ).fetchone()
            total_tags = conn.execute("SELECT COUNT(DISTINCT tag) FROM session_tags").fetchone()[0]

        return MetadataStats(
            total_sessions=row["total_sessions"],
            sessions_with_nicknames=row["sessions_with_nicknames"],
            sessions_with_tags=row["sessions_with_tags"],
            sessions_with_projects=row["sessions_with_projects"],
            total_projects=row["total_projects"],
            total_tags=total_tags,
        )

    # ── Full-text search ─────────────────────────────────────────────

    def index_session_content(self, session_id: str, content: str) -> None:
        """Replace the searchable text of a session. Blank content clears it."""
        _require_text(session_id, "session_id")
        with self._transaction(write=True) as conn:
            if not self._fts_available:
                raise PersistenceError("Full-text search is not available in this SQLite build")
            conn.execute("DELETE FROM session_content_fts WHERE session_id = ?", (session_id,))
            if content and content.strip():
                conn.execute(
                    "INSERT INTO session_content_fts (session_id, content) VALUES (?, ?)",
                    (session_id, content),
                )

    def search_content(
        self,
        query: str,
        project: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SearchResult]:
        """Search indexed session text, best matches first.

        Every whitespace-separated term is matched as a prefix, so "auth"
        finds "authentication".
        """
        terms = query.replace('"', "").replace("'", "").split()
        if not terms:
            return []
        fts_query = " ".join(f'"{term}"*' for term in terms)

        sql = """
            SELECT m.*, snippet(session_content_fts, -1, '>>>', '<<<', '...', 30) AS match_snippet
            FROM session_content_fts f
            JOIN session_metadata m ON f.session_id = m.session_id
            WHERE session_content_fts MATCH ?
        """
        params: list = [fts_query]
        if project is not None:
            sql += " AND m.project_path = ?"
            params.append(project)
        sql += " ORDER BY bm25(session_content_fts)"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            if not self._fts_available:
                logger.warning("Full-text search requested but FTS5 is unavailable")
                return []
            rows = conn.execute(sql, params).fetchall()
            records = self._to_metadata(conn, rows)

        return [
            SearchResult(metadata=record, snippet=row["match_snippet"] or "")
            for record, row in zip(records, rows)
        ]

    # ── Private helpers ──────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        """Return this thread's connection, opening it (and the schema) on first use."""
        if self._closed:
            raise PersistenceError(f"Metadata store for {self.db_path} is closed")

        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn

        with self._lock:
            if self._closed:
                raise PersistenceError(f"Metadata store for {self.db_path} is closed")
            conn = self._open()
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                if not self._schema_ready:
                    self._initialize(conn)
                    self._schema_ready = True
            except sqlite3.Error as e:
                conn.close()
                raise PersistenceError(
                    f"Failed to initialize metadata database {self.db_path}: {e}"
                ) from e
            self._connections.append(conn)

        self._local.conn = conn
        return conn

    def _open(self) -> sqlite3.Connection:
        path = self.db_path
        if path.is_dir():
            raise ConfigurationError(f"Metadata database path is a directory: {path}", path)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create directory for {path}: {e}", path) from e

        try:
            conn = sqlite3.connect(
                str(path),
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise ConfigurationError(f"Cannot open metadata database {path}: {e}", path) from e

        logger.debug("Opened metadata database %s", path)
        return conn

    def _initialize(self, conn: sqlite3.Connection) -> None:
        """Create tables and indexes if they don't exist yet."""
        conn.executescript(_SCHEMA)
        try:
            conn.execute(_FTS_SCHEMA)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 unavailable, full-text search disabled: %s", e)
            self._fts_available = False
        logger.debug("Metadata schema v%d ready at %s", SCHEMA_VERSION, self.db_path)

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; sqlite3 errors become PersistenceError.

        Writes take the write lock up front (BEGIN IMMEDIATE) so read-then-write
        checks like nickname ownership can't race another writer.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        except sqlite3.Error as e:
            raise PersistenceError(f"Metadata database error: {e}") from e

        try:
            yield conn
        except sqlite3.Error as e:
            _rollback(conn)
            raise PersistenceError(f"Metadata database error: {e}") from e
        except BaseException:
            _rollback(conn)
            raise

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback(conn)
            raise PersistenceError(f"Failed to commit metadata change: {e}") from e

    def _check_nickname(self, conn: sqlite3.Connection, nickname: str, session_id: str) -> None:
        row = conn.execute(
            "SELECT session_id FROM session_metadata WHERE nickname = ?", (nickname,)
        ).fetchone()
        if row and row["session_id"] != session_id:
            raise ConflictError(nickname, row["session_id"])

    def _ensure_record(self, conn: sqlite3.Connection, session_id: str, now: str) -> None:
        conn.execute(
            "INSERT INTO session_metadata (session_id, created_at, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(session_id) DO NOTHING",
            (session_id, now, now),
        )

    def _touch(self, conn: sqlite3.Connection, session_id: str, now: str) -> None:
        conn.execute(
            "UPDATE session_metadata SET updated_at = ? WHERE session_id = ?",
            (now, session_id),
        )

    def _to_metadata(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[SessionMetadata]:
        """Build records from session_metadata rows, pulling their tags in bulk."""
        ids = [row["session_id"] for row in rows]
        tags: dict[str, set[str]] = {}
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start:start + _IN_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            for tag_row in conn.execute(
                f"SELECT session_id, tag FROM session_tags WHERE session_id IN ({placeholders})",
                chunk,
            ):
                tags.setdefault(tag_row["session_id"], set()).add(tag_row["tag"])

        return [
            SessionMetadata(
                session_id=row["session_id"],
                nickname=row["nickname"],
                tags=tags.get(row["session_id"], set()),
                project_path=row["project_path"],
                source=row["source"],
                message_count=row["message_count"] or 0,
                first_message_preview=row["first_message_preview"],
                created_at=_parse_ts(row["created_at"]),
                updated_at=_parse_ts(row["updated_at"]),
            )
            for row in rows
        ]


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def _require_text(value: str, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")


def _validate_tags(tags: Iterable[str]) -> set[str]:
    tags = set(tags or ())
    for tag in tags:
        _require_text(tag, "tag")
    return tags


def _now() -> str:
    return _format_ts(datetime.now(timezone.utc))


def _format_ts(value: datetime) -> str:
    """Store timestamps as fixed-width UTC ISO strings so they sort as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
