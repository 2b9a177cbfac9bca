"""
Local store for chats and messages.

SQLite in WAL mode, one writer and any number of readers:

- ``MessageStore.open_writer()`` hands out the single ``StoreWriter``. It
  holds an exclusive ``flock`` on ``<db>.lock`` so a second writer, in this
  process or any other, fails fast with ``WriterLockError`` instead of
  racing the compare-and-set recency updates.
- ``MessageStore.reader()`` opens a short-lived read-only connection. WAL
  gives readers a consistent snapshot while the writer commits.

Usage:
    store = MessageStore(db_path)
    with store.open_writer() as writer:
        with writer.transaction() as conn:
            conn.execute(...)

    with store.reader() as conn:
        rows = conn.execute("SELECT ...").fetchall()
"""

import fcntl
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from wabridge.errors import StoreUnavailableError, WriterLockError

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA temp_store=MEMORY;",
)

# (version, statements). Applied in order for versions above PRAGMA user_version.
MIGRATIONS: List[Tuple[int, Tuple[str, ...]]] = [
    (1, (
        """
        CREATE TABLE IF NOT EXISTS chats (
            jid TEXT PRIMARY KEY,
            name TEXT,
            last_message_time TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT NOT NULL,
            chat_jid TEXT NOT NULL,
            sender TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            timestamp TEXT NOT NULL,
            is_from_me INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (id, chat_jid),
            FOREIGN KEY (chat_jid) REFERENCES chats(jid)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_messages_chat_jid ON messages(chat_jid, timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_messages_content ON messages(content)",
        "CREATE INDEX IF NOT EXISTS idx_chats_last_message_time ON chats(last_message_time)",
    )),
    (2, (
        "ALTER TABLE messages ADD COLUMN media_type TEXT",
        "CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender)",
    )),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


def apply_migrations(conn: sqlite3.Connection) -> int:
    """
    Bring the schema up to SCHEMA_VERSION.

    Each version is applied in its own transaction together with the
    user_version bump, so a failed migration leaves the previous version
    intact.

    Returns:
        The schema version after migrating
    """
    current = conn.execute("PRAGMA user_version").fetchone()[0]
    for version, statements in MIGRATIONS:
        if version <= current:
            continue
        try:
            conn.execute("BEGIN IMMEDIATE")
            for statement in statements:
                conn.execute(statement)
            conn.execute(f"PRAGMA user_version = {version}")
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        logger.info(f"Applied store migration {version}")
        current = version
    return current


class StoreWriter:
    """
    The single write handle into the store.

    Obtain through ``MessageStore.open_writer()``; close (or use as a
    context manager) to release the writer lock.
    """

    def __init__(self, store: "MessageStore", conn: sqlite3.Connection, lock_file):
        self.store = store
        self._conn = conn
        self._lock_file = lock_file
        self._tx_lock = threading.Lock()
        self.closed = False

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run one write unit.

        Commits when the block exits cleanly, rolls back and re-raises on
        any exception.
        """
        if self.closed:
            raise sqlite3.ProgrammingError("Store writer is closed")
        with self._tx_lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._conn.close()
        finally:
            fcntl.flock(self._lock_file, fcntl.LOCK_UN)
            self._lock_file.close()
            self.store._writer_released()
            logger.info(f"Released store writer for {self.store.db_path}")

    def __enter__(self) -> "StoreWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class MessageStore:
    """SQLite-backed chat/message store with single-writer discipline."""

    def __init__(self, db_path, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path)
        self.lock_path = self.db_path.with_name(self.db_path.name + ".lock")
        self.busy_timeout_ms = busy_timeout_ms
        self._writer_guard = threading.Lock()
        self._writer: Optional[StoreWriter] = None

    def _configure(self, conn: sqlite3.Connection) -> sqlite3.Connection:
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
        return conn

    def open_writer(self) -> StoreWriter:
        """
        Acquire the writer role, creating and migrating the store as needed.

        Raises:
            WriterLockError: if a writer is already open for this store
        """
        with self._writer_guard:
            if self._writer is not None and not self._writer.closed:
                raise WriterLockError(f"Store writer already open for {self.db_path}")

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.lock_path, "a+")
            try:
                fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                lock_file.close()
                raise WriterLockError(
                    f"Another process holds the writer lock on {self.db_path}"
                ) from e

            try:
                # Autocommit mode; StoreWriter issues BEGIN/COMMIT explicitly.
                conn = sqlite3.connect(
                    self.db_path, isolation_level=None, check_same_thread=False
                )
                self._configure(conn)
                for pragma in SQLITE_PRAGMAS:
                    conn.execute(pragma)
                version = apply_migrations(conn)
            except sqlite3.Error:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
                lock_file.close()
                raise

            self._writer = StoreWriter(self, conn, lock_file)
            logger.info(f"Opened store writer for {self.db_path} (schema v{version})")
            return self._writer

    def _writer_released(self) -> None:
        with self._writer_guard:
            self._writer = None

    def initialize(self) -> None:
        """Create and migrate the store without keeping the writer open."""
        with self.open_writer():
            pass

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """
        Open a read-only connection for one query.

        Raises:
            StoreUnavailableError: if the store file is missing or unopenable
        """
        if not self.db_path.exists():
            raise StoreUnavailableError(
                f"Store not found at {self.db_path}. Start the bridge daemon to create it."
            )
        try:
            conn = sqlite3.connect(self.db_path)
            self._configure(conn)
            conn.execute("PRAGMA query_only = ON;")
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Unable to open store {self.db_path}: {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    def stats(self) -> dict:
        """Row counts, used by health checks."""
        with self.reader() as conn:
            chats = conn.execute("SELECT COUNT(*) FROM chats").fetchone()[0]
            messages = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            version = conn.execute("PRAGMA user_version").fetchone()[0]
        return {"chats": chats, "messages": messages, "schema_version": version}
