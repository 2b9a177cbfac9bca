"""
Query engine: read-only, paginated, context-aware views over the store.

All reads go through short-lived read-only connections from
``MessageStore.reader()``. Message listings are ordered by timestamp
descending with ties broken by message id ascending, so offset pagination
over an unchanging store is complete and reproducible.

Contacts are not stored; ``search_contacts`` projects them from chat rows
and message senders at query time.
"""

import logging
import sqlite3
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from wabridge.errors import StoreReadError, StoreUnavailableError, ValidationError
from wabridge.models import (
    GROUP_SUFFIX,
    JID_MARKER,
    Chat,
    Contact,
    Message,
    MessageContext,
    format_timestamp,
    is_group_jid,
    phone_from_jid,
)
from wabridge.store import MessageStore

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = """
    m.id, m.chat_jid, m.sender, m.content, m.timestamp, m.is_from_me, m.media_type,
    c.name AS chat_name
"""

MESSAGE_ORDER_DESC = "m.timestamp DESC, m.id ASC"

LAST_MESSAGE_JOIN = """
    LEFT JOIN messages lm ON lm.chat_jid = c.jid AND lm.id = (
        SELECT m2.id FROM messages m2
        WHERE m2.chat_jid = c.jid
        ORDER BY m2.timestamp DESC, m2.id ASC
        LIMIT 1
    )
"""

LAST_MESSAGE_COLUMNS = """,
    lm.id AS last_message_id, lm.sender AS last_sender, lm.content AS last_content,
    lm.timestamp AS last_timestamp, lm.is_from_me AS last_is_from_me,
    lm.media_type AS last_media_type
"""

CHAT_SORTS = {
    "last_active": "c.last_message_time IS NULL, c.last_message_time DESC, c.jid ASC",
    "name": "c.name IS NULL, LOWER(c.name) ASC, c.jid ASC",
}

TRANSIENT_ERROR_PATTERNS = ("locked", "busy")


def like_pattern(text: str) -> str:
    """Substring LIKE pattern with %, _ and \\ escaped (use ESCAPE '\\')."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def sender_clause(identifier: str, column: str = "m.sender") -> Tuple[str, list]:
    """
    SQL matching a participant identifier.

    A full JID matches exactly. A bare phone number matches that number's
    JIDs on any device (``<phone>@...`` and ``<phone>:<device>@...``).
    """
    if JID_MARKER in identifier:
        return f"{column} = ?", [identifier]
    phone = phone_from_jid(identifier)
    return (
        f"({column} = ? OR {column} LIKE ? OR {column} LIKE ?)",
        [phone, f"{phone}@%", f"{phone}:%"],
    )


class QueryEngine:
    """
    Read-side operations over the local store.

    Args:
        store: The shared MessageStore
        max_limit: Upper bound for page sizes
        max_context: Upper bound for before/after context windows
        max_search: Upper bound for contact search results
        read_retries: Extra attempts when the store reports locked/busy
        retry_delay_s: Base delay between attempts (doubles each retry)
    """

    def __init__(
        self,
        store: MessageStore,
        max_limit: int = 500,
        max_context: int = 50,
        max_search: int = 500,
        read_retries: int = 3,
        retry_delay_s: float = 0.05,
    ):
        self.store = store
        self.max_limit = max_limit
        self.max_context = max_context
        self.max_search = max_search
        self.read_retries = read_retries
        self.retry_delay_s = retry_delay_s

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _read(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run fn on a read connection with bounded retry on transient errors."""
        attempt = 0
        while True:
            try:
                with self.store.reader() as conn:
                    return fn(conn)
            except StoreUnavailableError:
                raise
            except sqlite3.OperationalError as e:
                transient = any(p in str(e).lower() for p in TRANSIENT_ERROR_PATTERNS)
                if transient and attempt < self.read_retries:
                    delay = self.retry_delay_s * (2 ** attempt)
                    attempt += 1
                    logger.warning(f"Store busy, retrying read in {delay:.2f}s ({attempt}/{self.read_retries})")
                    time.sleep(delay)
                    continue
                raise StoreReadError(f"Query failed: {e}") from e
            except sqlite3.Error as e:
                raise StoreReadError(f"Query failed: {e}") from e

    def _check_page(self, limit: int, page: int) -> None:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1 or limit > self.max_limit:
            raise ValidationError(f"Invalid limit: must be between 1 and {self.max_limit}, got {limit!r}")
        if not isinstance(page, int) or isinstance(page, bool) or page < 0:
            raise ValidationError(f"Invalid page: must be a non-negative integer, got {page!r}")

    def _check_window(self, value: int, name: str) -> None:
        if not isinstance(value, int) or isinstance(value, bool) or value < 0 or value > self.max_context:
            raise ValidationError(f"Invalid {name}: must be between 0 and {self.max_context}, got {value!r}")

    @staticmethod
    def _messages(rows: Iterable[sqlite3.Row]) -> List[Message]:
        return [Message.from_row(dict(row)) for row in rows]

    @staticmethod
    def _chat_select(include_last_message: bool) -> str:
        if include_last_message:
            return (
                f"SELECT c.jid, c.name, c.last_message_time {LAST_MESSAGE_COLUMNS} "
                f"FROM chats c {LAST_MESSAGE_JOIN}"
            )
        return "SELECT c.jid, c.name, c.last_message_time FROM chats c"

    # ------------------------------------------------------------------
    # Context windows
    # ------------------------------------------------------------------

    def _context(
        self,
        conn: sqlite3.Connection,
        anchor: Message,
        before: int,
        after: int,
    ) -> MessageContext:
        """Surround an anchor with up to `before` earlier and `after` later messages."""
        anchor_ts = format_timestamp(anchor.timestamp)
        earlier: List[Message] = []
        later: List[Message] = []

        if before > 0:
            rows = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m JOIN chats c ON c.jid = m.chat_jid
                WHERE m.chat_jid = ? AND m.timestamp < ?
                ORDER BY m.timestamp DESC, m.id DESC
                LIMIT ?
                """,
                (anchor.chat_jid, anchor_ts, before)
            ).fetchall()
            earlier = list(reversed(self._messages(rows)))

        if after > 0:
            rows = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m JOIN chats c ON c.jid = m.chat_jid
                WHERE m.chat_jid = ? AND m.timestamp > ?
                ORDER BY m.timestamp ASC, m.id ASC
                LIMIT ?
                """,
                (anchor.chat_jid, anchor_ts, after)
            ).fetchall()
            later = self._messages(rows)

        return MessageContext(message=anchor, before=earlier, after=later)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def search_contacts(self, query: str, limit: int = 50) -> List[Contact]:
        """
        Find contacts whose name or phone number contains the query.

        Candidates are individual chats plus every distinct sender seen in
        messages. They are merged by phone number; when one number carries
        several names the most recently active one wins. Results are
        sorted by name, then phone number.
        """
        needle = (query or "").strip().lower()
        if not needle:
            raise ValidationError("Invalid query: cannot be empty")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1 or limit > self.max_search:
            raise ValidationError(f"Invalid limit: must be between 1 and {self.max_search}, got {limit!r}")

        def run(conn: sqlite3.Connection) -> List[sqlite3.Row]:
            return conn.execute(
                f"""
                SELECT c.jid AS jid, c.name AS name, c.last_message_time AS last_active
                FROM chats c
                WHERE c.jid NOT LIKE '%{GROUP_SUFFIX}'
                UNION ALL
                SELECT s.sender AS jid, c.name AS name,
                       COALESCE(c.last_message_time, s.last_seen) AS last_active
                FROM (
                    SELECT sender, MAX(timestamp) AS last_seen
                    FROM messages
                    WHERE sender != '' AND is_from_me = 0
                    GROUP BY sender
                ) s
                LEFT JOIN chats c ON c.jid = s.sender
                """
            ).fetchall()

        rows = self._read(run)

        merged: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            jid = row["jid"]
            phone = phone_from_jid(jid)
            if not phone or is_group_jid(jid):
                continue
            entry = merged.setdefault(phone, {"names": [], "jids": []})
            last_active = row["last_active"] or ""
            entry["jids"].append((last_active, jid))
            if row["name"]:
                entry["names"].append((last_active, row["name"]))

        contacts = []
        for phone, entry in merged.items():
            names = entry["names"]
            matches = needle in phone.lower() or any(needle in n.lower() for _, n in names)
            if not matches:
                continue
            # Most recent first; name/jid text breaks ties deterministically
            names.sort(key=lambda item: (item[0], item[1]), reverse=True)
            jids = sorted(entry["jids"], key=lambda item: (item[0], item[1]), reverse=True)
            contacts.append(Contact(
                phone_number=phone,
                name=names[0][1] if names else None,
                jid=jids[0][1],
            ))

        contacts.sort(key=lambda c: ((c.name or "").lower(), c.phone_number))
        return contacts[:limit]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def list_messages(
        self,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        sender: Optional[str] = None,
        chat_jid: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = 20,
        page: int = 0,
        include_context: bool = False,
        context_before: int = 1,
        context_after: int = 1,
    ) -> List[MessageContext]:
        """
        List messages matching every given filter, newest first.

        Args:
            after: Inclusive lower time bound
            before: Inclusive upper time bound
            sender: Sender JID, or bare phone number for any of its devices
            chat_jid: Exact chat key
            query: Case-insensitive substring of the content
            limit: Page size
            page: Zero-based page index; page 0 is the most recent window
            include_context: Attach surrounding messages to every result
            context_before: Earlier messages per result when include_context
            context_after: Later messages per result when include_context

        Returns:
            One MessageContext per matching message. Context messages do
            not count against the page size.
        """
        self._check_page(limit, page)
        if include_context:
            self._check_window(context_before, "context_before")
            self._check_window(context_after, "context_after")

        where = []
        params: list = []
        if after is not None:
            where.append("m.timestamp >= ?")
            params.append(format_timestamp(after))
        if before is not None:
            where.append("m.timestamp <= ?")
            params.append(format_timestamp(before))
        if sender:
            clause, clause_params = sender_clause(sender)
            where.append(clause)
            params.extend(clause_params)
        if chat_jid:
            where.append("m.chat_jid = ?")
            params.append(chat_jid)
        if query:
            where.append("m.content LIKE ? ESCAPE '\\'")
            params.append(like_pattern(query))

        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages m JOIN chats c ON c.jid = m.chat_jid"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY {MESSAGE_ORDER_DESC} LIMIT ? OFFSET ?"
        params.extend([limit, page * limit])

        def run(conn: sqlite3.Connection) -> List[MessageContext]:
            messages = self._messages(conn.execute(sql, params).fetchall())
            if not include_context:
                return [MessageContext(message=m) for m in messages]
            return [
                self._context(conn, m, context_before, context_after)
                for m in messages
            ]

        return self._read(run)

    def get_message_context(
        self,
        message_id: str,
        chat_jid: str,
        before: int = 5,
        after: int = 5,
    ) -> Optional[MessageContext]:
        """
        Fetch a message with up to `before` earlier and `after` later
        messages from the same chat, both lists oldest-to-newest.

        Returns None if the message does not exist.
        """
        self._check_window(before, "before")
        self._check_window(after, "after")

        def run(conn: sqlite3.Connection) -> Optional[MessageContext]:
            row = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m JOIN chats c ON c.jid = m.chat_jid
                WHERE m.id = ? AND m.chat_jid = ?
                """,
                (message_id, chat_jid)
            ).fetchone()
            if row is None:
                return None
            return self._context(conn, Message.from_row(dict(row)), before, after)

        return self._read(run)

    def get_last_interaction(self, jid: str) -> Optional[Message]:
        """Most recent message sent by, or exchanged in a chat with, a contact."""
        clause, params = sender_clause(jid)
        chat_clause, chat_params = sender_clause(jid, column="m.chat_jid")

        def run(conn: sqlite3.Connection) -> Optional[Message]:
            row = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages m JOIN chats c ON c.jid = m.chat_jid
                WHERE {clause} OR {chat_clause}
                ORDER BY {MESSAGE_ORDER_DESC}
                LIMIT 1
                """,
                params + chat_params
            ).fetchone()
            return Message.from_row(dict(row)) if row else None

        return self._read(run)

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def list_chats(
        self,
        query: Optional[str] = None,
        limit: int = 20,
        page: int = 0,
        include_last_message: bool = True,
        sort_by: str = "last_active",
    ) -> List[Chat]:
        """
        List chats, optionally filtered by a name/JID substring.

        Args:
            sort_by: "last_active" (most recent first) or "name"
        """
        self._check_page(limit, page)
        if sort_by not in CHAT_SORTS:
            raise ValidationError(f"Invalid sort_by: must be one of {list(CHAT_SORTS)}, got {sort_by!r}")

        sql = self._chat_select(include_last_message)
        params: list = []
        if query:
            pattern = like_pattern(query.lower())
            sql += " WHERE (LOWER(COALESCE(c.name, '')) LIKE ? ESCAPE '\\' OR LOWER(c.jid) LIKE ? ESCAPE '\\')"
            params.extend([pattern, pattern])
        sql += f" ORDER BY {CHAT_SORTS[sort_by]} LIMIT ? OFFSET ?"
        params.extend([limit, page * limit])

        def run(conn: sqlite3.Connection) -> List[Chat]:
            return [Chat.from_row(dict(row)) for row in conn.execute(sql, params).fetchall()]

        return self._read(run)

    def get_chat(self, chat_jid: str, include_last_message: bool = True) -> Optional[Chat]:
        """Single chat lookup; a missing chat is None, not an error."""
        sql = self._chat_select(include_last_message) + " WHERE c.jid = ?"

        def run(conn: sqlite3.Connection) -> Optional[Chat]:
            row = conn.execute(sql, (chat_jid,)).fetchone()
            return Chat.from_row(dict(row)) if row else None

        return self._read(run)

    def get_direct_chat_by_contact(self, phone: str) -> Optional[Chat]:
        """Find the one-to-one chat for a phone number."""
        digits = phone_from_jid(phone)
        if not digits:
            raise ValidationError("Invalid phone number: cannot be empty")
        sql = (
            self._chat_select(True)
            + f" WHERE (c.jid LIKE ? OR c.jid LIKE ?) AND c.jid NOT LIKE '%{GROUP_SUFFIX}'"
            + f" ORDER BY {CHAT_SORTS['last_active']} LIMIT 1"
        )

        def run(conn: sqlite3.Connection) -> Optional[Chat]:
            row = conn.execute(sql, (f"{digits}@%", f"{digits}:%")).fetchone()
            return Chat.from_row(dict(row)) if row else None

        return self._read(run)

    def get_contact_chats(self, jid: str, limit: int = 20, page: int = 0) -> List[Chat]:
        """Chats the contact takes part in, as chat key or as a sender."""
        self._check_page(limit, page)
        clause, params = sender_clause(jid)
        chat_clause, chat_params = sender_clause(jid, column="c.jid")
        sql = (
            self._chat_select(True)
            + f" WHERE {chat_clause} OR c.jid IN (SELECT DISTINCT m.chat_jid FROM messages m WHERE {clause})"
            + f" ORDER BY {CHAT_SORTS['last_active']} LIMIT ? OFFSET ?"
        )

        def run(conn: sqlite3.Connection) -> List[Chat]:
            rows = conn.execute(sql, chat_params + params + [limit, page * limit]).fetchall()
            return [Chat.from_row(dict(row)) for row in rows]

        return self._read(run)

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def resolve_sender_names(self, senders: Iterable[str]) -> Dict[str, str]:
        """
        Map sender identifiers to display names.

        Exact chat JID first, then any individual chat with the same phone
        number; unresolved senders map to themselves.
        """
        wanted = sorted({s for s in senders if s})
        if not wanted:
            return {}

        def run(conn: sqlite3.Connection) -> Dict[str, str]:
            names = {}
            for sender in wanted:
                row = conn.execute(
                    "SELECT name FROM chats WHERE jid = ? AND name IS NOT NULL AND name != ''",
                    (sender,)
                ).fetchone()
                if row is None:
                    phone = phone_from_jid(sender)
                    row = conn.execute(
                        f"""
                        SELECT name FROM chats
                        WHERE (jid LIKE ? OR jid LIKE ?) AND jid NOT LIKE '%{GROUP_SUFFIX}'
                          AND name IS NOT NULL AND name != ''
                        ORDER BY last_message_time IS NULL, last_message_time DESC, jid ASC
                        LIMIT 1
                        """,
                        (f"{phone}@%", f"{phone}:%")
                    ).fetchone()
                names[sender] = row["name"] if row else sender
            return names

        return self._read(run)
