"""
Ingestion engine: writes normalized records into the local store.

Every record is its own write unit (chat upsert + message upsert in one
short transaction), so:

- re-delivered or overlapping records are absorbed by the upserts
- a failing record rolls back alone and is reported, the rest of the batch
  continues
- long backfills never hold the store for their whole duration

``IngestionLoop`` is the event-consumption side: producers ``submit()``
events from any thread, one consumer thread normalizes and ingests them.
That thread is the only user of the store writer.
"""

import logging
import queue
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from wabridge.errors import StoreWriteError
from wabridge.events import (
    ConnectionStateEvent,
    Event,
    EventNormalizer,
    HistorySyncEvent,
    MessageEvent,
)
from wabridge.models import MessageRecord, format_timestamp
from wabridge.store import StoreWriter

logger = logging.getLogger(__name__)

UPSERT_CHAT_SQL = """
    INSERT INTO chats (jid, name, last_message_time)
    VALUES (?, ?, ?)
    ON CONFLICT(jid) DO UPDATE SET
        name = CASE
            WHEN excluded.name IS NOT NULL AND excluded.name != '' THEN excluded.name
            ELSE chats.name
        END,
        last_message_time = CASE
            WHEN chats.last_message_time IS NULL
              OR excluded.last_message_time > chats.last_message_time
            THEN excluded.last_message_time
            ELSE chats.last_message_time
        END
"""

# Identity fields (timestamp, direction) are immutable; richer content wins.
UPSERT_MESSAGE_SQL = """
    INSERT INTO messages (id, chat_jid, sender, content, timestamp, is_from_me, media_type)
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id, chat_jid) DO UPDATE SET
        content = CASE WHEN excluded.content != '' THEN excluded.content ELSE messages.content END,
        sender = CASE WHEN excluded.sender != '' THEN excluded.sender ELSE messages.sender END,
        media_type = COALESCE(excluded.media_type, messages.media_type)
"""


@dataclass
class BatchResult:
    """Outcome of ingesting a batch of records."""
    ingested: int = 0
    failed: List[tuple] = field(default_factory=list)
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.ingested + len(self.failed) + self.skipped


class IngestionEngine:
    """Idempotent writer of message records into the store."""

    def __init__(self, writer: StoreWriter):
        self.writer = writer

    def ingest_message(self, record: MessageRecord) -> None:
        """
        Write one record as a single atomic unit.

        Raises:
            StoreWriteError: if the unit could not be committed; nothing
                from this record is left in the store
        """
        timestamp = format_timestamp(record.timestamp)
        try:
            with self.writer.transaction() as conn:
                conn.execute(
                    UPSERT_CHAT_SQL,
                    (record.chat_jid, record.chat_name or None, timestamp)
                )
                conn.execute(
                    UPSERT_MESSAGE_SQL,
                    (
                        record.id,
                        record.chat_jid,
                        record.sender or "",
                        record.content or "",
                        timestamp,
                        1 if record.is_from_me else 0,
                        record.media_type,
                    )
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to ingest message {record.id} in {record.chat_jid}: {e}")
            raise StoreWriteError(str(e), key=record.key) from e

    def ingest_batch(
        self,
        records: Iterable[MessageRecord],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        """
        Ingest records one write unit at a time.

        Order inside the batch does not matter. Failures are collected and
        do not stop later records. When ``should_stop`` returns True the
        remaining records are abandoned; re-delivery is idempotent.
        """
        result = BatchResult()
        records = list(records)
        for index, record in enumerate(records):
            if should_stop is not None and should_stop():
                result.skipped = len(records) - index
                logger.info(f"Stopping batch early, {result.skipped} records left for re-delivery")
                break
            try:
                self.ingest_message(record)
                result.ingested += 1
            except StoreWriteError as e:
                result.failed.append(e.key)
        return result


class IngestionLoop:
    """
    Single-consumer event loop in front of the ingestion engine.

    Usage:
        loop = IngestionLoop(engine, EventNormalizer(), session=session)
        loop.start()
        loop.submit(parse_event(payload))
        ...
        loop.stop()  # finishes the in-flight write unit, then exits
    """

    _SENTINEL = object()

    def __init__(
        self,
        engine: IngestionEngine,
        normalizer: EventNormalizer,
        session=None,
        max_queue: int = 10000,
        poll_interval_s: float = 0.5,
    ):
        self.engine = engine
        self.normalizer = normalizer
        self.session = session
        self.poll_interval_s = poll_interval_s
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.stats = {"messages": 0, "batches": 0, "failed": 0, "connection_events": 0}
        self.abandoned = 0

    def submit(self, event: Event, timeout_s: Optional[float] = None) -> None:
        """Queue an event for ingestion. Blocks while the queue is full."""
        if self._stopping.is_set():
            raise RuntimeError("Ingestion loop is stopping")
        self._queue.put(event, timeout=timeout_s)

    def handle(self, event: Event) -> None:
        """Process one event on the calling thread."""
        if isinstance(event, MessageEvent):
            record = self.normalizer.normalize_message(event)
            if record is None:
                return
            try:
                self.engine.ingest_message(record)
                self.stats["messages"] += 1
            except StoreWriteError:
                self.stats["failed"] += 1
        elif isinstance(event, HistorySyncEvent):
            records = self.normalizer.normalize_history(event)
            result = self.engine.ingest_batch(records, should_stop=self._stopping.is_set)
            self.stats["batches"] += 1
            self.stats["messages"] += result.ingested
            self.stats["failed"] += len(result.failed)
            logger.info(
                f"History batch: {result.ingested} ingested, {len(result.failed)} failed, "
                f"{result.skipped} skipped across {len(event.conversations)} conversations"
            )
        elif isinstance(event, ConnectionStateEvent):
            self.stats["connection_events"] += 1
            self.normalizer.observe_connection(event)
            if self.session is not None:
                self.session.apply(event)
            logger.info(f"Connection state: {event.state}")
        else:
            raise TypeError(f"Unhandled event variant: {type(event).__name__}")

    def run(self) -> None:
        """Consume events until stop() is called."""
        logger.info("Ingestion loop started")
        while not self._stopping.is_set():
            try:
                event = self._queue.get(timeout=self.poll_interval_s)
            except queue.Empty:
                continue
            try:
                if event is self._SENTINEL:
                    break
                self.handle(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}", exc_info=True)
            finally:
                self._queue.task_done()
        logger.info(f"Ingestion loop stopped: {self.stats}")

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="ingestion", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout_s: Optional[float] = 10.0) -> None:
        """Stop consuming; any queued but unprocessed events are abandoned."""
        self._stopping.set()
        try:
            self._queue.put_nowait(self._SENTINEL)
        except queue.Full:
            pass
        if self._thread is not None:
            self._thread.join(timeout_s)
        self._abandon_pending()

    def _abandon_pending(self) -> None:
        # Mark leftovers done so drain() returns after stop()
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            if event is not self._SENTINEL:
                self.abandoned += 1
            self._queue.task_done()
        if self.abandoned:
            logger.warning(f"Ingestion stopped with {self.abandoned} queued events unprocessed")

    def drain(self) -> None:
        """Block until every submitted event has been processed or abandoned by stop()."""
        self._queue.join()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
