import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Optional, Sequence

from campus_share import config
from campus_share.services.errors import TransientStoreError
from campus_share.utils.time_utils import as_utc

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, document: dict) -> bool:
        current = document.get(self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            # SQL never matches NULL with !=, keep the in-memory check identical.
            return current is not None and current != self.value
        if self.op == "in":
            return current in self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")

    def clause(self, model):
        column = getattr(model, self.field)
        if self.op == "==":
            return column.is_(None) if self.value is None else column == self.value
        if self.op == "!=":
            return column != self.value
        if self.op == "in":
            return column.in_(list(self.value))
        raise ValueError(f"Unsupported filter operator: {self.op}")


def where(field: str, op: str, value: Any) -> Filter:
    return Filter(field, op, value)


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class ChangeEvent:
    type: ChangeType
    document: dict
    old_index: int = -1
    new_index: int = -1

    @property
    def id(self) -> str:
        return self.document["id"]


def matches_all(filters: Sequence[Filter], document: dict) -> bool:
    return all(f.matches(document) for f in filters)


def _compare_values(a, b) -> int:
    # None sorts before everything else.
    if a is None or b is None:
        return (a is not None) - (b is not None)
    if isinstance(a, datetime) and isinstance(b, datetime):
        a, b = as_utc(a), as_utc(b)
    return (a > b) - (a < b)


def ordering_key(ordering: Sequence[OrderBy]):
    """Sort key for documents: the requested keys, then id ascending."""

    def compare(left: dict, right: dict) -> int:
        for order in ordering:
            result = _compare_values(left.get(order.field), right.get(order.field))
            if result:
                return -result if order.descending else result
        return _compare_values(left.get("id"), right.get("id"))

    return cmp_to_key(compare)


class ChangeFeed:
    """
    In-process publisher of committed writes. The document store publishes
    every change after its transaction commits; live queries listen per
    collection. Dispatch is synchronous so listeners see changes in commit order.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[str, Optional[dict]], None]]] = defaultdict(list)

    def listen(self, collection: str, callback: Callable[[str, Optional[dict]], None]) -> Callable[[], None]:
        self._listeners[collection].append(callback)

        def remove():
            listeners = self._listeners.get(collection, [])
            if callback in listeners:
                listeners.remove(callback)

        return remove

    def listener_count(self, collection: str) -> int:
        return len(self._listeners.get(collection, []))

    def publish(self, collection: str, doc_id: str, document: Optional[dict]):
        for callback in list(self._listeners.get(collection, [])):
            try:
                callback(doc_id, document)
            except Exception:
                logger.exception("Live query listener failed on %s/%s", collection, doc_id)


_CLOSED = object()


class LiveQuery:
    """
    A filtered, ordered subscription to one collection.

    Use as an async context manager; the initial snapshot is available from
    snapshot() once entered, and iterating yields ChangeEvent items until
    unsubscribe() is called or the query fails terminally.
    """

    def __init__(self, store, collection: str, filters: Sequence[Filter] = (),
                 ordering: Sequence[OrderBy] = (), retry_attempts: Optional[int] = None,
                 retry_base_delay: Optional[float] = None, resync_seconds: Optional[float] = None):
        self._store = store
        self.collection = collection
        self.filters = tuple(filters)
        self.ordering = tuple(ordering)
        self._key = ordering_key(self.ordering)
        self._retry_attempts = retry_attempts if retry_attempts is not None else config.LIVE_QUERY_RETRY_ATTEMPTS
        self._retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else config.LIVE_QUERY_RETRY_BASE_DELAY
        )
        self._resync_seconds = resync_seconds if resync_seconds is not None else config.LIVE_QUERY_RESYNC_SECONDS

        self._docs: Dict[str, dict] = {}
        self._order: List[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Optional[list] = None
        self._remove_listener: Optional[Callable[[], None]] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._opened = False
        self._closed = False
        self._error: Optional[Exception] = None
        self.stale = False

    # --- lifecycle ---

    async def open(self) -> "LiveQuery":
        if self._opened or self._closed:
            return self
        self._opened = True
        # Listen before reading so writes committed during the read are not lost.
        self._remove_listener = self._store.feed.listen(self.collection, self._on_change)
        self._pending = []
        try:
            documents = await self._read_with_retry()
        except BaseException:
            self.unsubscribe()
            raise
        self._load(documents)
        pending, self._pending = self._pending, None
        for doc_id, document in pending:
            self._apply(doc_id, document, emit=False)

        if self._resync_seconds > 0:
            self._resync_task = asyncio.create_task(self._resync_loop())
        logger.debug("Live query opened on %s with %d documents", self.collection, len(self._order))
        return self

    def unsubscribe(self):
        """Stop delivery and release the listener. Safe to call repeatedly and mid-delivery."""
        if self._closed:
            return
        self._closed = True
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._resync_task is not None and self._resync_task is not asyncio.current_task():
            self._resync_task.cancel()
        self._resync_task = None
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "LiveQuery":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        self.unsubscribe()

    # --- reading ---

    def snapshot(self) -> List[dict]:
        return [self._docs[doc_id] for doc_id in self._order]

    def __len__(self):
        return len(self._order)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if not self._closed:
            item = await self._queue.get()
            if item is not _CLOSED and not self._closed:
                return item
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    # --- change handling ---

    def _on_change(self, doc_id: str, document: Optional[dict]):
        if self._closed:
            return
        if self._pending is not None:
            self._pending.append((doc_id, document))
            return
        self._apply(doc_id, document)

    def _load(self, documents: List[dict]):
        self._docs = {doc["id"]: doc for doc in documents}
        self._order = [doc["id"] for doc in sorted(self._docs.values(), key=self._key)]

    def _position(self, doc_id: str) -> int:
        return self._order.index(doc_id)

    def _insert(self, document: dict) -> int:
        self._docs[document["id"]] = document
        self._order.append(document["id"])
        self._order.sort(key=lambda i: self._key(self._docs[i]))
        return self._position(document["id"])

    def _apply(self, doc_id: str, document: Optional[dict], emit: bool = True):
        present = doc_id in self._docs
        member = document is not None and matches_all(self.filters, document)

        if present and not member:
            old_index = self._position(doc_id)
            self._order.pop(old_index)
            previous = self._docs.pop(doc_id)
            event = ChangeEvent(ChangeType.REMOVED, previous, old_index, -1)
        elif member and not present:
            new_index = self._insert(document)
            event = ChangeEvent(ChangeType.ADDED, document, -1, new_index)
        elif member and present:
            if self._docs[doc_id] == document:
                return
            old_index = self._position(doc_id)
            self._order.pop(old_index)
            new_index = self._insert(document)
            event = ChangeEvent(ChangeType.MODIFIED, document, old_index, new_index)
        else:
            return

        if emit and not self._closed:
            self._queue.put_nowait(event)

    # --- resumption ---

    async def _read_with_retry(self) -> List[dict]:
        attempt = 0
        while True:
            try:
                documents = await self._store.find(self.collection, self.filters, self.ordering)
                if self.stale:
                    logger.info("Live query on %s resumed after %d attempt(s)", self.collection, attempt)
                self.stale = False
                return documents
            except TransientStoreError as e:
                attempt += 1
                self.stale = True
                if attempt >= self._retry_attempts:
                    logger.error("Live query on %s gave up after %d attempts: %s", self.collection, attempt, e)
                    raise
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning("Live query on %s lost the store (%s), retrying in %.1fs", self.collection, e, delay)
                await asyncio.sleep(delay)

    async def resync(self):
        """
        Re-read the query and emit the difference against the current view.
        Raises TransientStoreError once retries are exhausted, or whatever else
        the read raised; the query is then terminated and iteration raises the
        same error.
        """
        if self._closed:
            return
        self._pending = []
        try:
            documents = await self._read_with_retry()
        except Exception as e:
            self._fail(e)
            raise
        finally:
            pending, self._pending = self._pending, None
        fresh = {doc["id"]: doc for doc in documents}
        for doc_id in list(self._order):
            if doc_id not in fresh:
                self._apply(doc_id, None)
        for document in sorted(fresh.values(), key=self._key):
            self._apply(document["id"], document)
        for doc_id, document in pending:
            self._apply(doc_id, document)

    async def _resync_loop(self):
        while not self._closed:
            await asyncio.sleep(self._resync_seconds)
            try:
                await self.resync()
            except TransientStoreError:
                return
            except Exception:
                logger.exception("Live query on %s failed to resync", self.collection)
                return

    def _fail(self, error: Exception):
        if self._closed:
            return
        self._error = error
        self.unsubscribe()
