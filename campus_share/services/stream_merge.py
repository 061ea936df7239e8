import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, Hashable, Iterable, List, Mapping, Sequence, Tuple

from campus_share.services.live_query import ChangeEvent, ChangeType, LiveQuery, OrderBy, ordering_key

logger = logging.getLogger(__name__)

NEWEST_FIRST = (OrderBy("created_at", descending=True),)


def document_id(entity: dict) -> Hashable:
    return entity["id"]


class StreamMerger:
    """
    Combines several independently ordered streams of the same kind of entity
    into one deduplicated view.

    Every update is a keyed upsert that remembers which stream supplied it.
    A removal from stream S only drops an entity whose latest value came from
    S; if another stream still holds a value for the key, that value takes
    over. Applying the same events twice leaves the same view.

    One instance per view. Nothing here is shared between views.
    """

    def __init__(self, identity: Callable[[dict], Hashable] = document_id,
                 ordering: Sequence[OrderBy] = NEWEST_FIRST):
        self._identity = identity
        self._key = ordering_key(ordering)
        self._latest: Dict[Hashable, Tuple[dict, str]] = {}
        self._by_source: Dict[str, Dict[Hashable, dict]] = defaultdict(dict)

    def upsert(self, tag: str, entity: dict):
        key = self._identity(entity)
        self._by_source[tag][key] = entity
        self._latest[key] = (entity, tag)

    def remove(self, tag: str, entity: dict):
        key = self._identity(entity)
        self._by_source[tag].pop(key, None)
        current = self._latest.get(key)
        if current is None or current[1] != tag:
            return
        for other_tag, held in self._by_source.items():
            if key in held:
                self._latest[key] = (held[key], other_tag)
                return
        del self._latest[key]

    def apply(self, tag: str, event: ChangeEvent):
        if event.type == ChangeType.REMOVED:
            self.remove(tag, event.document)
        else:
            self.upsert(tag, event.document)

    def load(self, tag: str, entities: Iterable[dict]):
        for entity in entities:
            self.upsert(tag, entity)

    def origin(self, key: Hashable):
        current = self._latest.get(key)
        return current[1] if current else None

    def view(self) -> List[dict]:
        return sorted((entity for entity, _ in self._latest.values()), key=self._key)

    def __len__(self):
        return len(self._latest)

    def __contains__(self, key: Hashable):
        return key in self._latest

    async def merge(self, streams: Mapping[str, LiveQuery]) -> AsyncIterator[List[dict]]:
        """
        Seed from each opened stream's snapshot, then yield the merged view
        after every change from any stream. Ends when every stream has ended;
        a terminal error from any stream is re-raised.
        """
        for tag, live in streams.items():
            self.load(tag, live.snapshot())
        yield self.view()

        queue: asyncio.Queue = asyncio.Queue()

        async def pump(tag: str, live: LiveQuery):
            try:
                async for event in live:
                    queue.put_nowait((tag, event))
            except Exception as e:
                queue.put_nowait((tag, e))
            finally:
                queue.put_nowait((tag, None))

        tasks = [asyncio.create_task(pump(tag, live)) for tag, live in streams.items()]
        remaining = len(tasks)
        try:
            while remaining:
                tag, item = await queue.get()
                if item is None:
                    remaining -= 1
                    continue
                if isinstance(item, Exception):
                    raise item
                self.apply(tag, item)
                yield self.view()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
