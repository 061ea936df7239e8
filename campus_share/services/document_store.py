import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, delete, func, inspect as sa_inspect
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from campus_share.database.connection import AsyncSessionLocal
from campus_share.database.models import COLLECTIONS
from campus_share.services.errors import TransientStoreError
from campus_share.services.live_query import ChangeFeed, Filter, LiveQuery, OrderBy, ordering_key
from campus_share.utils.time_utils import as_utc

logger = logging.getLogger(__name__)


def to_document(instance) -> dict:
    """Flatten an ORM row into a plain record with UTC-aware timestamps."""
    document = {}
    for attr in sa_inspect(instance).mapper.column_attrs:
        value = getattr(instance, attr.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        document[attr.key] = value
    return document


class DocumentStore:
    """
    Collection-addressed access to the database. Every committed write is
    published to the change feed so open live queries can update.
    """

    def __init__(self, session_factory: async_sessionmaker, feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self._write_lock = asyncio.Lock()

    @staticmethod
    def model_for(collection: str):
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}")

    @asynccontextmanager
    async def session(self):
        try:
            async with self._session_factory() as db:
                yield db
        except (OperationalError, InterfaceError) as e:
            raise TransientStoreError(str(e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError(str(e)) from e
            raise

    # --- writes ---
    # Writes hold the lock from the statement through publish, so the feed
    # sees changes in the same order the database committed them.

    async def put(self, collection: str, doc_id: str, fields: dict) -> dict:
        """Create the record, or overwrite the given fields of an existing one."""
        model = self.model_for(collection)
        async with self._write_lock:
            async with self.session() as db:
                instance = await db.get(model, doc_id)
                if instance is None:
                    instance = model(id=doc_id, **fields)
                    db.add(instance)
                else:
                    for key, value in fields.items():
                        setattr(instance, key, value)
                await db.commit()
                document = to_document(instance)
            self.feed.publish(collection, doc_id, document)
        return document

    async def put_many(self, collection: str, records: Iterable[Tuple[str, dict]]) -> List[dict]:
        """Insert several records in a single transaction."""
        model = self.model_for(collection)
        async with self._write_lock:
            async with self.session() as db:
                instances = [model(id=doc_id, **fields) for doc_id, fields in records]
                db.add_all(instances)
                await db.commit()
                documents = [to_document(instance) for instance in instances]
            for document in documents:
                self.feed.publish(collection, document["id"], document)
        return documents

    async def conditional_update(self, collection: str, doc_id: str,
                                 predicate: Sequence[Filter], fields: dict) -> bool:
        """
        Apply `fields` only if the record exists and matches `predicate` at write
        time. Runs as one UPDATE statement; False means the precondition failed.
        """
        model = self.model_for(collection)
        stmt = (
            update(model)
            .where(model.id == doc_id, *[f.clause(model) for f in predicate])
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        async with self._write_lock:
            async with self.session() as db:
                result = await db.execute(stmt)
                await db.commit()
                if result.rowcount != 1:
                    return False
                instance = await db.get(model, doc_id, populate_existing=True)
                document = to_document(instance) if instance is not None else None
            self.feed.publish(collection, doc_id, document)
        return True

    async def delete(self, collection: str, doc_id: str) -> bool:
        model = self.model_for(collection)
        async with self._write_lock:
            async with self.session() as db:
                result = await db.execute(delete(model).where(model.id == doc_id))
                await db.commit()
                deleted = result.rowcount == 1
            if deleted:
                self.feed.publish(collection, doc_id, None)
        return deleted

    async def delete_where(self, collection: str, filters: Sequence[Filter]) -> int:
        model = self.model_for(collection)
        async with self._write_lock:
            async with self.session() as db:
                ids = (await db.execute(select(model.id).where(*[f.clause(model) for f in filters]))).scalars().all()
                if ids:
                    await db.execute(delete(model).where(model.id.in_(ids)))
                    await db.commit()
            for doc_id in ids:
                self.feed.publish(collection, doc_id, None)
        return len(ids)

    # --- reads ---

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        model = self.model_for(collection)
        async with self.session() as db:
            instance = await db.get(model, doc_id)
            return to_document(instance) if instance is not None else None

    async def find(self, collection: str, filters: Sequence[Filter] = (),
                   ordering: Sequence[OrderBy] = (), limit: Optional[int] = None) -> List[dict]:
        model = self.model_for(collection)
        stmt = select(model).where(*[f.clause(model) for f in filters])
        order_clauses = [
            getattr(model, o.field).desc() if o.descending else getattr(model, o.field).asc()
            for o in ordering
        ]
        stmt = stmt.order_by(*order_clauses, model.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            documents = [to_document(row) for row in rows]
        # Database collations differ; the in-memory order is the one live queries use.
        return sorted(documents, key=ordering_key(ordering))

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        model = self.model_for(collection)
        stmt = select(func.count()).select_from(model).where(*[f.clause(model) for f in filters])
        async with self.session() as db:
            return (await db.execute(stmt)).scalar_one()

    def query(self, collection: str, filters: Sequence[Filter] = (),
              ordering: Sequence[OrderBy] = (), **options) -> LiveQuery:
        """Build a live query. Open it with `async with` (or `await live.open()`)."""
        self.model_for(collection)
        return LiveQuery(self, collection, filters, ordering, **options)


store = DocumentStore(AsyncSessionLocal)


def get_store() -> DocumentStore:
    """FastAPI dependency returning the store bound to the application engine."""
    return store
