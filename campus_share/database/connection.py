from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
import logging

from campus_share.config import DATABASE_URL
from campus_share.database.models import Base

logger = logging.getLogger(__name__)


def make_engine(url: str):
    if url.startswith("sqlite"):
        # One shared connection so an in-memory database survives across sessions.
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if ":memory:" in url else None,
        )
    return create_async_engine(url, echo=False, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
