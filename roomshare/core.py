import logging
from datetime import datetime
from typing import Callable, Optional

from prometheus_client import start_http_server
from redis.exceptions import RedisError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .attachments import AttachmentManager
from .change_feed import ChangeFeed, RedisRelay
from .config import Settings
from .models import Base
from .reaper import ExpirationReaper
from .registry import RoomRegistry
from .storage import BlobStore, create_blob_store, utcnow
from .synchronizer import CommitSequencer, ContentSynchronizer

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores REFERENCES and ON DELETE CASCADE unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_metrics(port: int = 8001):
    """Initialize Prometheus metrics server"""
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except OSError as e:
        logger.warning(f'Prometheus start failed: {e}')


class AppContext:
    """Process-wide handles (database, blob store, change feed) and the components using them.

    Created once per process, started before serving and shut down on exit. Components
    receive the context explicitly instead of importing module globals.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Callable[[], datetime]] = None,
                 blob_store: Optional[BlobStore] = None):
        self.settings = settings or Settings.from_env()
        self.clock = clock or utcnow
        self.engine = None
        self.session_factory = None
        self.blob_store = blob_store
        self.feed = ChangeFeed(self.settings.subscriber_queue_size)
        self.sequencer = CommitSequencer()
        self.registry = RoomRegistry(self)
        self.attachments = AttachmentManager(self)
        self.synchronizer = ContentSynchronizer(self)
        self.reaper = ExpirationReaper(self)
        self.started = False

    def session(self) -> AsyncSession:
        if self.session_factory is None:
            raise RuntimeError('AppContext.startup() has not been called')
        return self.session_factory()

    async def startup(self, start_reaper: bool = True):
        if self.started:
            return
        settings = self.settings
        self.engine = create_async_engine(settings.database_url, future=True, echo=False, pool_pre_ping=True)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        if settings.create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables ensured")

        if self.blob_store is None:
            self.blob_store = create_blob_store(settings)

        # Best-effort: without Redis the feed stays local to this instance
        if settings.redis_url:
            relay = RedisRelay(settings.redis_url, self.feed)
            try:
                await relay.start()
            except (RedisError, OSError) as e:
                logger.warning(f'Redis relay unavailable, change feed is local only: {e}')

        if settings.metrics_port:
            init_metrics(settings.metrics_port)

        if start_reaper and settings.reaper_interval_seconds > 0:
            self.reaper.start()

        self.started = True
        logger.info("roomshare context started")

    async def shutdown(self):
        """Gracefully shutdown all connections"""
        logger.info("Shutting down connections...")
        await self.reaper.stop()
        await self.feed.close()
        if self.blob_store is not None:
            await self.blob_store.close()
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database engine disposed")
        self.engine = None
        self.session_factory = None
        self.started = False
