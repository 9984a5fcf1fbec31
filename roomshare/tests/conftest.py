import sys
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Ensure the package root is on sys.path when pytest changes CWD to this tests dir
HERE = Path(__file__).resolve()
PKG_ROOT = HERE.parents[2]
if str(PKG_ROOT) not in sys.path:
    sys.path.insert(0, str(PKG_ROOT))

from roomshare.config import Settings  # noqa: E402
from roomshare.core import AppContext  # noqa: E402
from roomshare.errors import StorageError  # noqa: E402
from roomshare.main import create_app  # noqa: E402
from roomshare.storage import LocalBlobStore, utcnow  # noqa: E402


class FakeClock:
    """Controllable replacement for ``utcnow``"""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FlakyBlobStore(LocalBlobStore):
    """Local store whose deletes can be made to fail"""

    def __init__(self, root):
        super().__init__(root)
        self.fail_delete = False
        self.deleted = []

    async def delete(self, key):
        if self.fail_delete:
            raise StorageError('blob store unavailable')
        self.deleted.append(key)
        await super().delete(key)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'roomshare.db'}",
        create_tables=True,
        blob_dir=str(tmp_path / 'blobs'),
        reaper_interval_seconds=0,
        log_level='WARNING',
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blob_store(settings):
    return FlakyBlobStore(settings.blob_dir)


@pytest_asyncio.fixture
async def context(settings, clock, blob_store):
    ctx = AppContext(settings, clock=clock, blob_store=blob_store)
    await ctx.startup()
    yield ctx
    await ctx.shutdown()


@pytest_asyncio.fixture
async def room(context):
    return await context.registry.create_room(1)


@pytest_asyncio.fixture
async def client(context):
    app = create_app(context=context)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac
