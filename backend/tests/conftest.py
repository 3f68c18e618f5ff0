"""Shared fixtures: a throwaway SQLite database per test and a local storage root."""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fileflow.database import create_schema
from fileflow.services.container import build_services
from fileflow.services.quota_ledger import QuotaLedger
from fileflow.services.storage import LocalStorageBackend


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fileflow.db'}")
    await create_schema(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def storage(tmp_path):
    root = tmp_path / "storage"
    root.mkdir()
    return LocalStorageBackend(str(root), "/api/files/download", "/api/files/upload/direct")


@pytest.fixture
def ledger(session_factory):
    return QuotaLedger(session_factory=session_factory, min_quota=100, default_quota=1000)


@pytest.fixture
def services(session_factory, storage, ledger):
    return build_services(session_factory, storage, ledger=ledger)


class RecordingSocket:
    """Stands in for a WebSocket: records everything sent, can be told to fail."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)


@pytest.fixture
def socket_factory():
    return RecordingSocket
