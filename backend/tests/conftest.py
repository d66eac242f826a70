"""
Inkwell Backend: Test Configuration (conftest.py)
=================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Real async SQLAlchemy against a file-backed SQLite database per
       test (aiosqlite), with in-memory stand-ins for the two external
       collaborators: the blob store and the OCR dispatcher.

Why file-backed SQLite:
    Concurrency tests open several connections at once; each must see
    the same database, which an in-memory SQLite URL does not give.

Fixture Hierarchy (all function-scoped):
    engine ── session_factory ──┐
    blob_store                  ├── lifecycle
    dispatcher ── dispatch_pool ┘
    test_app ── test_client
"""

import asyncio
import os
import tempfile
from datetime import datetime
from typing import Dict, List, Optional, Set
from uuid import uuid4

# Override settings BEFORE any inkwell import; config is read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.mkdtemp(prefix="inkwell_db_"), "default.db"
)
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="inkwell_storage_")
os.environ["OCR_CALLBACK_TOKEN"] = "test-worker-token"
os.environ["OCR_WORKER_URL"] = "http://ocr-worker.test"
os.environ["RECONCILIATION_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from inkwell.database import Base, build_session_factory
from inkwell.models.asset import Asset  # noqa: F401
from inkwell.schemas.asset import ExtractionJob
from inkwell.services.asset_lifecycle import AssetLifecycle
from inkwell.services.blob_store import BlobStore
from inkwell.services.dispatch_pool import OcrDispatchPool
from inkwell.services.ocr_dispatcher import OcrDispatcher
from inkwell.services.upload_policy import UploadPolicy

WORKER_TOKEN = "test-worker-token"


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════

class FakeBlobStore(BlobStore):
    """In-memory blob store that records deletions."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_deletes_for: Set[str] = set()

    async def put(self, key: str, content: bytes) -> None:
        self.blobs[key] = content

    async def exists(self, key: str) -> bool:
        return key in self.blobs

    async def delete(self, key: str) -> None:
        if key in self.fail_deletes_for:
            raise OSError(f"simulated delete failure for {key}")
        self.blobs.pop(key, None)
        self.deleted.append(key)


class RecordingDispatcher(OcrDispatcher):
    """
    Records every job it accepts.

    Set `error` to make every dispatch raise it, or `gate` to hold
    dispatches until the event is set.
    """

    def __init__(self):
        self.jobs: List[ExtractionJob] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def dispatch(self, job: ExtractionJob) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.jobs.append(job)

    async def health_check(self) -> bool:
        return True


# ══════════════════════════════════════════════════════════════════════════
# Database Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file with the schema created."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assets.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


# ══════════════════════════════════════════════════════════════════════════
# Service Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def dispatch_pool(dispatcher):
    pool = OcrDispatchPool(dispatcher, workers=2, capacity=100)
    await pool.start()
    yield pool
    await pool.stop()


@pytest.fixture
def lifecycle(session_factory, blob_store, dispatch_pool):
    return AssetLifecycle(
        session_factory=session_factory,
        blob_store=blob_store,
        dispatch_pool=dispatch_pool,
        upload_policy=UploadPolicy(),
    )


@pytest.fixture
def owner_id():
    return uuid4()


@pytest.fixture
def note_id():
    return uuid4()


@pytest.fixture
def upload_intent(lifecycle, blob_store, owner_id, note_id):
    """
    Factory: create an intent and (by default) upload its blob.

    Usage:
        intent = await upload_intent()
        intent = await upload_intent(uploaded=False, now=created_at)
    """

    async def _create(
        file_name: str = "lecture notes.pdf",
        mime_type: str = "application/pdf",
        file_size: int = 2048,
        uploaded: bool = True,
        now: Optional[datetime] = None,
    ):
        intent = await lifecycle.create_upload_intent(
            owner_id=owner_id,
            note_id=note_id,
            file_name=file_name,
            mime_type=mime_type,
            file_size=file_size,
            now=now,
        )
        if uploaded:
            await blob_store.put(intent.storage_key, b"%PDF-1.7 test")
        return intent

    return _create


# ══════════════════════════════════════════════════════════════════════════
# HTTP Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_app(session_factory, blob_store, dispatcher):
    """
    The FastAPI app wired to the test database and doubles.

    ASGITransport does not run the lifespan, so the dispatch pool is
    started here.
    """
    from inkwell.main import create_app

    app = create_app(
        session_factory=session_factory,
        blob_store=blob_store,
        dispatcher=dispatcher,
        callback_token=WORKER_TOKEN,
        reconciliation_enabled=False,
    )
    await app.state.dispatch_pool.start()
    yield app
    await app.state.dispatch_pool.stop()


@pytest_asyncio.fixture
async def test_client(test_app):
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
