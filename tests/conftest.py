"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  test_settings  → engine (temporary SQLite ledger, tables created)
                 → content_store / cache_store (tmp_path directories)
                 → mock_dispatcher (no broker)
                 → runtime (full object graph, dispatcher mocked)
                 → app_with_overrides → async_client

Environment strategy:
  - The ledger runs on aiosqlite; the same SQL runs on PostgreSQL in production.
  - Celery is never contacted: JobDispatcher is a MagicMock, and tests drive
    execution with runtime.runner.drain() (what the workers would do).
  - Fixture files are generated with Pillow, PyMuPDF and python-docx.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # HTTP stack + ledger + stores
"""

from __future__ import annotations

import io
import os
import tempfile
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any processor imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

_SCRATCH = tempfile.mkdtemp(prefix="processor-tests-")

os.environ.setdefault("DATABASE_URL",          f"sqlite+aiosqlite:///{_SCRATCH}/default.db")
os.environ.setdefault("FILES_PATH",            f"{_SCRATCH}/files")
os.environ.setdefault("CACHE_PATH",            f"{_SCRATCH}/cache")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")


OWNER_IDS = ("page-1", "page-2", "page-3")


# ─────────────────────────────────────────────────────────────────────────────
# Settings, database and stores
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at per-test directories; retries run without delay."""
    from processor.core.config import Settings

    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        files_path=str(tmp_path / "files"),
        cache_path=str(tmp_path / "cache"),
        max_upload_bytes=1024 * 1024,
        job_max_attempts=3,
        job_initial_delay_seconds=0.0,
        job_max_delay_seconds=0.0,
        job_busy_retry_seconds=0.0,
        max_queue_depth=50,
    )


@pytest_asyncio.fixture
async def engine(test_settings):
    """Temporary SQLite ledger with both tables created and owner rows seeded."""
    from processor.db.session import create_engine, create_tables

    db_engine = create_engine(test_settings.database_url, echo=False)
    await create_tables(db_engine)
    await seed_owner_entities(db_engine, *OWNER_IDS)
    yield db_engine
    await db_engine.dispose()


async def seed_owner_entities(db_engine, *owner_ids: str) -> None:
    """Insert caller-owned page rows (normally created by the application)."""
    from processor.db.session import create_session_factory, session_scope
    from processor.models.pages import PageProcessingRecord

    async with session_scope(create_session_factory(db_engine)) as session:
        session.add_all(PageProcessingRecord(id=owner_id) for owner_id in owner_ids)


@pytest.fixture
def session_factory(engine):
    from processor.db.session import create_session_factory
    return create_session_factory(engine)


@pytest.fixture
def content_store(tmp_path):
    from processor.storage.content_store import ContentStore
    store = ContentStore(tmp_path / "files")
    store.initialize()
    return store


@pytest.fixture
def cache_store(tmp_path):
    from processor.storage.cache_store import CacheStore
    store = CacheStore(tmp_path / "cache")
    store.initialize()
    return store


# ─────────────────────────────────────────────────────────────────────────────
# Ledger + runtime
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def job_queue(session_factory):
    """Ledger with the default caps and zero-delay retries."""
    from processor.services.job_queue import JobQueue, RetryPolicy
    return JobQueue(
        session_factory,
        caps={"ingest": 4, "image-optimize": 2, "text-extract": 3, "ocr-process": 1},
        policy=RetryPolicy(max_attempts=3, initial_delay=0.0, backoff_multiplier=2.0, max_delay=0.0),
    )


@pytest.fixture
def owner_records(session_factory):
    from processor.services.owner_records import OwnerRecordRepository
    return OwnerRecordRepository(session_factory)


@pytest.fixture
def mock_dispatcher():
    """Mocked JobDispatcher — records publishes without touching Celery/broker."""
    from processor.services.dispatcher import JobDispatcher
    dispatcher = MagicMock(spec=JobDispatcher)
    dispatcher.dispatch = AsyncMock(return_value=True)
    dispatcher.dispatch_many = AsyncMock(return_value=0)
    return dispatcher


@pytest.fixture
def runtime(test_settings, engine, mock_dispatcher):
    from processor.services.runtime import build_runtime

    rt = build_runtime(test_settings, engine=engine, dispatcher=mock_dispatcher, worker_id="test-worker")
    rt.initialize_storage()
    return rt


@pytest.fixture
def make_runtime(engine, mock_dispatcher, test_settings):
    """Factory for a runtime with overridden settings (e.g. OCR enabled)."""
    from processor.services.runtime import build_runtime

    def _build(**overrides):
        settings = test_settings.model_copy(update=overrides)
        rt = build_runtime(settings, engine=engine, dispatcher=mock_dispatcher, worker_id="test-worker")
        rt.initialize_storage()
        return rt

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with the runtime dependency overridden
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(runtime):
    """
    FastAPI app whose routes all resolve to the per-test runtime:
      temporary SQLite ledger, tmp_path stores, mocked dispatcher.
    """
    from processor.api.dependencies import get_app_runtime
    from processor.main import app

    app.dependency_overrides[get_app_runtime] = lambda: runtime
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app (httpx ASGITransport)."""
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

def make_image(width: int = 640, height: int = 480, fmt: str = "PNG", mode: str = "RGB", color=(200, 30, 30)) -> bytes:
    """Solid-colour image encoded with Pillow."""
    from PIL import Image

    if mode == "RGBA" and len(color) == 3:
        color = (*color, 128)
    image = Image.new(mode, (width, height), color)
    out = io.BytesIO()
    image.save(out, format=fmt)
    return out.getvalue()


def make_pdf(text: str | None = "Quarterly report: revenue grew in every region.") -> bytes:
    """One-page PDF; text=None yields a page with only vector graphics (a 'scan')."""
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    if text:
        page.insert_text((72, 72), text, fontsize=12)
    else:
        page.draw_rect(fitz.Rect(72, 72, 400, 400), color=(0, 0, 0), fill=(0.6, 0.6, 0.6))
    data = doc.tobytes()
    doc.close()
    return data


def make_docx(paragraphs: list[str], table: list[list[str]] | None = None) -> bytes:
    import docx

    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table:
        grid = document.add_table(rows=len(table), cols=len(table[0]))
        for r, row in enumerate(table):
            for c, value in enumerate(row):
                grid.cell(r, c).text = value
    out = io.BytesIO()
    document.save(out)
    return out.getvalue()


@pytest.fixture
def sample_png_bytes() -> bytes:
    return make_image(640, 480)


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    return make_pdf()


@pytest.fixture
def scanned_pdf_bytes() -> bytes:
    return make_pdf(text=None)


@pytest.fixture
def sample_docx_bytes() -> bytes:
    return make_docx(
        ["Meeting notes", "Action items follow."],
        table=[["Owner", "Task"], ["Ana", "Ship release"]],
    )


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return b"This is a test document.\r\nIt has multiple lines.\n\n\n\n\nAnd a trailing gap.   \n"


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable — rejected by the MIME family check."""
    return b"MZ\x90\x00" + b"\x00" * 100
