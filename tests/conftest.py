"""
Pytest configuration and fixtures
"""

import os

# Settings are read at import time; point them at SQLite before anything loads core.config
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./etl_test_app.db")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from core.database import build_session_factory, init_models
from core.exceptions import SourceConnectionError
from ingestion.base import SourceExtractor, canonical_payload
from ingestion.coordinator import RunCoordinator
from ingestion.enrichment import Enricher
from ingestion.extractors.factory import build_extractor
from ingestion.registry import SourceAdmin
from models.base import SourceType
from schemas.normalized import RawRecordCreate
from schemas.source import SourceConfig, SourceCreate


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a throwaway SQLite database per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'etl_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def create_source(session_factory):
    """Register a source through the admin API and return its SourceConfig"""

    async def _create(name: str, type: SourceType = SourceType.JSON, format: str = "json", **connection) -> SourceConfig:
        async with session_factory() as session:
            return await SourceAdmin(session).create(
                SourceCreate(name=name, type=type, format=format, connection=connection)
            )

    return _create


@pytest.fixture
def coordinator(session_factory):
    """Coordinator wired to the test database, with no retry delay"""
    return RunCoordinator(
        session_factory,
        extractor_factory=build_extractor,
        enricher_factory=Enricher,
        batch_size=25,
        max_retries=2,
        retry_backoff=0,
        rejection_threshold=0.5,
    )


# ============================================================================
# Sample data
# ============================================================================

def write_json(path, rows: List[Dict[str, Any]]) -> str:
    path.write_text(json.dumps(rows), encoding="utf-8")
    return str(path)


def make_raw(row: Any, source_id: int = 1, ingested_at: Optional[datetime] = None) -> RawRecordCreate:
    """RawRecordCreate for a row dict (canonicalized) or a literal payload string"""
    payload = row if isinstance(row, str) else canonical_payload(row)
    return RawRecordCreate(
        source_id=source_id,
        payload=payload,
        content_hash=hashlib.sha256(payload.encode("utf-8")).hexdigest(),
        ingested_at=ingested_at or datetime(2024, 1, 15, 12, 0, 0),
    )


@pytest.fixture
def sales_rows():
    """Sales rows as the branch systems export them (Spanish field names)"""
    return [
        {"id": "V-001", "cliente": "ACME", "producto": "P-10", "precio": "120.50", "cantidad": "2", "fecha": "2024-01-10T09:00:00"},
        {"id": "V-002", "cliente": "Globex", "producto": "P-11", "precio": "15", "cantidad": "1", "fecha": "2024-01-11T10:30:00"},
        {"id": "V-003", "cliente": "Initech", "producto": "P-10", "precio": "980", "cantidad": "3", "fecha": "2024-01-12T17:45:00"},
    ]


@pytest.fixture
def sales_file(tmp_path, sales_rows):
    return write_json(tmp_path / "ventas.json", sales_rows)


@pytest.fixture
def catalog_xml(tmp_path):
    path = tmp_path / "catalogo.xml"
    path.write_text(
        """<?xml version="1.0" encoding="UTF-8"?>
<catalogo>
  <producto codigo="P-10">
    <nombre>Widget</nombre>
    <categoria>Hardware</categoria>
    <precio>60.25</precio>
    <stock>40</stock>
  </producto>
  <producto codigo="P-11">
    <nombre>Gadget</nombre>
    <categoria>Hardware</categoria>
    <precio>15</precio>
    <stock>0</stock>
  </producto>
</catalogo>
""",
        encoding="utf-8",
    )
    return str(path)


# ============================================================================
# Stub extractor
# ============================================================================

class StubExtractor(SourceExtractor):
    """
    In-memory extractor driven by a shared plan:
        rows: rows to yield
        failures: number of leading attempts that raise SourceConnectionError
        gate: asyncio.Event awaited before the first row
    """

    plan: Dict[str, Any] = {}

    async def probe_source(self) -> str:
        return "stub"

    async def iter_rows(self, since=None):
        self.plan["calls"] = self.plan.get("calls", 0) + 1
        if self.plan["calls"] <= self.plan.get("failures", 0):
            raise SourceConnectionError("connection reset by peer")
        gate = self.plan.get("gate")
        if gate is not None:
            await gate.wait()
        for row in self.plan.get("rows", []):
            yield row


@pytest.fixture
def stub_plan():
    return {"rows": [], "failures": 0, "gate": None, "calls": 0}


@pytest.fixture
def stub_factory(stub_plan):
    def _factory(source, **kwargs):
        extractor = StubExtractor(source, **kwargs)
        extractor.plan = stub_plan
        return extractor

    return _factory
