"""
Relational database extractor using SQLAlchemy async streaming
"""

from typing import Any, AsyncIterator, Dict, Optional
from datetime import datetime
import logging

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from core.exceptions import DataFormatError, ResourceNotFoundError, SourceConnectionError
from ingestion.base import SourceExtractor

logger = logging.getLogger(__name__)


class DatabaseExtractor(SourceExtractor):
    """
    Stream rows from a query against an external database.

    Connection descriptor:
        url: Async SQLAlchemy URL, e.g. postgresql+asyncpg://... (required)
        query: SELECT statement (required); may reference :since
        params: Extra bind parameters (optional)

    When the query contains `:since`, incremental runs bind the watermark
    there (NULL on full runs, so write `(:since IS NULL OR updated_at > :since)`).
    """

    def _url(self) -> str:
        url = self.connection.get("url")
        if not url:
            raise ResourceNotFoundError(
                f"Source '{self.source_name}' has no 'url' in its connection descriptor",
                context=self._context(),
            )
        return url

    def _engine(self) -> AsyncEngine:
        return create_async_engine(self._url(), poolclass=NullPool)

    async def probe_source(self) -> str:
        engine = self._engine()
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise SourceConnectionError(
                f"Database unreachable: {type(e).__name__}",
                context=self._context(),
                original_exception=e,
            )
        finally:
            await engine.dispose()
        return f"SELECT 1 OK on {engine.url.render_as_string(hide_password=True)}"

    async def iter_rows(self, since: Optional[datetime] = None) -> AsyncIterator[Dict[str, Any]]:
        query = self.connection.get("query")
        if not query:
            raise DataFormatError(
                f"Source '{self.source_name}' has no 'query' in its connection descriptor",
                context=self._context(),
            )

        params: Dict[str, Any] = dict(self.connection.get("params") or {})
        if ":since" in query:
            params["since"] = since

        engine = self._engine()
        try:
            async with engine.connect() as conn:
                result = await conn.stream(text(query), params)
                logger.info(f"Streaming query results for source '{self.source_name}'")
                async for partition in result.mappings().partitions(self.batch_size):
                    for row in partition:
                        yield dict(row)
        except (OperationalError, InterfaceError) as e:
            raise SourceConnectionError(
                f"Database connection failed: {type(e).__name__}",
                context=self._context(),
                original_exception=e,
            )
        except SQLAlchemyError as e:
            raise DataFormatError(
                f"Query failed: {e}",
                context=self._context(),
                original_exception=e,
            )
        finally:
            await engine.dispose()
