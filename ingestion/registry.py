"""
Source registry: read access for the pipeline, mutations for the admin API.

The pipeline only ever reads sources (SourceRegistry). Creating, editing and
deactivating sources belongs to the administrative surface (SourceAdmin),
which is the only writer of the data_sources table.
"""

from typing import List, Optional
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import PersistenceError, SourceNotFoundError
from models.base import SourceType
from models.source import DataSource
from schemas.source import ProbeResult, SourceConfig, SourceCreate, SourceUpdate
import logging

logger = logging.getLogger(__name__)

ALL_SOURCES = "all"


class SourceRegistry:
    """Read-only view of configured sources"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def list(
        self,
        active_only: bool = True,
        source_type: Optional[SourceType] = None,
    ) -> List[SourceConfig]:
        query = select(DataSource).order_by(DataSource.id)
        if active_only:
            query = query.where(DataSource.active.is_(True))
        if source_type is not None:
            query = query.where(DataSource.type == source_type)
        result = await self.db.execute(query)
        return [SourceConfig.model_validate(source) for source in result.scalars().all()]

    async def _get_model(self, source_id: int) -> DataSource:
        source = await self.db.get(DataSource, source_id)
        if source is None:
            raise SourceNotFoundError(f"Source {source_id} not found", context={"source_id": source_id})
        return source

    async def get(self, source_id: int) -> SourceConfig:
        return SourceConfig.model_validate(await self._get_model(source_id))

    async def resolve_scope(self, scope: Optional[str]) -> List[SourceConfig]:
        """
        Sources covered by a run scope.

        "all" (or empty) means every active source; otherwise the scope is a
        source id. Naming an inactive source is treated as not found.
        """
        normalized = normalize_scope(scope)
        if normalized == ALL_SOURCES:
            return await self.list(active_only=True)

        source = await self.get(int(normalized))
        if not source.active:
            raise SourceNotFoundError(
                f"Source {source.id} is inactive",
                context={"source_id": source.id, "scope": normalized},
            )
        return [source]


class SourceAdmin(SourceRegistry):
    """Administrative mutations of the source catalog"""

    async def _commit(self, operation: str, context: dict):
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise PersistenceError(
                f"Source {operation} violates a constraint (duplicate name?)",
                context={"operation": operation, "table_name": DataSource.__tablename__, **context},
                original_exception=e,
            )

    async def create(self, payload: SourceCreate) -> SourceConfig:
        source = DataSource(**payload.model_dump())
        self.db.add(source)
        await self._commit("create", {"name": payload.name})
        await self.db.refresh(source)
        logger.info(f"Registered source {source.id} '{source.name}' ({source.type.value})")
        return SourceConfig.model_validate(source)

    async def update(self, source_id: int, payload: SourceUpdate) -> SourceConfig:
        source = await self._get_model(source_id)
        for field, value in payload.model_dump(exclude_unset=True).items():
            setattr(source, field, value)
        source.updated_at = datetime.utcnow()
        await self._commit("update", {"source_id": source_id})
        await self.db.refresh(source)
        logger.info(f"Updated source {source_id}")
        return SourceConfig.model_validate(source)

    async def deactivate(self, source_id: int) -> SourceConfig:
        source = await self._get_model(source_id)
        source.active = False
        source.updated_at = datetime.utcnow()
        await self._commit("deactivate", {"source_id": source_id})
        await self.db.refresh(source)
        logger.info(f"Deactivated source {source_id}")
        return SourceConfig.model_validate(source)

    async def record_probe(self, source_id: int, result: ProbeResult) -> SourceConfig:
        source = await self._get_model(source_id)
        source.last_probe_status = result.status
        source.last_probe_at = result.checked_at
        source.last_probe_detail = result.detail[:1000]
        await self._commit("record_probe", {"source_id": source_id})
        await self.db.refresh(source)
        return SourceConfig.model_validate(source)


def normalize_scope(scope: Optional[str]) -> str:
    """
    Canonical scope string: "all" or a source id.

    Raises:
        SourceNotFoundError: scope is neither "all" nor an integer id
    """
    if scope is None:
        return ALL_SOURCES
    value = str(scope).strip().lower()
    if not value or value == ALL_SOURCES:
        return ALL_SOURCES
    if not value.isdigit():
        raise SourceNotFoundError(f"Unknown source scope '{scope}'", context={"scope": scope})
    return str(int(value))
