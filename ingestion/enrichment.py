"""
Enrichment stage: derived fields plus an optional external lookup.

Derived fields are always computed locally. The external lookup is bounded
by ENRICH_TIMEOUT_SECONDS; when it fails or times out the record keeps its
derived fields and carries a warning instead of failing the run.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import asyncio
import logging

import httpx

from core.config import settings
from core.exceptions import EnrichmentLookupError
from ingestion.schema import ENTITY_SALE
from schemas.normalized import EnrichedRecordCreate, NormalizedRecord

logger = logging.getLogger(__name__)

# Upper bounds (exclusive) of the value bands
VALUE_BANDS = (
    (100.0, "low"),
    (1000.0, "medium"),
)
TOP_BAND = "high"


def value_band(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    for upper, band in VALUE_BANDS:
        if value < upper:
            return band
    return TOP_BAND


def derive_fields(record: NormalizedRecord) -> Dict[str, Any]:
    """Locally computed enrichment; deterministic for a given record."""
    revenue = None
    if record.value is not None:
        if record.quantity is not None:
            revenue = round(record.value * record.quantity, 2)
        elif record.entity == ENTITY_SALE:
            revenue = round(record.value, 2)

    return {
        "revenue": revenue,
        "value_band": value_band(record.value),
        "period": record.occurred_at.strftime("%Y-%m") if record.occurred_at else None,
    }


# ============================================================================
# Lookup clients
# ============================================================================

class LookupClient(ABC):
    """External collaborator supplying extra attributes for a record"""

    @abstractmethod
    async def lookup(self, record: NormalizedRecord) -> Dict[str, Any]:
        pass

    async def aclose(self):
        pass


class HttpLookupClient(LookupClient):
    """
    GET {base_url}?entity=...&external_id=...&category=... returning a JSON object.

    One AsyncClient is reused for every record of a run; call aclose() when
    the run is done.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = settings.ENRICH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def lookup(self, record: NormalizedRecord) -> Dict[str, Any]:
        params = {"entity": record.entity, "external_id": record.external_id}
        if record.category:
            params["category"] = record.category

        try:
            response = await self._get_client().get(self.base_url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise EnrichmentLookupError(
                f"Lookup returned HTTP {e.response.status_code}",
                context={"external_id": record.external_id, "url": self.base_url},
                original_exception=e,
            )
        except httpx.HTTPError as e:
            raise EnrichmentLookupError(
                f"Lookup request failed: {type(e).__name__}",
                context={"external_id": record.external_id, "url": self.base_url},
                original_exception=e,
            )
        except ValueError as e:
            raise EnrichmentLookupError(
                "Lookup response is not valid JSON",
                context={"external_id": record.external_id},
                original_exception=e,
            )

        if not isinstance(data, dict):
            raise EnrichmentLookupError(
                f"Lookup response is a {type(data).__name__}, expected an object",
                context={"external_id": record.external_id},
            )
        return data

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_lookup_client() -> Optional[LookupClient]:
    """HttpLookupClient when ENRICHMENT_LOOKUP_URL is configured, else None."""
    if settings.ENRICHMENT_LOOKUP_URL:
        return HttpLookupClient(settings.ENRICHMENT_LOOKUP_URL)
    return None


# ============================================================================
# Enricher
# ============================================================================

class Enricher:
    """Turn NormalizedRecords into EnrichedRecordCreates."""

    def __init__(
        self,
        lookup_client: Optional[LookupClient] = None,
        timeout: float = settings.ENRICH_TIMEOUT_SECONDS,
    ):
        self.lookup_client = lookup_client
        self.timeout = timeout
        self.warnings = 0

    async def enrich(self, record: NormalizedRecord) -> EnrichedRecordCreate:
        derived = derive_fields(record)
        warning = None

        if self.lookup_client is not None:
            try:
                attributes = await asyncio.wait_for(self.lookup_client.lookup(record), timeout=self.timeout)
                if attributes:
                    derived["lookup"] = attributes
            except asyncio.TimeoutError:
                warning = f"lookup timed out after {self.timeout}s"
            except EnrichmentLookupError as e:
                warning = f"lookup failed: {e.message}"
            except Exception as e:
                logger.exception(f"Unexpected lookup error for {record.entity}/{record.external_id}")
                warning = f"lookup failed: {type(e).__name__}"

        if warning:
            self.warnings += 1
            logger.warning(f"Enrichment degraded for {record.entity}/{record.external_id}: {warning}")

        return EnrichedRecordCreate(
            **record.model_dump(),
            derived=derived,
            enrichment_warning=warning,
        )

    async def aclose(self):
        if self.lookup_client is not None:
            await self.lookup_client.aclose()
