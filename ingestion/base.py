"""
Abstract base class for source extractors with incremental filtering
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, Iterator, Optional
from datetime import datetime
import asyncio
import hashlib
import itertools
import json
import logging
import time
import xml.etree.ElementTree as ET

import httpx

from core.config import settings
from core.exceptions import (
    DataFormatError,
    ETLException,
    PartialExtractionError,
    SourceConnectionError,
)
from ingestion.schema import normalize_key, normalize_row, to_datetime
from models.base import ProbeStatus
from schemas.normalized import RawRecordCreate
from schemas.source import ProbeResult, SourceConfig

logger = logging.getLogger(__name__)


def canonical_payload(row: Dict[str, Any]) -> str:
    """Canonical JSON text of a row: sorted keys, compact separators."""
    return json.dumps(row, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


async def iterate_in_thread(
    iterator_factory: Callable[[], Iterator[Dict[str, Any]]],
    batch_size: int,
) -> AsyncIterator[Dict[str, Any]]:
    """
    Drive a blocking iterator from worker threads, one batch at a time.

    Opening the iterator and pulling each batch happen off the event loop;
    the iterator is closed when the consumer stops early.
    """
    iterator = await asyncio.to_thread(iterator_factory)

    def next_batch():
        return list(itertools.islice(iterator, batch_size))

    try:
        while True:
            batch = await asyncio.to_thread(next_batch)
            if not batch:
                break
            for item in batch:
                yield item
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            await asyncio.to_thread(close)


class SourceExtractor(ABC):
    """
    Abstract base class for all source extractors.

    Responsibilities:
    - Connectivity probe (protocol-level check)
    - Streaming rows into RawRecordCreate (canonical payload + content hash)
    - Incremental filtering on the descriptor's `timestamp_field`
    - Mapping transport/parse failures onto the error taxonomy

    Subclasses implement `probe_source()` and `iter_rows()`.
    """

    def __init__(
        self,
        source: SourceConfig,
        batch_size: int = settings.ETL_BATCH_SIZE,
        timeout: float = settings.EXTRACT_TIMEOUT_SECONDS,
        probe_timeout: float = settings.PROBE_TIMEOUT_SECONDS,
    ):
        self.source = source
        self.connection: Dict[str, Any] = dict(source.connection or {})
        self.batch_size = batch_size
        self.timeout = timeout
        self.probe_timeout = probe_timeout

        timestamp_field = self.connection.get("timestamp_field")
        self.timestamp_field = normalize_key(timestamp_field) if timestamp_field else None

        self.records_emitted = 0
        self.records_skipped = 0
        self.max_timestamp_seen: Optional[datetime] = None

    @property
    def source_name(self) -> str:
        return self.source.name

    # ===== SUBCLASS HOOKS =====

    @abstractmethod
    async def probe_source(self) -> str:
        """
        Perform the protocol-level check.

        Returns:
            Short detail string on success

        Raises:
            Any exception when the source is unreachable
        """
        pass

    @abstractmethod
    def iter_rows(self, since: Optional[datetime] = None) -> AsyncIterator[Dict[str, Any]]:
        """Yield source rows as dictionaries, in source order."""
        pass

    # ===== PROBE =====

    async def probe(self) -> ProbeResult:
        """Check reachability; never raises."""
        started = time.perf_counter()
        try:
            detail = await asyncio.wait_for(self.probe_source(), timeout=self.probe_timeout)
            status = ProbeStatus.HEALTHY
        except asyncio.TimeoutError:
            detail = f"probe timed out after {self.probe_timeout}s"
            status = ProbeStatus.UNREACHABLE
        except ETLException as e:
            detail = e.message
            status = ProbeStatus.UNREACHABLE
        except Exception as e:
            detail = f"{type(e).__name__}: {e}"
            status = ProbeStatus.UNREACHABLE

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if status == ProbeStatus.HEALTHY:
            logger.info(f"Probe OK for source '{self.source_name}' ({latency_ms}ms): {detail}")
        else:
            logger.warning(f"Probe failed for source '{self.source_name}': {detail}")
        return ProbeResult(status=status, detail=detail, latency_ms=latency_ms)

    # ===== EXTRACTION =====

    async def extract(self, since: Optional[datetime] = None) -> AsyncIterator[RawRecordCreate]:
        """
        Stream RawRecordCreate objects for this source.

        Args:
            since: Only rows whose timestamp_field is after this instant are
                emitted (ignored when the source has no timestamp_field)

        Raises:
            SourceConnectionError: Source unreachable before any record
            PartialExtractionError: Stream broke after records were emitted
            DataFormatError: Payload could not be parsed
        """
        self.records_emitted = 0
        self.records_skipped = 0
        self.max_timestamp_seen = None

        iterator = self.iter_rows(since).__aiter__()
        try:
            while True:
                try:
                    row = await asyncio.wait_for(iterator.__anext__(), timeout=self.timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise self._connection_failure(f"Timed out after {self.timeout}s waiting for source", e)
                except ETLException as e:
                    raise self._upgrade(e)
                except (OSError, httpx.TransportError) as e:
                    raise self._connection_failure(f"I/O failure: {type(e).__name__}: {e}", e)
                except (ValueError, ET.ParseError) as e:
                    raise DataFormatError(
                        f"Unparseable data from source '{self.source_name}': {e}",
                        context=self._context(),
                        original_exception=e,
                    )

                row = normalize_row(row)
                if not self._passes_watermark(row, since):
                    self.records_skipped += 1
                    continue

                payload = canonical_payload(row)
                self.records_emitted += 1
                yield RawRecordCreate(
                    source_id=self.source.id,
                    payload=payload,
                    content_hash=content_hash(payload),
                    ingested_at=datetime.utcnow(),
                )
        finally:
            await iterator.aclose()

        logger.info(
            f"Extracted {self.records_emitted} record(s) from source '{self.source_name}'"
            + (f", skipped {self.records_skipped} at or before watermark" if self.records_skipped else "")
        )

    def _passes_watermark(self, row: Dict[str, Any], since: Optional[datetime]) -> bool:
        if not self.timestamp_field:
            return True
        raw_value = row.get(self.timestamp_field)
        if raw_value in (None, ""):
            return True
        try:
            timestamp = to_datetime(raw_value)
        except (ValueError, TypeError):
            # Left for the Validator to reject
            return True

        if since is not None and timestamp <= since:
            return False
        if self.max_timestamp_seen is None or timestamp > self.max_timestamp_seen:
            self.max_timestamp_seen = timestamp
        return True

    # ===== ERROR MAPPING =====

    def _context(self) -> Dict[str, Any]:
        return {
            "source_id": self.source.id,
            "source_name": self.source_name,
            "source_type": self.source.type.value if hasattr(self.source.type, "value") else self.source.type,
        }

    def _connection_failure(self, message: str, error: Exception) -> SourceConnectionError:
        if self.records_emitted:
            return PartialExtractionError(
                f"{message} after {self.records_emitted} record(s)",
                records_emitted=self.records_emitted,
                context=self._context(),
                original_exception=error,
            )
        return SourceConnectionError(message, context=self._context(), original_exception=error)

    def _upgrade(self, error: ETLException) -> ETLException:
        """Promote a connection failure raised mid-stream to PartialExtractionError."""
        if isinstance(error, SourceConnectionError) and not isinstance(error, PartialExtractionError):
            if self.records_emitted:
                return self._connection_failure(error.message, error)
        return error
