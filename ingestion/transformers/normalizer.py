"""
Transform accepted records into the canonical marketing schema
"""

from typing import Dict, Any, Optional
from core.exceptions import SchemaMismatchError, TransformationError
from ingestion.schema import (
    DEFAULT_CATEGORIES,
    ENTITY_PRODUCT,
    ENTITY_RECORD,
    ENTITY_SALE,
    is_blank,
    mapped_source_fields,
    resolve,
    to_datetime,
    to_float,
    to_int,
    to_text,
)
from models.base import SourceType
from schemas.normalized import Accepted, NormalizedRecord
import logging

logger = logging.getLogger(__name__)


class Normalizer:
    """
    Map accepted records into NormalizedRecord.

    Handles:
    - Alias resolution (English and Spanish field names)
    - Type conversion
    - Entity inference and default categories
    - Carrying unmapped fields in `extra`

    Pure: the same Accepted record always yields the same NormalizedRecord.
    """

    def __init__(self, source_type: SourceType, entity: Optional[str] = None):
        self.source_type = SourceType(source_type)
        self.entity = entity

    def transform(self, accepted: Accepted) -> NormalizedRecord:
        raw = accepted.record
        row = accepted.row

        id_field, external_id = resolve(row, "external_id")
        if id_field is None:
            raise SchemaMismatchError(
                "No identity field maps to external_id",
                context={
                    "source_id": raw.source_id,
                    "raw_content_hash": raw.content_hash,
                    "available_fields": sorted(row.keys()),
                },
            )

        try:
            customer = self._text(row, "customer")
            product = self._text(row, "product")
            name = self._text(row, "name")
            entity = self.entity or self._infer_entity(customer, product, name)

            return NormalizedRecord(
                source_id=raw.source_id,
                raw_record_id=raw.id,
                content_hash=raw.content_hash,
                ingested_at=raw.ingested_at,
                external_id=to_text(external_id),
                entity=entity,
                category=self._text(row, "category") or DEFAULT_CATEGORIES.get(entity, DEFAULT_CATEGORIES[ENTITY_RECORD]),
                value=self._convert(row, "value", to_float),
                quantity=self._convert(row, "quantity", to_int),
                customer=customer,
                product=product,
                name=name,
                occurred_at=self._convert(row, "occurred_at", to_datetime),
                extra=self._extra(row),
            )
        except (ValueError, TypeError) as e:
            raise TransformationError(
                f"Failed to map record to canonical schema: {e}",
                context={"source_id": raw.source_id, "raw_content_hash": raw.content_hash},
                original_exception=e,
            )

    @staticmethod
    def _infer_entity(customer: Optional[str], product: Optional[str], name: Optional[str]) -> str:
        if customer:
            return ENTITY_SALE
        if name or product:
            return ENTITY_PRODUCT
        return ENTITY_RECORD

    @staticmethod
    def _text(row: Dict[str, Any], canonical: str) -> Optional[str]:
        _, value = resolve(row, canonical)
        return None if value is None else to_text(value)

    @staticmethod
    def _convert(row: Dict[str, Any], canonical: str, converter) -> Any:
        _, value = resolve(row, canonical)
        return None if value is None else converter(value)

    @staticmethod
    def _extra(row: Dict[str, Any]) -> Dict[str, Any]:
        consumed = mapped_source_fields(row)
        return {
            key: value for key, value in sorted(row.items())
            if key not in consumed and not is_blank(value)
        }


def transform(accepted: Accepted, source_type: SourceType = SourceType.JSON) -> NormalizedRecord:
    """Module-level shortcut for one-off transforms."""
    return Normalizer(source_type).transform(accepted)
