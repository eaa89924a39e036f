"""
Canonical marketing schema: field alias tables and safe coercion helpers.

Both the Validator (required fields, coercion checks) and the Transformer
(mapping into NormalizedRecord) resolve source fields through the same
alias tables, so a record that validates always maps.
"""

from datetime import datetime, date
from typing import Any, Dict, Optional, Sequence, Tuple
import math

# Canonical field -> accepted source field names, in priority order.
# Spanish names come from the branch/legacy marketing systems.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "external_id": ("id", "external_id", "record_id", "codigo", "sku", "guid"),
    "category": ("category", "categoria", "type", "tipo"),
    "value": ("value", "valor", "price", "precio", "amount", "monto", "cost", "costo"),
    "quantity": ("quantity", "cantidad", "qty", "stock", "units"),
    "customer": ("customer", "cliente", "client"),
    "product": ("product", "producto", "product_id"),
    "name": ("name", "nombre", "title", "product_name"),
    "occurred_at": ("occurred_at", "date", "fecha", "created_at", "timestamp", "updated_at"),
}

# Entities the Transformer can infer
ENTITY_SALE = "sale"
ENTITY_PRODUCT = "product"
ENTITY_RECORD = "record"

DEFAULT_CATEGORIES = {
    ENTITY_SALE: "SALES",
    ENTITY_PRODUCT: "CATALOG",
    ENTITY_RECORD: "UNCATEGORIZED",
}


def normalize_key(key: Any) -> str:
    """Lowercase, trimmed, spaces to underscores (same as CSV header normalization)."""
    return str(key).strip().lower().replace(" ", "_")


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {normalize_key(k): v for k, v in row.items()}


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def resolve(row: Dict[str, Any], canonical: str) -> Tuple[Optional[str], Any]:
    """
    Find the first non-blank alias of a canonical field.

    Returns:
        (source field name, value) or (None, None) when no alias is present
    """
    return resolve_aliases(row, FIELD_ALIASES[canonical])


def resolve_aliases(row: Dict[str, Any], aliases: Sequence[str]) -> Tuple[Optional[str], Any]:
    for alias in aliases:
        value = row.get(alias)
        if not is_blank(value):
            return alias, value
    return None, None


def mapped_source_fields(row: Dict[str, Any]) -> set:
    """Source field names consumed by the canonical mapping."""
    consumed = set()
    for canonical in FIELD_ALIASES:
        field, _ = resolve(row, canonical)
        if field:
            consumed.add(field)
    return consumed


# ============================================================================
# Coercion helpers (raise ValueError/TypeError on failure)
# ============================================================================

def to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    if isinstance(value, str):
        value = value.strip()
    result = float(value)
    if math.isnan(result) or math.isinf(result):
        raise ValueError(f"not a finite number: {value!r}")
    return result


def to_int(value: Any) -> int:
    number = to_float(value)
    if not number.is_integer():
        raise ValueError(f"not an integer: {value!r}")
    return int(number)


def to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return _to_naive_utc(value) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    return _to_naive_utc(parsed) if parsed.tzinfo else parsed


def _to_naive_utc(value: datetime) -> datetime:
    offset = value.utcoffset()
    return (value - offset).replace(tzinfo=None) if offset is not None else value.replace(tzinfo=None)


def to_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()
