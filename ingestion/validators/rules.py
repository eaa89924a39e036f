"""
Declarative validation rules per source type.

A RuleSet is a list of FieldRules over canonical fields. Each rule resolves
its field through the shared alias tables, so the Validator and the
Transformer always agree on which source field feeds a canonical one.
"""

from pydantic import BaseModel
from typing import Any, Callable, Dict, Optional, Tuple
from datetime import datetime
from models.base import SourceType
from ingestion.schema import to_datetime, to_float, to_int, to_text


class FieldRule(BaseModel):
    """Constraint on one canonical field"""
    canonical: str
    required: bool = False
    coerce: Optional[Callable[[Any], Any]] = None
    min_value: Optional[Any] = None
    max_value: Optional[Any] = None

    class Config:
        frozen = True
        arbitrary_types_allowed = True

    def out_of_range(self, value: Any) -> Optional[str]:
        """Describe the violated bound, or None when the value is in range."""
        if self.min_value is not None and value < self.min_value:
            return f"{self.canonical}={value} is below {self.min_value}"
        if self.max_value is not None and value > self.max_value:
            return f"{self.canonical}={value} is above {self.max_value}"
        return None


class RuleSet(BaseModel):
    """Rules applied to every record of one source type"""
    source_type: SourceType
    rules: Tuple[FieldRule, ...]
    max_payload_bytes: int = 1_000_000

    class Config:
        frozen = True


# ===== SHARED RULES =====

IDENTITY = FieldRule(canonical="external_id", required=True, coerce=to_text)
VALUE = FieldRule(canonical="value", coerce=to_float, min_value=0.0, max_value=1e12)
QUANTITY = FieldRule(canonical="quantity", coerce=to_int, min_value=0, max_value=10_000_000)
OCCURRED_AT = FieldRule(
    canonical="occurred_at",
    coerce=to_datetime,
    min_value=datetime(1970, 1, 1),
    max_value=datetime(2100, 1, 1),
)
NAME = FieldRule(canonical="name", coerce=to_text)
CATEGORY = FieldRule(canonical="category", coerce=to_text)

TRANSACTIONAL_RULES = (IDENTITY, VALUE, QUANTITY, OCCURRED_AT, CATEGORY)

# Catalog feeds (XML product files) carry names and categories but rarely dates
CATALOG_RULES = (IDENTITY, NAME, CATEGORY, VALUE, QUANTITY)


RULES: Dict[SourceType, RuleSet] = {
    SourceType.JSON: RuleSet(source_type=SourceType.JSON, rules=TRANSACTIONAL_RULES),
    SourceType.CSV: RuleSet(source_type=SourceType.CSV, rules=TRANSACTIONAL_RULES),
    SourceType.XML: RuleSet(source_type=SourceType.XML, rules=CATALOG_RULES),
    SourceType.API: RuleSet(source_type=SourceType.API, rules=TRANSACTIONAL_RULES),
    SourceType.DATABASE: RuleSet(
        source_type=SourceType.DATABASE,
        rules=TRANSACTIONAL_RULES,
        max_payload_bytes=5_000_000,
    ),
    SourceType.FTP: RuleSet(source_type=SourceType.FTP, rules=TRANSACTIONAL_RULES),
}


def rules_for(source_type: SourceType) -> RuleSet:
    return RULES[SourceType(source_type)]
