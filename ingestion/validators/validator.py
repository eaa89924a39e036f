"""
Record validation for the Validating stage.

Validator.validate() classifies every raw record as Accepted or Rejected and
never raises: unexpected failures inside a rule become INTERNAL_ERROR
rejections so one bad record cannot stop a run. ValidationStats aggregates
outcomes and enforces the rejection-rate abort threshold.
"""

from typing import Any, Dict, Optional, Union
from collections import defaultdict
import json
import logging

from core.config import settings
from core.exceptions import DataQualityAbort
from ingestion.schema import normalize_row, resolve
from ingestion.validators.rules import RuleSet, rules_for
from models.base import SourceType
from schemas.normalized import Accepted, RawRecordCreate, Rejected, RejectionReason

logger = logging.getLogger(__name__)

Outcome = Union[Accepted, Rejected]


class Validator:
    """Apply the RuleSet of a source type to raw records."""

    def __init__(self, source_type: SourceType, rule_set: Optional[RuleSet] = None):
        self.source_type = SourceType(source_type)
        self.rule_set = rule_set or rules_for(self.source_type)

    def validate(self, raw: RawRecordCreate) -> Outcome:
        try:
            outcome = self._validate(raw)
        except Exception as e:
            logger.exception(f"Validator crashed on record {raw.content_hash[:12]} from source {raw.source_id}")
            outcome = self._reject(raw, RejectionReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        return outcome

    def _validate(self, raw: RawRecordCreate) -> Outcome:
        payload = raw.payload
        if payload is None or not payload.strip():
            return self._reject(raw, RejectionReason.EMPTY_PAYLOAD, "payload is empty")

        if len(payload.encode("utf-8")) > self.rule_set.max_payload_bytes:
            return self._reject(
                raw,
                RejectionReason.OUT_OF_RANGE,
                f"payload exceeds {self.rule_set.max_payload_bytes} bytes",
            )

        try:
            decoded = json.loads(payload)
        except (ValueError, TypeError) as e:
            return self._reject(raw, RejectionReason.UNPARSEABLE, str(e))

        if not isinstance(decoded, dict):
            return self._reject(raw, RejectionReason.UNPARSEABLE, f"payload is a JSON {type(decoded).__name__}, not an object")
        if not decoded:
            return self._reject(raw, RejectionReason.EMPTY_PAYLOAD, "payload has no fields")

        row = normalize_row(decoded)

        for rule in self.rule_set.rules:
            field, value = resolve(row, rule.canonical)
            if field is None:
                if rule.required:
                    return self._reject(raw, RejectionReason.MISSING_FIELD, f"missing required field '{rule.canonical}'")
                continue

            if rule.coerce is None:
                continue

            try:
                coerced = rule.coerce(value)
            except (ValueError, TypeError, OverflowError) as e:
                return self._reject(
                    raw,
                    RejectionReason.TYPE_COERCION,
                    f"field '{field}' ({rule.canonical}) = {value!r}: {e}",
                )

            violation = rule.out_of_range(coerced)
            if violation:
                return self._reject(raw, RejectionReason.OUT_OF_RANGE, violation)

        return Accepted(record=raw, row=row)

    def _reject(self, raw: RawRecordCreate, reason: RejectionReason, detail: str) -> Rejected:
        logger.warning(
            f"Rejected record {raw.content_hash[:12]} from source {raw.source_id}: "
            f"{reason.value} ({detail})"
        )
        return Rejected(record=raw, reason=reason, detail=detail)


class ValidationStats:
    """Running counts of validation outcomes for one run."""

    def __init__(self):
        self.total = 0
        self.accepted = 0
        self.rejected = 0
        self.by_reason: Dict[str, int] = defaultdict(int)

    def record(self, outcome: Outcome):
        self.total += 1
        if isinstance(outcome, Accepted):
            self.accepted += 1
        else:
            self.rejected += 1
            self.by_reason[outcome.reason.value] += 1

    @property
    def rejection_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.rejected / self.total

    def exceeds(self, threshold: float) -> bool:
        # Strictly greater: exactly at the threshold does not abort
        return self.rejection_rate > threshold

    def check_threshold(self, threshold: Optional[float] = None):
        """Raise DataQualityAbort when the rejection rate is above the threshold."""
        threshold = settings.REJECTION_ABORT_THRESHOLD if threshold is None else threshold
        if self.exceeds(threshold):
            raise DataQualityAbort(
                f"Rejection rate {self.rejection_rate:.1%} exceeds threshold {threshold:.1%} "
                f"({self.rejected}/{self.total} records rejected)",
                rejection_rate=self.rejection_rate,
                threshold=threshold,
                context={"rejections_by_reason": dict(self.by_reason)},
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "rejection_rate": round(self.rejection_rate, 4),
            "rejections_by_reason": dict(self.by_reason),
        }
