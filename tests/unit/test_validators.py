"""
Unit tests for record validation
"""

import pytest
from conftest import make_raw
from core.exceptions import DataQualityAbort
from ingestion.validators.rules import FieldRule, RuleSet, rules_for
from ingestion.validators.validator import ValidationStats, Validator
from ingestion.schema import to_float
from models.base import SourceType
from schemas.normalized import Accepted, Rejected, RejectionReason


class TestValidator:
    """Test rule application per source type"""

    def setup_method(self):
        self.validator = Validator(SourceType.JSON)

    def test_accepts_valid_sale(self):
        raw = make_raw({"id": "V-1", "cliente": "ACME", "precio": "10.5", "cantidad": "2", "fecha": "2024-01-01"})

        outcome = self.validator.validate(raw)

        assert isinstance(outcome, Accepted)
        assert outcome.record == raw
        assert outcome.row["cliente"] == "ACME"

    def test_header_case_is_normalized(self):
        outcome = self.validator.validate(make_raw({"ID": "V-1", "Precio": "3"}))

        assert isinstance(outcome, Accepted)
        assert "precio" in outcome.row

    @pytest.mark.parametrize("payload", ["", "   "])
    def test_rejects_empty_payload(self, payload):
        outcome = self.validator.validate(make_raw(payload))

        assert isinstance(outcome, Rejected)
        assert outcome.reason == RejectionReason.EMPTY_PAYLOAD

    def test_rejects_empty_object(self):
        outcome = self.validator.validate(make_raw("{}"))
        assert outcome.reason == RejectionReason.EMPTY_PAYLOAD

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]", "42"])
    def test_rejects_unparseable_payload(self, payload):
        outcome = self.validator.validate(make_raw(payload))

        assert isinstance(outcome, Rejected)
        assert outcome.reason == RejectionReason.UNPARSEABLE

    def test_rejects_missing_identity(self):
        outcome = self.validator.validate(make_raw({"cliente": "ACME", "precio": "10"}))

        assert outcome.reason == RejectionReason.MISSING_FIELD
        assert "external_id" in outcome.detail

    def test_blank_identity_counts_as_missing(self):
        outcome = self.validator.validate(make_raw({"id": "  ", "precio": "10"}))
        assert outcome.reason == RejectionReason.MISSING_FIELD

    def test_rejects_non_numeric_value(self):
        outcome = self.validator.validate(make_raw({"id": "V-1", "precio": "diez"}))

        assert outcome.reason == RejectionReason.TYPE_COERCION
        assert "precio" in outcome.detail

    def test_rejects_fractional_quantity(self):
        outcome = self.validator.validate(make_raw({"id": "V-1", "cantidad": "1.5"}))
        assert outcome.reason == RejectionReason.TYPE_COERCION

    def test_rejects_bad_date(self):
        outcome = self.validator.validate(make_raw({"id": "V-1", "fecha": "31/31/2024"}))
        assert outcome.reason == RejectionReason.TYPE_COERCION

    def test_rejects_negative_value(self):
        outcome = self.validator.validate(make_raw({"id": "V-1", "precio": "-5"}))
        assert outcome.reason == RejectionReason.OUT_OF_RANGE

    def test_rejects_oversized_payload(self):
        validator = Validator(SourceType.JSON, RuleSet(
            source_type=SourceType.JSON,
            rules=rules_for(SourceType.JSON).rules,
            max_payload_bytes=32,
        ))

        outcome = validator.validate(make_raw({"id": "V-1", "notes": "x" * 100}))

        assert outcome.reason == RejectionReason.OUT_OF_RANGE

    def test_rule_crash_becomes_internal_error(self):
        def explode(value):
            raise RuntimeError("boom")

        validator = Validator(SourceType.JSON, RuleSet(
            source_type=SourceType.JSON,
            rules=(FieldRule(canonical="external_id", required=True, coerce=explode),),
        ))

        outcome = validator.validate(make_raw({"id": "V-1"}))

        assert isinstance(outcome, Rejected)
        assert outcome.reason == RejectionReason.INTERNAL_ERROR
        assert "RuntimeError" in outcome.detail

    def test_catalog_rules_do_not_require_dates(self):
        outcome = Validator(SourceType.XML).validate(make_raw({"codigo": "P-1", "nombre": "Widget"}))
        assert isinstance(outcome, Accepted)

    def test_same_input_same_outcome(self):
        raw = make_raw({"id": "V-1", "precio": "abc"})
        assert self.validator.validate(raw) == self.validator.validate(raw)


class TestValidationStats:
    """Test rejection accounting and the abort threshold"""

    def _stats(self, accepted: int, rejected: int) -> ValidationStats:
        validator = Validator(SourceType.JSON)
        stats = ValidationStats()
        for i in range(accepted):
            stats.record(validator.validate(make_raw({"id": f"ok-{i}"})))
        for i in range(rejected):
            stats.record(validator.validate(make_raw({"precio": str(i)})))
        return stats

    def test_counts_by_reason(self):
        stats = self._stats(accepted=9, rejected=1)

        assert stats.total == 10
        assert stats.rejected == 1
        assert stats.rejection_rate == pytest.approx(0.1)
        assert stats.to_dict()["rejections_by_reason"] == {"missing_field": 1}

    def test_exactly_at_threshold_does_not_abort(self):
        stats = self._stats(accepted=5, rejected=5)
        stats.check_threshold(0.5)

    def test_above_threshold_aborts(self):
        stats = self._stats(accepted=4, rejected=6)

        with pytest.raises(DataQualityAbort) as exc_info:
            stats.check_threshold(0.5)

        assert exc_info.value.rejection_rate == pytest.approx(0.6)
        assert exc_info.value.threshold == 0.5

    def test_empty_run_never_aborts(self):
        ValidationStats().check_threshold(0.01)


def test_field_rule_bounds():
    rule = FieldRule(canonical="value", coerce=to_float, min_value=0.0, max_value=10.0)

    assert rule.out_of_range(5.0) is None
    assert "below" in rule.out_of_range(-1.0)
    assert "above" in rule.out_of_range(11.0)
