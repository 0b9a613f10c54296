"""Tests for field mapping, filtering and the per-record PII pass."""

import pytest

from datapipe.core.errors import BadRequestError, PIIConfigurationError
from datapipe.models.enums import FilterOperator, PIIType, RecordFormat
from datapipe.schemas.processing import FilterCondition, build_processing_config
from datapipe.services.pii import PIIDetector
from datapipe.services.transformer import (
    RecordTransformer,
    apply_field_mappings,
    matches_condition,
    passes_filters,
    transform_record,
)


def _cond(field: str, op: str, value=None) -> FilterCondition:
    return FilterCondition(field=field, operator=FilterOperator(op), value=value)


def _config(**kwargs):
    return build_processing_config(output_format=RecordFormat.JSONL, **kwargs)


# ── Field mapping ───────────────────────────────────────────────────────────


def test_mapping_renames_and_passes_through_unmapped() -> None:
    record = {"full_name": "Ann", "mail": "a@b.io", "age": 3}
    assert apply_field_mappings(record, {"name": "full_name", "email": "mail"}) == {
        "name": "Ann",
        "email": "a@b.io",
        "age": 3,
    }


def test_mapping_with_missing_source_field() -> None:
    assert apply_field_mappings({"a": 1}, {"b": "missing"}) == {"a": 1}


def test_empty_mapping_copies_record() -> None:
    record = {"a": 1}
    mapped = apply_field_mappings(record, {})
    assert mapped == record
    assert mapped is not record


# ── Filtering ───────────────────────────────────────────────────────────────


def test_filter_and_semantics() -> None:
    conditions = [_cond("age", "gte", 18), _cond("country", "eq", "US")]
    assert not passes_filters({"age": 17, "country": "US"}, conditions)
    assert passes_filters({"age": 25, "country": "US"}, conditions)
    assert not passes_filters({"age": 25, "country": "CA"}, conditions)


def test_no_conditions_keeps_everything() -> None:
    assert passes_filters({"anything": 1}, [])


@pytest.mark.parametrize(
    ("op", "value", "expected"),
    [
        ("gt", 10, True),
        ("gt", 11, False),
        ("gte", 11, True),
        ("lt", 12, True),
        ("lte", 10, False),
        ("ne", 11, False),
        ("eq", 11, True),
    ],
)
def test_numeric_operators(op: str, value, expected: bool) -> None:
    assert matches_condition({"n": 11}, _cond("n", op, value)) is expected


def test_numeric_operator_fails_closed_on_strings() -> None:
    # CSV values arrive as strings; ordering comparisons do not coerce them
    assert not matches_condition({"n": "11"}, _cond("n", "gt", 1))
    assert not matches_condition({}, _cond("n", "lt", 1))
    assert not matches_condition({"n": True}, _cond("n", "gt", 0))


def test_eq_does_not_confuse_bool_and_number() -> None:
    assert not matches_condition({"flag": True}, _cond("flag", "eq", 1))
    assert matches_condition({"flag": True}, _cond("flag", "eq", True))
    assert matches_condition({"flag": 1}, _cond("flag", "ne", True))


def test_contains_operators() -> None:
    record = {"email": "jane@example.com", "n": 5}
    assert matches_condition(record, _cond("email", "contains", "example"))
    assert not matches_condition(record, _cond("email", "not_contains", "example"))
    assert matches_condition(record, _cond("email", "not_contains", "corp"))
    assert not matches_condition(record, _cond("n", "contains", "5"))


# ── Transformer ─────────────────────────────────────────────────────────────


def test_filtered_record_skips_pii_pass(detector: PIIDetector, entity_extractor) -> None:
    config = _config(filter_config={"rules": [{"field": "keep", "operator": "eq", "value": True}]})
    result = RecordTransformer(config, detector).transform({"keep": False, "name": "Jane Doe"})
    assert result.filtered
    assert result.record is None
    assert entity_extractor.calls == 0


def test_redacts_string_fields_and_counts_fields(detector: PIIDetector) -> None:
    config = _config(pii_config={"enabledTypes": ["email", "person_name"]})
    result = RecordTransformer(config, detector).transform(
        {"name": "Jane Doe", "email": "jane@example.com", "age": 40}
    )
    assert result.record == {"name": "[PERSON_NAME]", "email": "[EMAIL]", "age": 40}
    assert result.pii_fields == 2


def test_detection_only_leaves_values(detector: PIIDetector) -> None:
    config = _config(job_options={"enablePiiRedaction": False})
    result = RecordTransformer(config, detector).transform({"email": "jane@example.com"})
    assert result.record == {"email": "jane@example.com"}
    assert result.pii_fields == 1


def test_pii_disabled(detector: PIIDetector) -> None:
    config = _config(job_options={"enablePiiDetection": False, "enablePiiRedaction": False})
    result = RecordTransformer(config, detector).transform({"email": "jane@example.com"})
    assert result.record == {"email": "jane@example.com"}
    assert result.pii_fields == 0


def test_redaction_labels_from_job_options(detector: PIIDetector) -> None:
    config = _config(job_options={"redactionLabels": {"email": "<email>"}})
    record = transform_record({"email": "write to jane@example.com"}, config, detector)
    assert record == {"email": "write to <email>"}


def test_mapping_applies_before_filters(detector: PIIDetector) -> None:
    config = _config(
        mapping_config={"country": "cc"},
        filter_config={"rules": [{"field": "country", "operator": "eq", "value": "US"}]},
    )
    assert transform_record({"cc": "US"}, config, detector) == {"country": "US"}
    assert transform_record({"cc": "FR"}, config, detector) is None


# ── Config validation ───────────────────────────────────────────────────────


def test_unsupported_strategy_is_rejected() -> None:
    with pytest.raises(PIIConfigurationError, match="pseudonymize"):
        _config(pii_config={"strategies": {"email": "pseudonymize"}})


def test_invalid_custom_regex_is_rejected() -> None:
    with pytest.raises(PIIConfigurationError):
        _config(pii_config={"customPatterns": [{"name": "bad", "pattern": "("}]})


def test_invalid_filter_rule() -> None:
    with pytest.raises(BadRequestError):
        _config(filter_config={"rules": [{"field": "a", "operator": "between"}]})


def test_batch_size_falls_back_to_default() -> None:
    assert _config(default_batch_size=7).batch_size == 7
    assert _config(job_options={"batchSize": 3}, default_batch_size=7).batch_size == 3


def test_enabled_types_flow_into_detection_options() -> None:
    options = _config(pii_config={"enabledTypes": ["email"]}).detection_options()
    assert options.enabled_types == frozenset({PIIType.EMAIL})
