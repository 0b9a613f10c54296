"""Record transformer: field mapping → filtering → PII pass, one record at a time."""

from __future__ import annotations

from numbers import Real
from typing import Any, NamedTuple

from datapipe.models.enums import FilterOperator
from datapipe.schemas.processing import FilterCondition, ProcessingConfig
from datapipe.services.pii import PIIDetector, apply_redactions, get_detector

Record = dict[str, Any]


class TransformResult(NamedTuple):
    """``record`` is None when the record was filtered out."""

    record: Record | None
    pii_fields: int = 0

    @property
    def filtered(self) -> bool:
        return self.record is None


# ── Field mapping ────────────────────────────────────────────────────────────


def apply_field_mappings(record: Record, mappings: dict[str, str]) -> Record:
    """Rename ``source → target`` for each ``{target: source}`` entry.

    Fields that are not the source of any mapping pass through unchanged;
    mapped sources are not re-emitted under their old name.
    """
    if not mappings:
        return dict(record)

    result: Record = {}
    for new_field, old_field in mappings.items():
        if old_field in record:
            result[new_field] = record[old_field]

    sources = set(mappings.values())
    for key, value in record.items():
        if key not in sources:
            result[key] = value
    return result


# ── Filtering ────────────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _equals(left: Any, right: Any) -> bool:
    # bools only equal bools; 1 == True must not pass
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def matches_condition(record: Record, condition: FilterCondition) -> bool:
    """Evaluate one condition. Type mismatches fail closed."""
    value = record.get(condition.field)
    op = condition.operator

    if op is FilterOperator.EQ:
        return _equals(value, condition.value)
    if op is FilterOperator.NE:
        return not _equals(value, condition.value)

    if op in (FilterOperator.CONTAINS, FilterOperator.NOT_CONTAINS):
        if not isinstance(value, str) or condition.value is None:
            return False
        found = str(condition.value) in value
        return found if op is FilterOperator.CONTAINS else not found

    if not _is_number(value):
        return False
    threshold = _as_number(condition.value)
    if threshold is None:
        return False
    if op is FilterOperator.GT:
        return value > threshold
    if op is FilterOperator.GTE:
        return value >= threshold
    if op is FilterOperator.LT:
        return value < threshold
    return value <= threshold


def passes_filters(record: Record, conditions: list[FilterCondition]) -> bool:
    """Logical AND over every condition."""
    return all(matches_condition(record, condition) for condition in conditions)


# ── Transformer ──────────────────────────────────────────────────────────────


class RecordTransformer:
    """Applies one job's configuration to records.

    Detection and redaction options are compiled once per job; the
    transformer holds no other state.
    """

    def __init__(self, config: ProcessingConfig, detector: PIIDetector | None = None) -> None:
        self.config = config
        self.detector = detector or get_detector()
        self._detection = config.detection_options()
        self._redaction = config.redaction_options()
        self._pii_enabled = config.enable_pii_detection or config.enable_pii_redaction

    def transform(self, record: Record) -> TransformResult:
        output = apply_field_mappings(record, self.config.field_mappings)

        if not passes_filters(output, self.config.filter_conditions):
            return TransformResult(None)

        pii_fields = 0
        if self._pii_enabled:
            for key, value in list(output.items()):
                if not isinstance(value, str):
                    continue
                detection = self.detector.detect(value, self._detection)
                if not detection.has_pii:
                    continue
                pii_fields += 1
                if self.config.enable_pii_redaction:
                    output[key] = apply_redactions(value, detection.matches, self._redaction)

        return TransformResult(output, pii_fields)


def transform_record(
    record: Record,
    config: ProcessingConfig,
    detector: PIIDetector | None = None,
) -> Record | None:
    """One-shot helper: the transformed record, or None if filtered out."""
    return RecordTransformer(config, detector).transform(record).record
