"""Tests for PII detection, overlap resolution and redaction."""

import pytest

from datapipe.core.errors import PIIConfigurationError
from datapipe.models.enums import PIIType
from datapipe.services.pii import (
    CustomPattern,
    DetectionOptions,
    PIIDetector,
    PIIMatch,
    RedactionOptions,
    SpacyEntityExtractor,
    apply_redactions,
    deduplicate_matches,
)


def _types(result) -> list[PIIType]:
    return [m.type for m in result.matches]


# ── Regex detectors ─────────────────────────────────────────────────────────


def test_detects_email(detector: PIIDetector) -> None:
    result = detector.detect("contact: jane@example.com")
    assert result.has_pii
    assert _types(result) == [PIIType.EMAIL]
    match = result.matches[0]
    assert (match.value, match.start, match.end, match.confidence) == (
        "jane@example.com", 9, 25, 0.95,
    )
    assert result.redacted_text == "contact: [EMAIL]"


def test_detects_ip_and_url(detector: PIIDetector) -> None:
    result = detector.detect("from 192.168.0.1 via https://example.com/path?q=1")
    assert _types(result) == [PIIType.IP_ADDRESS, PIIType.URL]
    assert result.redacted_text == "from [IP_ADDRESS] via [URL]"


def test_ssn(detector: PIIDetector) -> None:
    result = detector.detect("ssn 123-45-6789")
    assert _types(result) == [PIIType.SSN]


def test_credit_card(detector: PIIDetector) -> None:
    result = detector.detect("card 4111 1111 1111 1111 exp")
    assert PIIType.CREDIT_CARD in _types(result)
    assert "4111" not in result.redacted_text


def test_date_of_birth(detector: PIIDetector) -> None:
    result = detector.detect("born 07/04/1985")
    assert _types(result) == [PIIType.DATE_OF_BIRTH]


def test_no_pii(detector: PIIDetector) -> None:
    result = detector.detect("nothing to see here")
    assert not result.has_pii
    assert result.matches == []
    assert result.redacted_text == "nothing to see here"


def test_non_ascii_digits_are_not_matched(detector: PIIDetector) -> None:
    assert not detector.contains_pii("١٢٣-٤٥-٦٧٨٩")


# ── Named entities ──────────────────────────────────────────────────────────


def test_person_name_from_entities(detector: PIIDetector) -> None:
    result = detector.detect("Jane Doe lives in Springfield")
    assert _types(result) == [PIIType.PERSON_NAME, PIIType.ADDRESS]
    assert [m.confidence for m in result.matches] == [0.75, 0.65]
    assert result.redacted_text == "[PERSON_NAME] lives in [ADDRESS]"


def test_entity_detection_can_be_disabled(detector: PIIDetector) -> None:
    options = DetectionOptions(detect_names=False, detect_addresses=False)
    assert not detector.detect("Jane Doe lives in Springfield", options).has_pii


def test_missing_spacy_model_contributes_nothing(monkeypatch) -> None:
    spacy = pytest.importorskip("spacy")

    def _load(name):
        raise OSError(f"[E050] Can't find model '{name}'")

    monkeypatch.setattr(spacy, "load", _load)
    detector = PIIDetector(SpacyEntityExtractor("missing_model"))

    result = detector.detect("Jane Doe, jane@example.com")
    assert _types(result) == [PIIType.EMAIL]


# ── Options ─────────────────────────────────────────────────────────────────


def test_enabled_types_restrict_builtin_detectors(detector: PIIDetector) -> None:
    options = DetectionOptions(enabled_types=frozenset({PIIType.EMAIL}))
    result = detector.detect("Jane Doe jane@example.com 10.0.0.1", options)
    assert _types(result) == [PIIType.EMAIL]


def test_custom_pattern(detector: PIIDetector) -> None:
    options = DetectionOptions(custom_patterns=(CustomPattern.compile("employee", r"EMP-\d{5}"),))
    result = detector.detect("badge EMP-12345", options)
    assert _types(result) == [PIIType.CUSTOM]
    assert result.matches[0].confidence == 0.80


def test_custom_patterns_run_even_when_types_restricted(detector: PIIDetector) -> None:
    options = DetectionOptions(
        enabled_types=frozenset({PIIType.EMAIL}),
        custom_patterns=(CustomPattern.compile("employee", r"EMP-\d{5}"),),
    )
    assert _types(detector.detect("EMP-12345", options)) == [PIIType.CUSTOM]


def test_invalid_custom_pattern() -> None:
    with pytest.raises(PIIConfigurationError, match="employee"):
        CustomPattern.compile("employee", r"EMP-(\d")


# ── Overlap resolution ──────────────────────────────────────────────────────


def test_email_inside_url_keeps_single_match(detector: PIIDetector) -> None:
    result = detector.detect("see https://jane@example.com/profile")
    assert len(result.matches) == 1
    assert result.matches[0].type is PIIType.URL


def test_matches_never_overlap(detector: PIIDetector) -> None:
    text = (
        "Jane Doe jane.doe@mail.example.com https://jane.doe@mail.example.com/x "
        "555-123-4567 123-45-6789 4111-1111-1111-1111 1.2.3.4 01/02/1990"
    )
    matches = detector.detect(text).matches
    for i, a in enumerate(matches):
        for b in matches[i + 1:]:
            assert not a.overlaps(b)


def test_deduplicate_prefers_earliest_then_confident() -> None:
    a = PIIMatch(PIIType.PHONE, "x", 0, 10, 0.85)
    b = PIIMatch(PIIType.SSN, "x", 0, 10, 0.90)
    c = PIIMatch(PIIType.EMAIL, "y", 5, 15, 0.99)
    d = PIIMatch(PIIType.URL, "z", 10, 12, 0.50)
    assert deduplicate_matches([a, c, d, b]) == [b, d]


# ── Redaction ───────────────────────────────────────────────────────────────


def test_redaction_labels_and_preserve_length() -> None:
    text = "mail jane@example.com now"
    match = PIIMatch(PIIType.EMAIL, "jane@example.com", 5, 21, 0.95)

    assert apply_redactions(text, [match]) == "mail [EMAIL] now"
    assert (
        apply_redactions(text, [match], RedactionOptions(labels={PIIType.EMAIL: "<hidden>"}))
        == "mail <hidden> now"
    )
    assert (
        apply_redactions(text, [match], RedactionOptions(preserve_length=True, redaction_char="#"))
        == "mail ################ now"
    )


def test_redact_returns_text_unchanged_without_pii(detector: PIIDetector) -> None:
    assert detector.redact("plain text") == "plain text"


def test_get_stats_counts_every_type(detector: PIIDetector) -> None:
    stats = detector.get_stats("a@b.io c@d.io 10.0.0.1")
    assert stats[PIIType.EMAIL] == 2
    assert stats[PIIType.IP_ADDRESS] == 1
    assert stats[PIIType.SSN] == 0
    assert set(stats) == set(PIIType)


# ── Batch ───────────────────────────────────────────────────────────────────


def test_detect_batch_reports_progress(detector: PIIDetector) -> None:
    seen: list[tuple[int, int]] = []
    results = detector.detect_batch(
        [("1", "jane@example.com"), ("2", "clean")],
        redact=True,
        on_progress=lambda done, total: seen.append((done, total)),
    )
    assert seen == [(1, 2), (2, 2)]
    assert [r.id for r in results] == ["1", "2"]
    assert results[0].result.redacted_text == "[EMAIL]"
    assert results[1].result.has_pii is False


def test_detect_batch_without_redaction_keeps_text(detector: PIIDetector) -> None:
    [item] = detector.detect_batch([("a", "jane@example.com")])
    assert item.result.has_pii
    assert item.result.redacted_text == "jane@example.com"
