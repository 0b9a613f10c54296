"""PII detection and redaction for free-text field values.

Detection merges four independent sources:

1. fixed regex matchers (email, phone, SSN, credit card, IPv4, URL, date of birth)
2. named-entity person names
3. named-entity places / addresses
4. caller-supplied custom regexes

Overlapping spans are resolved greedily: matches are ordered by start offset,
then by confidence (highest first), and a match is kept only if it does not
intersect one already kept.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, NamedTuple

import structlog

from datapipe.core.config import settings
from datapipe.core.errors import PIIConfigurationError
from datapipe.models.enums import PIIType

logger = structlog.get_logger()

NAME_CONFIDENCE = 0.75
ADDRESS_CONFIDENCE = 0.65
CUSTOM_CONFIDENCE = 0.80

MIN_NAME_LENGTH = 2
MIN_ADDRESS_LENGTH = 3


@dataclass(frozen=True)
class PIIMatch:
    type: PIIType
    value: str
    start: int
    end: int
    confidence: float

    def overlaps(self, other: PIIMatch) -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class PIIDetectionResult:
    has_pii: bool
    matches: list[PIIMatch]
    redacted_text: str


@dataclass(frozen=True)
class CustomPattern:
    name: str
    regex: re.Pattern[str]
    type: PIIType = PIIType.CUSTOM

    @classmethod
    def compile(cls, name: str, pattern: str) -> CustomPattern:
        try:
            return cls(name=name, regex=re.compile(pattern))
        except re.error as exc:
            raise PIIConfigurationError(
                f"Invalid custom PII pattern '{name}': {exc}",
                detail={"pattern": name},
            ) from exc


@dataclass(frozen=True)
class DetectionOptions:
    detect_names: bool = True
    detect_addresses: bool = True
    # None means every built-in type
    enabled_types: frozenset[PIIType] | None = None
    custom_patterns: tuple[CustomPattern, ...] = ()

    def allows(self, pii_type: PIIType) -> bool:
        return self.enabled_types is None or pii_type in self.enabled_types


@dataclass(frozen=True)
class RedactionOptions:
    redaction_char: str = "*"
    preserve_length: bool = False
    labels: Mapping[PIIType, str] = field(default_factory=dict)


class _Pattern(NamedTuple):
    type: PIIType
    regex: re.Pattern[str]
    confidence: float


# ASCII semantics for \d, \w and \b so digits in other scripts never match
_PATTERNS: tuple[_Pattern, ...] = (
    _Pattern(
        PIIType.EMAIL,
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", re.ASCII),
        0.95,
    ),
    _Pattern(
        PIIType.PHONE,
        re.compile(r"\b(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)?\d{3}[-.\s]?\d{4}\b", re.ASCII),
        0.85,
    ),
    _Pattern(
        PIIType.SSN,
        re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b", re.ASCII),
        0.90,
    ),
    _Pattern(
        PIIType.CREDIT_CARD,
        re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b", re.ASCII),
        0.90,
    ),
    _Pattern(
        PIIType.IP_ADDRESS,
        re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b", re.ASCII),
        0.95,
    ),
    _Pattern(
        PIIType.URL,
        re.compile(
            r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
            r"(?:[-a-zA-Z0-9()@:%_+.~#?&/=]*)",
            re.ASCII,
        ),
        0.95,
    ),
    _Pattern(
        PIIType.DATE_OF_BIRTH,
        re.compile(
            r"\b(?:0?[1-9]|1[0-2])[-/](?:0?[1-9]|[12]\d|3[01])[-/](?:19|20)\d{2}\b",
            re.ASCII,
        ),
        0.70,
    ),
)


# ── Named-entity heuristics ──────────────────────────────────────────────────


class EntitySpan(NamedTuple):
    label: str
    start: int
    end: int
    text: str


EntityExtractor = Callable[[str], Iterable[EntitySpan]]

_PERSON_LABELS = frozenset({"PERSON"})
_PLACE_LABELS = frozenset({"GPE", "LOC", "FAC"})


class SpacyEntityExtractor:
    """Runs a spaCy pipeline and returns its entity spans.

    The model is loaded on first use. When it is not installed a warning is
    logged once and no spans are produced.
    """

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._nlp: Any | None = None
        self._unavailable = False

    def _load(self) -> Any | None:
        if self._nlp is None and not self._unavailable:
            import spacy

            try:
                self._nlp = spacy.load(self.model_name)
            except OSError as exc:
                self._unavailable = True
                logger.warning(
                    "pii.ner_model_unavailable",
                    model=self.model_name,
                    error=str(exc),
                )
        return self._nlp

    def __call__(self, text: str) -> list[EntitySpan]:
        nlp = self._load()
        if nlp is None:
            return []
        return [
            EntitySpan(ent.label_, ent.start_char, ent.end_char, ent.text)
            for ent in nlp(text).ents
        ]


# ── Detector ─────────────────────────────────────────────────────────────────


def deduplicate_matches(matches: Iterable[PIIMatch]) -> list[PIIMatch]:
    """Greedy overlap resolution: earliest start first, then highest confidence."""
    ordered = sorted(matches, key=lambda m: (m.start, -m.confidence))
    accepted: list[PIIMatch] = []
    for match in ordered:
        if not any(match.overlaps(kept) for kept in accepted):
            accepted.append(match)
    return accepted


def apply_redactions(
    text: str,
    matches: Iterable[PIIMatch],
    options: RedactionOptions | None = None,
) -> str:
    """Splice replacements into *text*, last match first so offsets stay valid."""
    options = options or RedactionOptions()
    redacted = text
    for match in sorted(matches, key=lambda m: m.start, reverse=True):
        label = options.labels.get(match.type) if options.labels else None
        if label:
            replacement = label
        elif options.preserve_length:
            replacement = options.redaction_char * len(match.value)
        else:
            replacement = f"[{match.type.value.upper()}]"
        redacted = redacted[: match.start] + replacement + redacted[match.end :]
    return redacted


@dataclass(frozen=True)
class BatchDetection:
    id: str
    original: str
    result: PIIDetectionResult


class PIIDetector:
    """Stateless detector; safe to share between jobs."""

    def __init__(self, entity_extractor: EntityExtractor | None = None) -> None:
        self.entity_extractor = entity_extractor

    def _pattern_matches(self, text: str, options: DetectionOptions) -> list[PIIMatch]:
        matches: list[PIIMatch] = []
        for pattern in _PATTERNS:
            if not options.allows(pattern.type):
                continue
            for m in pattern.regex.finditer(text):
                matches.append(
                    PIIMatch(pattern.type, m.group(0), m.start(), m.end(), pattern.confidence)
                )
        return matches

    def _entity_matches(self, text: str, options: DetectionOptions) -> list[PIIMatch]:
        want_names = options.detect_names and options.allows(PIIType.PERSON_NAME)
        want_places = options.detect_addresses and options.allows(PIIType.ADDRESS)
        if self.entity_extractor is None or not (want_names or want_places):
            return []

        matches: list[PIIMatch] = []
        for span in self.entity_extractor(text):
            length = span.end - span.start
            if want_names and span.label in _PERSON_LABELS and length >= MIN_NAME_LENGTH:
                matches.append(
                    PIIMatch(PIIType.PERSON_NAME, span.text, span.start, span.end, NAME_CONFIDENCE)
                )
            elif want_places and span.label in _PLACE_LABELS and length >= MIN_ADDRESS_LENGTH:
                matches.append(
                    PIIMatch(PIIType.ADDRESS, span.text, span.start, span.end, ADDRESS_CONFIDENCE)
                )
        return matches

    @staticmethod
    def _custom_matches(text: str, options: DetectionOptions) -> list[PIIMatch]:
        matches: list[PIIMatch] = []
        for pattern in options.custom_patterns:
            for m in pattern.regex.finditer(text):
                if m.end() == m.start():
                    continue
                matches.append(
                    PIIMatch(pattern.type, m.group(0), m.start(), m.end(), CUSTOM_CONFIDENCE)
                )
        return matches

    def detect(self, text: str, options: DetectionOptions | None = None) -> PIIDetectionResult:
        """Detect PII in *text*.

        ``redacted_text`` always uses the bracketed ``[TYPE]`` labels so that
        previews look the same regardless of the job's redaction settings.
        """
        options = options or DetectionOptions()
        raw = (
            self._pattern_matches(text, options)
            + self._entity_matches(text, options)
            + self._custom_matches(text, options)
        )
        matches = deduplicate_matches(raw)
        return PIIDetectionResult(
            has_pii=bool(matches),
            matches=matches,
            redacted_text=apply_redactions(text, matches),
        )

    def redact(
        self,
        text: str,
        redaction: RedactionOptions | None = None,
        options: DetectionOptions | None = None,
    ) -> str:
        result = self.detect(text, options)
        if not result.has_pii:
            return text
        return apply_redactions(text, result.matches, redaction)

    def contains_pii(self, text: str, options: DetectionOptions | None = None) -> bool:
        return self.detect(text, options).has_pii

    def get_stats(self, text: str, options: DetectionOptions | None = None) -> dict[PIIType, int]:
        stats = dict.fromkeys(PIIType, 0)
        for match in self.detect(text, options).matches:
            stats[match.type] += 1
        return stats

    def detect_batch(
        self,
        items: Iterable[tuple[str, str]],
        *,
        redact: bool = False,
        options: DetectionOptions | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[BatchDetection]:
        """Run detection over ``(id, text)`` pairs, reporting ``(processed, total)``."""
        pending = list(items)
        total = len(pending)
        results: list[BatchDetection] = []
        for index, (item_id, text) in enumerate(pending, start=1):
            result = self.detect(text, options)
            if not redact:
                result = replace(result, redacted_text=text)
            results.append(BatchDetection(id=item_id, original=text, result=result))
            if on_progress is not None:
                on_progress(index, total)
        return results


@lru_cache
def get_detector() -> PIIDetector:
    """Process-wide detector backed by the configured spaCy model."""
    return PIIDetector(SpacyEntityExtractor(settings.PII_SPACY_MODEL))
