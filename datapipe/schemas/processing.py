"""Pydantic v2 models for the transformation configuration of a job."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError
from pydantic.alias_generators import to_camel

from datapipe.core.errors import BadRequestError, PIIConfigurationError
from datapipe.models.enums import (
    FilterOperator,
    PIIType,
    RecordFormat,
    RedactionStrategy,
)
from datapipe.services.pii import CustomPattern, DetectionOptions, RedactionOptions

DEFAULT_BATCH_SIZE = 100


class _CamelModel(BaseModel):
    # Stored configs come from the web client in camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FilterCondition(_CamelModel):
    field: str
    operator: FilterOperator
    value: str | int | float | bool | None = None


class CustomPatternConfig(_CamelModel):
    name: str
    pattern: str


class PIIConfig(_CamelModel):
    """Which PII types to look for, extra patterns, and per-type strategy."""

    enabled_types: set[PIIType] | None = None
    custom_patterns: list[CustomPatternConfig] = Field(default_factory=list)
    strategies: dict[PIIType, RedactionStrategy] = Field(default_factory=dict)

    def ensure_supported(self) -> None:
        """Only ``redact`` has an implementation; anything else is a config error."""
        for pii_type, strategy in self.strategies.items():
            if strategy is not RedactionStrategy.REDACT:
                raise PIIConfigurationError(
                    f"PII strategy '{strategy.value}' for '{pii_type.value}' is not supported; "
                    "only 'redact' is implemented",
                    detail={"type": pii_type.value, "strategy": strategy.value},
                )
        for custom in self.custom_patterns:
            CustomPattern.compile(custom.name, custom.pattern)


class JobOptions(_CamelModel):
    """Per-job overrides stored on ``ProcessingJob.config``."""

    batch_size: PositiveInt | None = None
    enable_pii_detection: bool = True
    enable_pii_redaction: bool = True
    redaction_labels: dict[PIIType, str] = Field(default_factory=dict)
    preserve_length: bool = False
    redaction_char: str = Field(default="*", min_length=1, max_length=1)


class ProcessingConfig(BaseModel):
    """Everything the record transformer needs for one job."""

    output_format: RecordFormat = RecordFormat.JSONL
    batch_size: PositiveInt = DEFAULT_BATCH_SIZE
    field_mappings: dict[str, str] = Field(default_factory=dict)
    filter_conditions: list[FilterCondition] = Field(default_factory=list)
    pii: PIIConfig = Field(default_factory=PIIConfig)
    enable_pii_detection: bool = True
    enable_pii_redaction: bool = True
    redaction_labels: dict[PIIType, str] = Field(default_factory=dict)
    preserve_length: bool = False
    redaction_char: str = "*"

    def detection_options(self) -> DetectionOptions:
        return DetectionOptions(
            enabled_types=frozenset(self.pii.enabled_types) if self.pii.enabled_types is not None else None,
            custom_patterns=tuple(
                CustomPattern.compile(c.name, c.pattern) for c in self.pii.custom_patterns
            ),
        )

    def redaction_options(self) -> RedactionOptions:
        return RedactionOptions(
            redaction_char=self.redaction_char,
            preserve_length=self.preserve_length,
            labels=dict(self.redaction_labels),
        )


def _parse(model: type[_CamelModel], raw: Any, what: str) -> Any:
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        raise BadRequestError(f"Invalid {what}", detail=exc.errors(include_url=False)) from exc


def parse_job_options(raw: dict[str, Any] | None) -> JobOptions:
    return _parse(JobOptions, raw, "job options")


def parse_pii_config(raw: dict[str, Any] | None) -> PIIConfig:
    config = _parse(PIIConfig, raw, "PII configuration")
    config.ensure_supported()
    return config


def parse_filter_rules(raw: dict[str, Any] | None) -> list[FilterCondition]:
    rules = (raw or {}).get("rules") or []
    try:
        return [FilterCondition.model_validate(rule) for rule in rules]
    except ValidationError as exc:
        raise BadRequestError("Invalid filter configuration", detail=exc.errors(include_url=False)) from exc


def build_processing_config(
    *,
    output_format: RecordFormat,
    job_options: dict[str, Any] | None = None,
    mapping_config: dict[str, str] | None = None,
    filter_config: dict[str, Any] | None = None,
    pii_config: dict[str, Any] | None = None,
    default_batch_size: int = DEFAULT_BATCH_SIZE,
) -> ProcessingConfig:
    """Merge job options and schema-mapping settings into one validated config.

    Raises BadRequestError / PIIConfigurationError for invalid input.
    """
    options = parse_job_options(job_options)
    return ProcessingConfig(
        output_format=output_format,
        batch_size=options.batch_size or default_batch_size,
        field_mappings=dict(mapping_config or {}),
        filter_conditions=parse_filter_rules(filter_config),
        pii=parse_pii_config(pii_config),
        enable_pii_detection=options.enable_pii_detection,
        enable_pii_redaction=options.enable_pii_redaction,
        redaction_labels=options.redaction_labels,
        preserve_length=options.preserve_length,
        redaction_char=options.redaction_char,
    )
