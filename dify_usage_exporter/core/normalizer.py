"""
Normalizer
==========
Canonical provider/model vocabulary for records reported by Dify.
"""

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from dify_usage_exporter.schemas.usage import AggregatedModelRecord, NormalizedModelRecord

logger = structlog.get_logger()

UNKNOWN_PROVIDER = "unknown"

DEFAULT_PROVIDER_ALIASES: dict[str, str] = {
    "aws-bedrock": "aws",
    "aws_bedrock": "aws",
    "bedrock": "aws",
    "amazon-bedrock": "aws",
    "x-ai": "xai",
    "xai": "xai",
    "grok": "xai",
    "azure-openai": "azure",
    "azure_openai": "azure",
    "google-gemini": "google",
    "gemini": "google",
    "vertex_ai": "google",
    "openai": "openai",
    "anthropic": "anthropic",
}

DEFAULT_MODEL_ALIASES: dict[str, str] = {
    "claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku": "claude-3-5-haiku-20241022",
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
    "gpt-4o": "gpt-4o-2024-08-06",
    "gpt-4o-mini": "gpt-4o-mini-2024-07-18",
    "gpt-4-turbo": "gpt-4-turbo-2024-04-09",
    "gpt-4": "gpt-4-0613",
    "gpt-3.5-turbo": "gpt-3.5-turbo-0125",
    "gemini-1.5-pro": "gemini-1.5-pro-002",
    "gemini-1.5-flash": "gemini-1.5-flash-002",
}


class ProviderNormalizer:
    """
    Trim and lowercase, then map through the provider alias table.

    Plugin style identifiers ("langgenius/openai/openai") are reduced to
    their last segment first. Empty input becomes "unknown"; anything else
    not in the table passes through.
    """

    def __init__(self, aliases: Optional[dict[str, str]] = None):
        self.aliases = dict(DEFAULT_PROVIDER_ALIASES)
        if aliases:
            self.aliases.update({k.lower(): v for k, v in aliases.items()})

    def normalize(self, provider: str) -> str:
        cleaned = provider.strip().lower()
        if "/" in cleaned:
            cleaned = cleaned.split("/")[-1]
        if not cleaned:
            return UNKNOWN_PROVIDER
        return self.aliases.get(cleaned, cleaned)


class ModelNormalizer:
    """
    Trim and lowercase, then map to a canonical versioned identifier.

    Unlike providers, empty input stays empty.
    """

    def __init__(self, aliases: Optional[dict[str, str]] = None):
        self.aliases = dict(DEFAULT_MODEL_ALIASES)
        if aliases:
            self.aliases.update({k.lower(): v for k, v in aliases.items()})

    def normalize(self, model: str) -> str:
        cleaned = model.strip().lower()
        return self.aliases.get(cleaned, cleaned)


def parse_cost(price: str) -> float:
    """Parse a decimal price string such as "0.0197304"."""
    try:
        return float(Decimal(price.strip()))
    except (InvalidOperation, AttributeError) as e:
        raise ValueError(f"Invalid price: {price!r}") from e


class Normalizer:
    """Field level cleansing of aggregated records. No filtering, no merging."""

    def __init__(
        self,
        provider_normalizer: Optional[ProviderNormalizer] = None,
        model_normalizer: Optional[ModelNormalizer] = None,
    ):
        self.providers = provider_normalizer or ProviderNormalizer()
        self.models = model_normalizer or ModelNormalizer()

    @classmethod
    def from_config(cls, config_path: Optional[str]) -> "Normalizer":
        """
        Build a normalizer with alias tables extended from a YAML file.

        The file is optional:

            providers:
              my-gateway: openai
            models:
              my-model: my-model-2025-01-01
        """
        overrides = _load_overrides(config_path)
        return cls(
            ProviderNormalizer(overrides.get("providers")),
            ModelNormalizer(overrides.get("models")),
        )

    def normalize(self, records: list[AggregatedModelRecord]) -> list[NormalizedModelRecord]:
        normalized = []
        for record in records:
            provider = self.providers.normalize(record.model_provider)
            model = self.models.normalize(record.model_name)

            logger.debug(
                "Normalizing model record",
                original_provider=record.model_provider,
                original_model=record.model_name,
                provider=provider,
                model=model,
            )

            normalized.append(
                NormalizedModelRecord(
                    provider=provider,
                    model=model,
                    input_tokens=record.prompt_tokens,
                    output_tokens=record.completion_tokens,
                    total_tokens=record.total_tokens,
                    cost_actual=parse_cost(record.total_price),
                    usage_date=record.period,
                    app_id=record.app_id or None,
                    app_name=record.app_name or None,
                    user_id=record.user_id or None,
                )
            )
        return normalized


def _load_overrides(config_path: Optional[str]) -> dict[str, Any]:
    if not config_path:
        return {}

    config_file = Path(config_path)
    if not config_file.exists():
        logger.debug("Normalization config not found, using built-in tables", path=config_path)
        return {}

    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded normalization configuration", path=config_path)
        return data
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load normalization config", path=config_path, error=str(e))
        return {}

