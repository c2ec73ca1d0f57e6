"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. Explicit path (--config CLI flag or CASEASSIST_CONFIG_PATH)
2. ./caseassist.yaml (working directory)
3. ~/.caseassist/config.yaml (user home)

Environment variables override YAML: CASEASSIST_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found the defaults below apply.
"""

import logging
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class ConversationConfig(BaseModel):
    """Conversation lifecycle settings."""

    inactivity_window_hours: float = Field(24.0, gt=0)
    history_limit: int = Field(50, ge=1)


class BatchConfig(BaseModel):
    """Batch worker pool and retry settings."""

    concurrency: int = Field(5, ge=1)
    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(1.0, ge=0)
    max_delay_seconds: float = Field(30.0, ge=0)


class TierBudget(BaseModel):
    """Latency budget of one model tier, in milliseconds.

    The p99 budget is the hard timeout of a single call.
    """

    p95_ms: int = Field(..., gt=0)
    p99_ms: int = Field(..., gt=0)

    @model_validator(mode="after")
    def p99_not_below_p95(self) -> "TierBudget":
        """Ensure the hard timeout is not tighter than the p95 target."""
        if self.p99_ms < self.p95_ms:
            raise ValueError("p99_ms must be >= p95_ms")
        return self


class ModelTierConfig(BaseModel):
    """Latency budgets per model tier."""

    fast: TierBudget = TierBudget(p95_ms=500, p99_ms=1000)
    standard: TierBudget = TierBudget(p95_ms=1000, p99_ms=2000)
    advanced: TierBudget = TierBudget(p95_ms=2000, p99_ms=4000)


class ModelPrice(BaseModel):
    """EUR price per 1K tokens for one model."""

    input_per_1k_eur: Decimal = Field(..., ge=0)
    output_per_1k_eur: Decimal = Field(..., ge=0)


# EUR list price approximations; deployments override these in config.
DEFAULT_PRICING: dict[str, ModelPrice] = {
    "claude-haiku-4-5": ModelPrice(
        input_per_1k_eur=Decimal("0.00092"), output_per_1k_eur=Decimal("0.0046")
    ),
    "claude-sonnet-4-5": ModelPrice(
        input_per_1k_eur=Decimal("0.00276"), output_per_1k_eur=Decimal("0.0138")
    ),
    "claude-opus-4-1": ModelPrice(
        input_per_1k_eur=Decimal("0.0138"), output_per_1k_eur=Decimal("0.069")
    ),
}


class CaseAssistConfig(BaseModel):
    """Top-level configuration for the assistant engine."""

    conversation: ConversationConfig = ConversationConfig()
    batch: BatchConfig = BatchConfig()
    model_tiers: ModelTierConfig = ModelTierConfig()
    pricing: dict[str, ModelPrice] = Field(
        default_factory=lambda: dict(DEFAULT_PRICING)
    )


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "caseassist.yaml",
        Path.cwd() / "caseassist.yml",
        Path.home() / ".caseassist" / "config.yaml",
        Path.home() / ".caseassist" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce_env_value(value: str) -> Any:
    # Ints and booleans here; pydantic handles the rest
    try:
        return int(value)
    except ValueError:
        if value.lower() in ("true", "false"):
            return value.lower() == "true"
        return value


def _submodel(annotation: Any) -> type[BaseModel] | None:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    return None


def _env_target(section_model: type[BaseModel], field: str) -> tuple[str, ...] | None:
    """Path below the section for a flattened env key, or None if unknown.

    ``fast_p99_ms`` under ``model_tiers`` resolves to ``("fast", "p99_ms")``.
    """
    if field in section_model.model_fields:
        return (field,)
    names = sorted(section_model.model_fields, key=len, reverse=True)
    for name in names:
        nested = _submodel(section_model.model_fields[name].annotation)
        if nested is not None and field.startswith(name + "_"):
            rest = _env_target(nested, field[len(name) + 1:])
            if rest is not None:
                return (name, *rest)
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply CASEASSIST_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix so multi-word section names
    like ``model_tiers`` are handled correctly, and descends into nested
    sections: ``CASEASSIST_BATCH_CONCURRENCY`` sets ``batch.concurrency``,
    ``CASEASSIST_MODEL_TIERS_FAST_P99_MS`` sets ``model_tiers.fast.p99_ms``.
    Pricing is keyed by model name and is configured in YAML only.
    Variables naming an unknown setting are logged and ignored.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "CASEASSIST_"
    known_sections = sorted(
        CaseAssistConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()  # e.g. "batch_concurrency"
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue

        section_model = _submodel(CaseAssistConfig.model_fields[matched_section].annotation)
        path = _env_target(section_model, matched_field) if section_model else None
        if path is None:
            logger.warning("Ignoring %s: no setting %s.%s", key, matched_section, matched_field)
            continue

        target = data.setdefault(matched_section, {})
        model = section_model
        for name in path[:-1]:
            if not isinstance(target, dict):
                break
            field_info = model.model_fields[name]
            if name not in target:
                # Start from the field default so sibling settings stay valid
                default = field_info.get_default(call_default_factory=True)
                target[name] = default.model_dump() if isinstance(default, BaseModel) else {}
            target = target[name]
            model = _submodel(field_info.annotation)
        if isinstance(target, dict):
            target[path[-1]] = _coerce_env_value(value)
    return data


def load_config(config_path: str | None = None) -> CaseAssistConfig:
    """Load configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, uses
            CASEASSIST_CONFIG_PATH or searches standard locations.

    Returns:
        Parsed and validated CaseAssistConfig (defaults when no file).

    Raises:
        FileNotFoundError: If an explicit path does not exist.
    """
    config_path = config_path or os.environ.get("CASEASSIST_CONFIG_PATH") or None
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return CaseAssistConfig(**data)
