"""
plany/core/config.py — Typed configuration loader for Plany.

Loads config/plany.yaml and validates all values into typed dataclasses.
All downstream modules receive a :class:`PlanyConfig`; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from plany.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy (mirrors plany.yaml)
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class OrchestratorConfig:
    """Task orchestrator: worker count, retry policy and deadlines."""

    workers: int = 2
    max_attempts: int = 3
    backoff_base_s: float = 2.0
    backoff_factor: float = 2.0
    backoff_max_s: float = 30.0
    call_timeout_s: float = 20.0
    job_deadline_s: float = 120.0
    history_size: int = 50


@dataclass(frozen=True)
class PipelineConfig:
    """Per-utterance controller settings."""

    phase_timeout_s: float = 30.0
    min_confidence: float = 0.5
    error_reset_s: float = 3.0
    default_water_amount: int = 8
    default_water_unit: str = "oz"


@dataclass(frozen=True)
class EnrichmentConfig:
    """OpenAI-compatible endpoint used for estimation and extraction."""

    base_url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-5-mini"
    extractor_model: str = "gpt-5"
    api_key_env: str = "OPENAI_API_KEY"
    request_timeout_s: float = 20.0

    @property
    def api_key(self) -> str | None:
        """Return the API key from the configured environment variable, if set."""
        value = os.environ.get(self.api_key_env, "").strip()
        return value or None


@dataclass(frozen=True)
class LoggingConfig:
    """Structured log destination and stderr verbosity."""

    level: str = "INFO"
    log_dir: str = "logs"


@dataclass(frozen=True)
class WebConfig:
    """FastAPI presentation bridge bind address."""

    host: str = "127.0.0.1"
    port: int = 7860


@dataclass(frozen=True)
class StoreConfig:
    """Optional on-disk snapshot of the Event Store; ``None`` keeps it in memory only."""

    path: str | None = None


@dataclass(frozen=True)
class PlanyConfig:
    """Root configuration object — single source of truth for all settings."""

    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    web: WebConfig = field(default_factory=WebConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def load_config(config_path: Path | str | None = None) -> PlanyConfig:
    """
    Load, validate, and return a PlanyConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. PLANY_CONFIG environment variable
    3. ``config/plany.yaml`` relative to the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``plany.yaml`` file.

    Returns:
        A fully populated and frozen :class:`PlanyConfig` instance.

    Raises:
        ConfigurationError: If a YAML field has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "PLANY_CONFIG" in os.environ:
        resolved_path = Path(os.environ["PLANY_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"PLANY_CONFIG points to missing file: {resolved_path}"
            )
    else:
        here = Path(__file__).resolve()
        candidate = here.parent.parent.parent / "config" / "plany.yaml"
        if candidate.exists():
            resolved_path = candidate

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Config file must be a YAML mapping, got: {type(loaded).__name__}"
            )
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    return config_from_dict(raw)


def config_from_dict(raw: dict) -> PlanyConfig:
    """
    Build and validate a :class:`PlanyConfig` from a plain mapping.

    Missing sections and keys fall back to defaults. ``PLANY_LOG_DIR``, when set,
    overrides ``logging.log_dir``.

    Raises:
        ConfigurationError: On unknown keys or out-of-range values.
    """
    logging_raw = dict(raw.get("logging") or {})
    if os.environ.get("PLANY_LOG_DIR"):
        logging_raw["log_dir"] = os.environ["PLANY_LOG_DIR"]

    try:
        config = PlanyConfig(
            orchestrator=OrchestratorConfig(**(raw.get("orchestrator") or {})),
            pipeline=PipelineConfig(**(raw.get("pipeline") or {})),
            enrichment=EnrichmentConfig(**(raw.get("enrichment") or {})),
            logging=LoggingConfig(**logging_raw),
            web=WebConfig(**(raw.get("web") or {})),
            store=StoreConfig(**(raw.get("store") or {})),
        )
    except TypeError as exc:
        raise ConfigurationError(f"Invalid config value: {exc}") from exc

    _validate_config(config)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(config: PlanyConfig) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ConfigurationError: If any configured value violates a hard constraint.
    """
    orch = config.orchestrator
    pipe = config.pipeline

    if orch.workers < 1:
        raise ConfigurationError(f"orchestrator.workers must be ≥1, got {orch.workers}")
    if orch.max_attempts < 1:
        raise ConfigurationError(
            f"orchestrator.max_attempts must be ≥1, got {orch.max_attempts}"
        )
    if orch.backoff_base_s < 0:
        raise ConfigurationError(
            f"orchestrator.backoff_base_s must be non-negative, got {orch.backoff_base_s}"
        )
    if orch.backoff_factor < 1.0:
        raise ConfigurationError(
            f"orchestrator.backoff_factor must be ≥1, got {orch.backoff_factor}"
        )
    if orch.backoff_max_s < orch.backoff_base_s:
        raise ConfigurationError(
            "orchestrator.backoff_max_s must be ≥ backoff_base_s "
            f"({orch.backoff_max_s} < {orch.backoff_base_s})"
        )
    if orch.call_timeout_s <= 0:
        raise ConfigurationError(
            f"orchestrator.call_timeout_s must be positive, got {orch.call_timeout_s}"
        )
    if orch.job_deadline_s <= 0:
        raise ConfigurationError(
            f"orchestrator.job_deadline_s must be positive, got {orch.job_deadline_s}"
        )
    if orch.history_size < 0:
        raise ConfigurationError(
            f"orchestrator.history_size must be non-negative, got {orch.history_size}"
        )
    if pipe.phase_timeout_s <= 0:
        raise ConfigurationError(
            f"pipeline.phase_timeout_s must be positive, got {pipe.phase_timeout_s}"
        )
    if not (0.0 <= pipe.min_confidence <= 1.0):
        raise ConfigurationError(
            f"pipeline.min_confidence must be in [0, 1], got {pipe.min_confidence}"
        )
    if pipe.error_reset_s < 0:
        raise ConfigurationError(
            f"pipeline.error_reset_s must be non-negative, got {pipe.error_reset_s}"
        )
    if config.enrichment.request_timeout_s <= 0:
        raise ConfigurationError(
            "enrichment.request_timeout_s must be positive, "
            f"got {config.enrichment.request_timeout_s}"
        )
    if not (0 < config.web.port < 65536):
        raise ConfigurationError(f"web.port must be in 1..65535, got {config.web.port}")
    if config.store.path is not None and (
        not isinstance(config.store.path, str) or not config.store.path.strip()
    ):
        raise ConfigurationError(
            f"store.path must be a non-empty string or null, got {config.store.path!r}"
        )
