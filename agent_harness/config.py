"""
Centralized configuration with environment variable overrides.

Thresholds for intent detection, progress tracking, the test runner,
the worker pool and experiment conclusions all live here. Nothing is
hardcoded in the simulation or experiment logic.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from agent_harness.logging_context import correlated_handler

load_dotenv()

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    """Parse a boolean flag such as ``true``/``0``/``off``."""
    raw = os.getenv(env_var, default).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {env_var}: {raw!r}")


@dataclass(frozen=True)
class AgentEndpointConfig:
    """Connection settings for the agent under test."""

    url: str = os.getenv("AGENT_ENDPOINT_URL", "http://localhost:3000/api/v1/prediction")
    api_key: Optional[str] = os.getenv("AGENT_API_KEY")
    timeout_sec: float = _safe_float("AGENT_TIMEOUT_SEC", "30")
    retry_on_timeout: bool = _safe_bool("AGENT_RETRY_ON_TIMEOUT", "true")


@dataclass(frozen=True)
class LLMConfig:
    """Language-model provider used for intent detection and persona replies."""

    provider_mode: str = os.getenv("LLM_PROVIDER_MODE", "api")
    model: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    temperature: float = _safe_float("LLM_TEMPERATURE", "0.3")
    max_tokens: int = _safe_int("LLM_MAX_TOKENS", "512")
    timeout_sec: float = _safe_float("LLM_TIMEOUT_SEC", "30")
    cli_command: str = os.getenv("LLM_CLI_COMMAND", "claude")
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")


@dataclass(frozen=True)
class IntentConfig:
    """Intent classification and result-cache settings."""

    use_llm: bool = _safe_bool("INTENT_USE_LLM", "true")
    model: str = os.getenv("INTENT_MODEL", "gpt-4o-mini")
    temperature: float = _safe_float("INTENT_TEMPERATURE", "0.1")
    max_tokens: int = _safe_int("INTENT_MAX_TOKENS", "512")
    timeout_sec: float = _safe_float("INTENT_TIMEOUT_SEC", "15")
    cache_enabled: bool = _safe_bool("INTENT_CACHE_ENABLED", "true")
    cache_ttl_sec: float = _safe_float("INTENT_CACHE_TTL_SEC", "300")
    cache_max_entries: int = _safe_int("INTENT_CACHE_MAX_ENTRIES", "100")


@dataclass(frozen=True)
class ProgressConfig:
    """Thresholds for conversation health issues."""

    stuck_threshold_turns: int = _safe_int("STUCK_THRESHOLD_TURNS", "5")
    max_repetition_count: int = _safe_int("MAX_REPETITION_COUNT", "2")
    low_confidence_threshold: float = _safe_float("LOW_CONFIDENCE_THRESHOLD", "0.5")


@dataclass(frozen=True)
class RunnerConfig:
    """Per-conversation limits for the goal test runner."""

    max_turns: int = _safe_int("MAX_TURNS", "30")
    max_duration_sec: float = _safe_float("MAX_DURATION_SEC", "600")
    delay_between_turns_ms: int = _safe_int("DELAY_BETWEEN_TURNS_MS", "500")
    save_progress_snapshots: bool = _safe_bool("SAVE_PROGRESS_SNAPSHOTS", "true")
    abort_on_critical_violation: bool = _safe_bool("ABORT_ON_CRITICAL_VIOLATION", "false")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Worker pool sizing."""

    concurrency: int = _safe_int("WORKER_CONCURRENCY", "3")
    max_concurrency: int = _safe_int("MAX_WORKER_CONCURRENCY", "10")


@dataclass(frozen=True)
class ExperimentConfig:
    """Defaults for A/B experiments and regression alerts."""

    min_sample_size: int = _safe_int("EXPERIMENT_MIN_SAMPLE_SIZE", "20")
    max_sample_size: int = _safe_int("EXPERIMENT_MAX_SAMPLE_SIZE", "100")
    significance_threshold: float = _safe_float("SIGNIFICANCE_THRESHOLD", "0.05")
    no_difference_extra_samples: int = _safe_int("NO_DIFFERENCE_EXTRA_SAMPLES", "10")
    min_practical_difference: float = _safe_float("MIN_PRACTICAL_DIFFERENCE", "0.05")
    pass_rate_drop_threshold: float = _safe_float("PASS_RATE_DROP_THRESHOLD", "0.1")
    auto_conclude: bool = _safe_bool("AUTO_CONCLUDE_EXPERIMENTS", "true")


@dataclass(frozen=True)
class StorageConfig:
    """Locations of the results database and the agent's editable content."""

    db_path: str = os.getenv(
        "HARNESS_DB_PATH", str(Path.home() / ".agent_harness" / "harness.db")
    )
    content_root: str = os.getenv("CONTENT_ROOT", ".")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    agent: AgentEndpointConfig = field(default_factory=AgentEndpointConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    intent: IntentConfig = field(default_factory=IntentConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    experiment: ExperimentConfig = field(default_factory=ExperimentConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.llm.provider_mode not in ("api", "cli"):
        raise ValueError(
            f"LLM_PROVIDER_MODE must be 'api' or 'cli', got {config.llm.provider_mode!r}"
        )
    for temp_name, temp_value in [
        ("LLM_TEMPERATURE", config.llm.temperature),
        ("INTENT_TEMPERATURE", config.intent.temperature),
    ]:
        if not 0.0 <= temp_value <= 2.0:
            raise ValueError(f"{temp_name} must be between 0.0 and 2.0, got {temp_value}")

    for timeout_name, timeout_value in [
        ("AGENT_TIMEOUT_SEC", config.agent.timeout_sec),
        ("LLM_TIMEOUT_SEC", config.llm.timeout_sec),
        ("INTENT_TIMEOUT_SEC", config.intent.timeout_sec),
        ("INTENT_CACHE_TTL_SEC", config.intent.cache_ttl_sec),
        ("MAX_DURATION_SEC", config.runner.max_duration_sec),
    ]:
        if timeout_value <= 0:
            raise ValueError(f"{timeout_name} must be > 0, got {timeout_value}")

    if config.intent.cache_max_entries < 1:
        raise ValueError(
            f"INTENT_CACHE_MAX_ENTRIES must be >= 1, got {config.intent.cache_max_entries}"
        )
    if config.progress.stuck_threshold_turns < 1:
        raise ValueError(
            f"STUCK_THRESHOLD_TURNS must be >= 1, got {config.progress.stuck_threshold_turns}"
        )
    if config.progress.max_repetition_count < 2:
        raise ValueError(
            f"MAX_REPETITION_COUNT must be >= 2, got {config.progress.max_repetition_count}"
        )
    if config.runner.max_turns < 1:
        raise ValueError(f"MAX_TURNS must be >= 1, got {config.runner.max_turns}")
    if config.runner.delay_between_turns_ms < 0:
        raise ValueError(
            "DELAY_BETWEEN_TURNS_MS must be >= 0, "
            f"got {config.runner.delay_between_turns_ms}"
        )
    if not 1 <= config.orchestrator.concurrency <= config.orchestrator.max_concurrency:
        raise ValueError(
            "WORKER_CONCURRENCY must be between 1 and "
            f"{config.orchestrator.max_concurrency}, got {config.orchestrator.concurrency}"
        )
    if config.experiment.min_sample_size < 1:
        raise ValueError(
            f"EXPERIMENT_MIN_SAMPLE_SIZE must be >= 1, got {config.experiment.min_sample_size}"
        )
    if config.experiment.max_sample_size < config.experiment.min_sample_size:
        raise ValueError(
            "EXPERIMENT_MAX_SAMPLE_SIZE must be >= EXPERIMENT_MIN_SAMPLE_SIZE, "
            f"got {config.experiment.max_sample_size} < {config.experiment.min_sample_size}"
        )
    if config.experiment.no_difference_extra_samples < 0:
        raise ValueError(
            "NO_DIFFERENCE_EXTRA_SAMPLES must be >= 0, "
            f"got {config.experiment.no_difference_extra_samples}"
        )

    for rate_name, rate_value in [
        ("LOW_CONFIDENCE_THRESHOLD", config.progress.low_confidence_threshold),
        ("SIGNIFICANCE_THRESHOLD", config.experiment.significance_threshold),
        ("MIN_PRACTICAL_DIFFERENCE", config.experiment.min_practical_difference),
        ("PASS_RATE_DROP_THRESHOLD", config.experiment.pass_rate_drop_threshold),
    ]:
        if not 0.0 < rate_value < 1.0:
            raise ValueError(f"{rate_name} must be between 0.0 and 1.0, got {rate_value}")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(test_id)s] [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[correlated_handler()],
    )
    logger.info("Configuration loaded (agent endpoint %s)", config.agent.url)
    return config


# Singleton instance
settings = load_config()
