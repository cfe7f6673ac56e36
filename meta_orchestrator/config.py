"""
Runtime configuration for the orchestration core.

Settings are plain dataclasses with defaults suited to local development;
`OrchestratorConfig.from_env()` overlays ORCHESTRATOR_* environment variables
(optionally loaded from a .env file).
"""

import logging
import os
import random
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORCHESTRATOR_"

SELECTION_STRATEGIES = (
    "round_robin",
    "lowest_latency",
    "best_match",
    "cost_optimized",
    "random",
)


@dataclass
class RetryPolicy:
    """Retry and backoff settings for a single task."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    min_delay_seconds: float = 0.0
    jitter: float = 0.1

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay before the attempt following `attempt` (1-based).

        Exponential growth capped at max_delay_seconds, scaled by a random
        factor in [1 - jitter, 1 + jitter] and floored at min_delay_seconds.
        """
        delay = self.base_delay_seconds * (self.multiplier ** max(attempt - 1, 0))
        delay = min(delay, self.max_delay_seconds)
        if self.jitter > 0 and delay > 0:
            rng = rng or random
            delay *= 1 + rng.uniform(-self.jitter, self.jitter)
        return max(delay, self.min_delay_seconds)


@dataclass
class CircuitConfig:
    """Circuit breaker settings."""
    failure_threshold: int = 5          # consecutive failures that open the circuit
    window_seconds: float = 60.0        # failures older than this are forgotten
    cooldown_seconds: float = 30.0      # time spent OPEN before a probe is allowed


@dataclass
class OrchestratorConfig:
    """Top-level orchestrator settings."""
    max_concurrent_tasks: int = 10
    queue_capacity: int = 1000
    default_timeout_seconds: float = 60.0
    selection_strategy: str = "round_robin"
    random_seed: Optional[int] = None
    health_check_interval_seconds: float = 30.0
    max_graph_depth: Optional[int] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "OrchestratorConfig":
        """Load settings from the environment, reading .env first when present."""
        load_dotenv(dotenv_path)

        max_depth = os.getenv(f"{ENV_PREFIX}MAX_GRAPH_DEPTH")
        seed = os.getenv(f"{ENV_PREFIX}RANDOM_SEED")

        config = cls(
            max_concurrent_tasks=_env_int("MAX_CONCURRENT_TASKS", 10),
            queue_capacity=_env_int("QUEUE_CAPACITY", 1000),
            default_timeout_seconds=_env_float("DEFAULT_TIMEOUT_SECONDS", 60.0),
            selection_strategy=os.getenv(
                f"{ENV_PREFIX}SELECTION_STRATEGY", "round_robin"
            ).strip().lower(),
            random_seed=int(seed) if seed else None,
            health_check_interval_seconds=_env_float("HEALTH_CHECK_INTERVAL_SECONDS", 30.0),
            max_graph_depth=int(max_depth) if max_depth else None,
            retry=RetryPolicy(
                max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
                base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 0.5),
                multiplier=_env_float("RETRY_MULTIPLIER", 2.0),
                max_delay_seconds=_env_float("RETRY_MAX_DELAY_SECONDS", 30.0),
                min_delay_seconds=_env_float("RETRY_MIN_DELAY_SECONDS", 0.0),
                jitter=_env_float("RETRY_JITTER", 0.1),
            ),
            circuit=CircuitConfig(
                failure_threshold=_env_int("CIRCUIT_FAILURE_THRESHOLD", 5),
                window_seconds=_env_float("CIRCUIT_WINDOW_SECONDS", 60.0),
                cooldown_seconds=_env_float("CIRCUIT_COOLDOWN_SECONDS", 30.0),
            ),
        )
        config.validate()
        logger.debug(f"Loaded orchestrator config from environment: {config}")
        return config

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid setting."""
        if self.max_concurrent_tasks < 1:
            raise ConfigurationError("max_concurrent_tasks must be >= 1", "max_concurrent_tasks")
        if self.queue_capacity < 1:
            raise ConfigurationError("queue_capacity must be >= 1", "queue_capacity")
        if self.default_timeout_seconds <= 0:
            raise ConfigurationError(
                "default_timeout_seconds must be positive", "default_timeout_seconds"
            )
        if self.selection_strategy not in SELECTION_STRATEGIES:
            raise ConfigurationError(
                f"Unsupported selection strategy: {self.selection_strategy!r}",
                "selection_strategy",
            )
        if self.max_graph_depth is not None and self.max_graph_depth < 1:
            raise ConfigurationError("max_graph_depth must be >= 1", "max_graph_depth")
        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be >= 1", "retry.max_attempts")
        if self.retry.base_delay_seconds < 0 or self.retry.min_delay_seconds < 0:
            raise ConfigurationError("retry delays must be non-negative", "retry")
        if self.retry.multiplier < 1:
            raise ConfigurationError("retry.multiplier must be >= 1", "retry.multiplier")
        if not 0 <= self.retry.jitter < 1:
            raise ConfigurationError("retry.jitter must be in [0, 1)", "retry.jitter")
        if self.circuit.failure_threshold < 1:
            raise ConfigurationError(
                "circuit.failure_threshold must be >= 1", "circuit.failure_threshold"
            )
        if self.circuit.window_seconds <= 0 or self.circuit.cooldown_seconds < 0:
            raise ConfigurationError("circuit timings are invalid", "circuit")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}", name) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}", name) from e
