"""
Config system - Layered typed configuration with validation.

Configuration is a tree of dataclasses rooted at :class:`OptimizerConfig`.
It can be built directly, from a plain dict (``OptimizerConfig.from_dict``)
accepting both the camelCase option names used by JavaScript-style hosts
(``enableCaching``, ``ml.trainingIntervalMinutes``,
``performance.maxMemoryMB``) and snake_case, or through
:class:`ConfigLoader`, which merges files, environment and overrides.

All validation happens once, at construction.  Invalid or conflicting
options raise :class:`~pathwise.faults.ConfigFault`; nothing is checked
per request.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .faults import ConfigFault

logger = logging.getLogger("pathwise.config")

# Default TTL staircase: (minimum requests per window, ttl in ms)
DEFAULT_TTL_STAIRCASE: List[Tuple[int, int]] = [
    (100, 3_600_000),
    (50, 1_800_000),
    (10, 300_000),
]


@dataclass
class FeatureFlags:
    """Per-stage switches of the ML pipeline (all on by default)."""
    performance_prediction: bool = True
    resource_allocation: bool = True
    anomaly_detection: bool = True
    query_optimization: bool = True
    load_balancing: bool = True
    auto_healing: bool = True


@dataclass
class MLConfig:
    enabled: bool = True
    training_interval_minutes: float = 30.0
    prediction_threshold: float = 0.7
    training_epochs: int = 10
    max_training_samples: int = 2000
    seed: Optional[int] = None


@dataclass
class NeuralConfig:
    hidden_size: int = 8
    learning_rate: float = 0.1
    threshold: float = 0.3
    min_training_samples: int = 20


@dataclass
class PerformanceConfig:
    target_latency_ms: float = 100.0
    max_memory_mb: float = 512.0
    cpu_threshold: float = 80.0


@dataclass
class MetricsConfig:
    retention_hours: float = 24.0
    max_samples: int = 100_000
    cleanup_interval_seconds: float = 60.0
    detection_window: int = 1000
    prediction_window: int = 100
    pattern_alpha: float = 0.5
    pattern_ttl_seconds: float = 3600.0
    alert_history: int = 1000


@dataclass
class CacheConfig:
    default_ttl_ms: int = 60_000
    ttl_staircase: List[Tuple[int, int]] = field(
        default_factory=lambda: list(DEFAULT_TTL_STAIRCASE)
    )
    max_entries: int = 10_000
    cacheable_methods: Tuple[str, ...] = ("GET",)
    cacheable_statuses: Tuple[int, ...] = (200, 304)


@dataclass
class BatchingConfig:
    window_ms: float = 10.0
    min_frequency: int = 10
    recency_seconds: float = 60.0


@dataclass
class RoutesConfig:
    capacity: int = 10_000
    fp_rate: float = 0.01
    known: List[str] = field(default_factory=list)


@dataclass
class AllocatorConfig:
    epsilon: float = 0.1
    learning_rate: float = 0.1
    discount: float = 0.9


@dataclass
class CompressionConfig:
    minimum_size: int = 1024
    level: int = 6


@dataclass
class OptimizerConfig:
    """Root configuration of an :class:`~pathwise.engine.OptimizationEngine`."""
    enable_batching: bool = False
    enable_caching: bool = False
    enable_prefetching: bool = False
    enable_compression: bool = False
    ml: MLConfig = field(default_factory=MLConfig)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    neural: NeuralConfig = field(default_factory=NeuralConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    routes: RoutesConfig = field(default_factory=RoutesConfig)
    allocator: AllocatorConfig = field(default_factory=AllocatorConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "OptimizerConfig":
        """Build and validate a config from a (possibly camelCase) dict."""
        return _instantiate(cls, data or {}, path="")

    @property
    def optimizations_enabled(self) -> bool:
        """True when any stage beyond header stamping is active."""
        return (
            self.enable_batching
            or self.enable_caching
            or self.enable_prefetching
            or self.enable_compression
            or self.ml.enabled
            or bool(self.routes.known)
        )

    def validate(self) -> None:
        """Reject invalid or conflicting options."""
        _positive("ml.training_interval_minutes", self.ml.training_interval_minutes)
        if not (0.0 < self.ml.prediction_threshold <= 1.0):
            raise ConfigFault("ml.prediction_threshold", "must be in (0, 1]")
        if self.ml.training_epochs < 1:
            raise ConfigFault("ml.training_epochs", "must be >= 1")
        _positive("ml.max_training_samples", self.ml.max_training_samples)

        if self.neural.hidden_size < 1:
            raise ConfigFault("neural.hidden_size", "must be >= 1")
        _positive("neural.learning_rate", self.neural.learning_rate)
        _positive("neural.threshold", self.neural.threshold)
        if self.neural.min_training_samples < 1:
            raise ConfigFault("neural.min_training_samples", "must be >= 1")

        _positive("performance.target_latency_ms", self.performance.target_latency_ms)
        _positive("performance.max_memory_mb", self.performance.max_memory_mb)
        if not (0.0 < self.performance.cpu_threshold <= 100.0):
            raise ConfigFault("performance.cpu_threshold", "must be in (0, 100]")

        _positive("metrics.retention_hours", self.metrics.retention_hours)
        _positive("metrics.max_samples", self.metrics.max_samples)
        _positive("metrics.cleanup_interval_seconds", self.metrics.cleanup_interval_seconds)
        _positive("metrics.detection_window", self.metrics.detection_window)
        _positive("metrics.prediction_window", self.metrics.prediction_window)
        _positive("metrics.pattern_ttl_seconds", self.metrics.pattern_ttl_seconds)
        _positive("metrics.alert_history", self.metrics.alert_history)
        if not (0.0 < self.metrics.pattern_alpha <= 1.0):
            raise ConfigFault("metrics.pattern_alpha", "must be in (0, 1]")

        self._validate_cache()

        if not (0.0 < self.batching.window_ms <= 1000.0):
            raise ConfigFault("batching.window_ms", "must be in (0, 1000]")
        if self.batching.min_frequency < 0:
            raise ConfigFault("batching.min_frequency", "must be >= 0")
        _positive("batching.recency_seconds", self.batching.recency_seconds)

        _positive("routes.capacity", self.routes.capacity)
        if not (0.0 < self.routes.fp_rate < 1.0):
            raise ConfigFault("routes.fp_rate", "must be in (0, 1)")

        if not (0.0 < self.allocator.epsilon < 1.0):
            raise ConfigFault("allocator.epsilon", "exploration must stay in (0, 1)")
        if not (0.0 < self.allocator.learning_rate <= 1.0):
            raise ConfigFault("allocator.learning_rate", "must be in (0, 1]")
        if not (0.0 <= self.allocator.discount < 1.0):
            raise ConfigFault("allocator.discount", "must be in [0, 1)")

        if self.compression.minimum_size < 0:
            raise ConfigFault("compression.minimum_size", "must be >= 0")
        if not (1 <= self.compression.level <= 9):
            raise ConfigFault("compression.level", "must be in [1, 9]")

        if self.enable_prefetching and not self.ml.enabled:
            raise ConfigFault(
                "enable_prefetching",
                "prefetching relies on the ML pipeline; enable ml.enabled or disable prefetching",
            )

    def _validate_cache(self) -> None:
        cache = self.cache
        _positive("cache.default_ttl_ms", cache.default_ttl_ms)
        _positive("cache.max_entries", cache.max_entries)
        previous: Optional[Tuple[int, int]] = None
        for step in cache.ttl_staircase:
            if len(step) != 2:
                raise ConfigFault("cache.ttl_staircase", "steps must be (threshold, ttl_ms) pairs")
            threshold, ttl = step
            if threshold <= 0 or ttl <= 0:
                raise ConfigFault("cache.ttl_staircase", "thresholds and TTLs must be > 0")
            if previous is not None:
                if threshold >= previous[0]:
                    raise ConfigFault("cache.ttl_staircase", "thresholds must be strictly decreasing")
                if ttl > previous[1]:
                    raise ConfigFault(
                        "cache.ttl_staircase",
                        "TTL must not grow as the frequency threshold drops",
                    )
            previous = (threshold, ttl)
        if previous is not None and cache.default_ttl_ms > previous[1]:
            raise ConfigFault(
                "cache.default_ttl_ms",
                "must not exceed the TTL of the lowest staircase step",
            )
        cache.cacheable_methods = tuple(m.upper() for m in cache.cacheable_methods)
        cache.ttl_staircase = [tuple(s) for s in cache.ttl_staircase]


def _positive(key: str, value: float) -> None:
    if value is None or value <= 0:
        raise ConfigFault(key, "must be > 0")


# ============================================================================
# Dict → dataclass instantiation
# ============================================================================

# Option names that do not survive a mechanical camelCase conversion, plus
# the names used by the original JavaScript options object.
_ALIASES = {
    "maxMemoryMB": "max_memory_mb",
    "maxMemory": "max_memory_mb",
    "targetLatencyMs": "target_latency_ms",
    "targetLatency": "target_latency_ms",
    "trainingInterval": "training_interval_minutes",
    "retentionPeriod": "retention_hours",
    "optimization": "performance",
    "cpuThreshold": "cpu_threshold",
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _normalize_key(key: str) -> str:
    if key in _ALIASES:
        return _ALIASES[key]
    return _CAMEL.sub("_", key).lower()


def _instantiate(config_class: type, data: Dict[str, Any], path: str) -> Any:
    if not isinstance(data, dict):
        raise ConfigFault(path or "<root>", f"expected a mapping, got {type(data).__name__}")

    normalized = {_normalize_key(k): v for k, v in data.items()}
    known = {f.name: f for f in fields(config_class)}

    unknown = set(normalized) - set(known)
    if unknown:
        name = f"{path}.{sorted(unknown)[0]}" if path else sorted(unknown)[0]
        raise ConfigFault(name, "unknown option")

    kwargs: Dict[str, Any] = {}
    for name, field_info in known.items():
        if name not in normalized:
            continue
        value = normalized[name]
        qualified = f"{path}.{name}" if path else name
        nested = _nested_type(config_class, field_info)
        if nested is not None:
            kwargs[name] = _instantiate(nested, value or {}, qualified)
        else:
            kwargs[name] = _coerce(qualified, field_info, value)
    return config_class(**kwargs)


def _nested_type(config_class: type, field_info: Any) -> Optional[type]:
    if field_info.default_factory is not MISSING:
        sample = field_info.default_factory()
        if is_dataclass(sample):
            return type(sample)
    return None


def _is_option(parts: List[str]) -> bool:
    """Whether ``parts`` names a field of the :class:`OptimizerConfig` tree."""
    config_class: Optional[type] = OptimizerConfig
    for part in parts:
        if config_class is None:
            return False
        known = {f.name: f for f in fields(config_class)}
        if part not in known:
            return False
        config_class = _nested_type(config_class, known[part])
    return True


def _coerce(key: str, field_info: Any, value: Any) -> Any:
    """Basic type checking against the field's default."""
    if field_info.default is not MISSING:
        default = field_info.default
    elif field_info.default_factory is not MISSING:
        default = field_info.default_factory()
    else:
        return value

    if default is None:
        return value
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigFault(key, f"expected bool, got {type(value).__name__}")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigFault(key, f"expected number, got {type(value).__name__}")
        return type(default)(value) if isinstance(default, float) else value
    if isinstance(default, (list, tuple)):
        if not isinstance(value, (list, tuple)):
            raise ConfigFault(key, f"expected a sequence, got {type(value).__name__}")
        return type(default)(value)
    return value


# ============================================================================
# Layered loader
# ============================================================================

class ConfigLoader:
    """
    Loads and merges configuration from multiple sources with precedence:
    overrides > environment variables > .env file > config files > defaults
    """

    def __init__(self, env_prefix: str = "PATHWISE_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}

    @classmethod
    def load(
        cls,
        paths: Optional[List[str]] = None,
        env_prefix: str = "PATHWISE_",
        env_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "ConfigLoader":
        """
        Load configuration from multiple sources with proper merge strategy.

        Args:
            paths: Config file paths (YAML or JSON, glob patterns supported)
            env_prefix: Prefix for environment variables
            env_file: Path to .env file
            overrides: Manual overrides (highest precedence)

        Returns:
            Configured ConfigLoader instance
        """
        loader = cls(env_prefix=env_prefix)

        for pattern in paths or []:
            loader._load_from_files(pattern)

        if env_file:
            loader._load_env_file(env_file)

        loader._load_from_env()

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader

    def build(self) -> OptimizerConfig:
        """Instantiate and validate the merged configuration."""
        return OptimizerConfig.from_dict(self.config_data)

    def get(self, path: str, default: Any = None) -> Any:
        """Get config value by dot-separated path."""
        current: Any = self.config_data
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.config_data))

    def _load_from_files(self, pattern: str) -> None:
        from glob import glob

        matches = sorted(glob(pattern))
        if not matches and not any(ch in pattern for ch in "*?["):
            raise ConfigFault(pattern, "config file not found")
        for path_str in matches:
            path = Path(path_str)
            if path.suffix == ".json":
                self._load_json_file(path)
            elif path.suffix in (".yaml", ".yml"):
                self._load_yaml_file(path)
            else:
                raise ConfigFault(str(path), "unsupported config format (use .yaml, .yml or .json)")

    def _load_json_file(self, path: Path) -> None:
        with open(path) as f:
            data = json.load(f)
        if data:
            self._merge_dict(self.config_data, data)

    def _load_yaml_file(self, path: Path) -> None:
        with open(path) as f:
            data = yaml.safe_load(f)
        if data:
            self._merge_dict(self.config_data, data)

    def _load_env_file(self, path: str) -> None:
        env_path = Path(path)
        if not env_path.exists():
            return

        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip('"').strip("'")
                    if key.startswith(self.env_prefix):
                        self._set_nested(key, value)

    def _load_from_env(self) -> None:
        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str) -> None:
        """
        Convert PATHWISE_ML__TRAINING_INTERVAL_MINUTES to a nested dict.

        Prefixed variables that do not name an option (``PATHWISE_HOME``)
        are ignored.
        """
        parts = key[len(self.env_prefix):].lower().split("__")
        if not _is_option(parts):
            logger.debug("Ignoring %s: not a configuration option", key)
            return

        current = self.config_data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict) -> None:
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value
