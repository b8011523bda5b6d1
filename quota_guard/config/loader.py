"""
Configuration management and loading.

Handles alert, session, persistence and tier settings.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from quota_guard.core.catalog import QUOTA_CATALOG, QUOTA_FIELDS, QuotaCatalog, Tier


@dataclass(frozen=True)
class AlertConfig:
    """Usage alert settings."""
    enabled: bool = True
    warning_threshold: float = 0.8

    def __post_init__(self):
        """Validate threshold is a fraction below 1."""
        if not 0 < self.warning_threshold < 1:
            raise ValueError("warning_threshold must be between 0 and 1")


@dataclass(frozen=True)
class SessionConfig:
    """Turn session tracking settings."""
    stale_after_seconds: float = 1800
    sweep_interval_seconds: float = 300
    completed_retention_seconds: float = 86400

    def __post_init__(self):
        """Validate durations are positive."""
        if self.stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if self.completed_retention_seconds <= 0:
            raise ValueError("completed_retention_seconds must be > 0")

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_seconds)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(seconds=self.sweep_interval_seconds)

    @property
    def completed_retention(self) -> timedelta:
        return timedelta(seconds=self.completed_retention_seconds)


@dataclass(frozen=True)
class PersistenceConfig:
    """Ledger write retry settings."""
    max_retries: int = 3
    retry_delay_seconds: float = 0.1

    def __post_init__(self):
        """Validate retry values."""
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")


@dataclass(frozen=True)
class QuotaGuardConfig:
    """Complete Quota Guard configuration."""
    alerts: AlertConfig = field(default_factory=AlertConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    catalog: QuotaCatalog = QUOTA_CATALOG


_SECTION_KEYS = {
    "alerts": {"enabled", "warning_threshold"},
    "sessions": {"stale_after_seconds", "sweep_interval_seconds", "completed_retention_seconds"},
    "persistence": {"max_retries", "retry_delay_seconds"},
}


def load_config(path: str) -> QuotaGuardConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional. Unknown keys are rejected so a typo never
    silently leaves a default limit in place.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated QuotaGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return QuotaGuardConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    return parse_config(raw_config)


def parse_config(raw_config: Mapping[str, Any]) -> QuotaGuardConfig:
    """Validate an already-parsed configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_top_keys = set(_SECTION_KEYS) | {"tiers"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    alerts_data = _section(raw_config, "alerts")
    if "enabled" in alerts_data and not isinstance(alerts_data["enabled"], bool):
        raise ValueError("'alerts.enabled' must be a boolean")
    alerts = AlertConfig(
        enabled=alerts_data.get("enabled", True),
        warning_threshold=_number(alerts_data, "warning_threshold", "alerts", 0.8),
    )

    sessions_data = _section(raw_config, "sessions")
    sessions = SessionConfig(
        stale_after_seconds=_number(sessions_data, "stale_after_seconds", "sessions", 1800),
        sweep_interval_seconds=_number(sessions_data, "sweep_interval_seconds", "sessions", 300),
        completed_retention_seconds=_number(
            sessions_data, "completed_retention_seconds", "sessions", 86400
        ),
    )

    persistence_data = _section(raw_config, "persistence")
    max_retries = persistence_data.get("max_retries", 3)
    if not isinstance(max_retries, int) or isinstance(max_retries, bool):
        raise ValueError("'persistence.max_retries' must be an integer")
    persistence = PersistenceConfig(
        max_retries=max_retries,
        retry_delay_seconds=_number(persistence_data, "retry_delay_seconds", "persistence", 0.1),
    )

    catalog = QUOTA_CATALOG
    tiers_data = raw_config.get("tiers")
    if tiers_data:
        catalog = QUOTA_CATALOG.with_overrides(_parse_tier_overrides(tiers_data))

    return QuotaGuardConfig(
        alerts=alerts,
        sessions=sessions,
        persistence=persistence,
        catalog=catalog,
    )


def _section(raw_config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Fetch a section and reject unknown keys in it."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Mapping[str, Any], key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_tier_overrides(tiers_data: Any) -> Dict[Tier, Dict[str, Any]]:
    """Parse and validate per-tier quota overrides.

    Args:
        tiers_data: Mapping of tier name to quota fields

    Returns:
        Overrides keyed by Tier

    Raises:
        ValueError: If a tier or field is unknown or has the wrong type
    """
    if not isinstance(tiers_data, dict):
        raise ValueError("'tiers' must be a dictionary")

    overrides: Dict[Tier, Dict[str, Any]] = {}
    for tier_name, values in tiers_data.items():
        tier = Tier.parse(tier_name)
        if tier is None:
            valid_tiers = [t.value for t in Tier]
            raise ValueError(f"Unknown tier '{tier_name}', must be one of: {valid_tiers}")
        if not isinstance(values, dict):
            raise ValueError(f"Tier '{tier_name}' must be a dictionary")

        unknown_keys = set(values.keys()) - set(QUOTA_FIELDS)
        if unknown_keys:
            raise ValueError(f"Unknown keys in tiers.{tier_name}: {unknown_keys}")

        parsed: Dict[str, Any] = {}
        for key, value in values.items():
            path = f"tiers.{tier_name}.{key}"
            if key == "allowed_models":
                if not isinstance(value, list) or not all(isinstance(m, str) for m in value):
                    raise ValueError(f"'{path}' must be a list of model names")
                parsed[key] = tuple(value)
            elif key.startswith("can_"):
                if not isinstance(value, bool):
                    raise ValueError(f"'{path}' must be a boolean")
                parsed[key] = value
            else:
                if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                    raise ValueError(f"'{path}' must be a non-negative number")
                parsed[key] = float(value) if key == "monthly_cost_limit" else int(value)
        overrides[tier] = parsed

    return overrides
