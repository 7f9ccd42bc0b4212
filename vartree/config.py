"""Configuration management for vartree.

Three sections:
- training: default thresholds for new builds (overridable per build spec)
- build: query concurrency, timeouts and retry policy
- defaults: ledger location, statistics provider and database

Config resolution order (highest priority first):
1. Programmatic (VartreeConfig constructed in code)
2. Environment variables (VARTREE_*, also read from a .env file)
3. Config file (~/.config/vartree/config.json, managed by `vartree config`)
4. Hardcoded defaults
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv

from .core.models import TrainingParameters

logger = logging.getLogger(__name__)


# =============================================================================
# Config file location
# =============================================================================

CONFIG_DIR = Path.home() / ".config" / "vartree"
CONFIG_FILE = CONFIG_DIR / "config.json"


# =============================================================================
# Config sections
# =============================================================================


@dataclass
class TrainingConfig:
    """Default training parameters for builds that don't set their own."""

    cv_limit: float = 10.0
    total_count_limit: int = 1
    cv_decimal_places: int = 5
    average_decimal_places: int = 2
    max_depth: int = 15
    max_features: int = 8
    debug_messages: bool = False


@dataclass
class BuildConfig:
    """Query execution tuning.

    - max_concurrent: statistics queries in flight at once
    - max_pending_nodes: node evaluations doing their own work at once
    - query_timeout: seconds before one query attempt is abandoned
    - max_retries: attempts per query before the branch is marked failed
    """

    max_concurrent: int = 8
    max_pending_nodes: int = 64
    query_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    qpm_override: int | None = None


@dataclass
class DefaultsConfig:
    """Non-training default settings."""

    ledger_path: str = "./storage/vartree.db"
    provider: str = "sqlite"
    database: str = "./data/vartree.sqlite"


_SECTIONS = ("training", "build", "defaults")


# =============================================================================
# Main config class
# =============================================================================


@dataclass
class VartreeConfig:
    """Top-level vartree configuration.

    Examples:
        # Package use, no files needed
        config = VartreeConfig(build=BuildConfig(max_concurrent=4))

        # CLI use, loads from ~/.config/vartree/config.json
        config = VartreeConfig.load()
    """

    training: TrainingConfig = field(default_factory=TrainingConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    @classmethod
    def load(cls) -> "VartreeConfig":
        """Load config from file + env vars.

        Priority: env var values > config.json values > defaults.
        """
        config = cls()

        # Layer 1: config file
        if CONFIG_FILE.exists():
            try:
                with open(CONFIG_FILE) as f:
                    data = json.load(f)
                _apply_dict(config, data)
            except (json.JSONDecodeError, OSError, ValueError) as exc:
                logger.warning("Failed to load config from %s: %s", CONFIG_FILE, exc)

        # Layer 2: env var overrides
        _ensure_dotenv()
        _apply_env(config)

        return config

    def save(self) -> None:
        """Save config to ~/.config/vartree/config.json."""
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {
            "training": asdict(self.training),
            "build": asdict(self.build),
        }
        if self.defaults != DefaultsConfig():
            data["defaults"] = asdict(self.defaults)
        with open(CONFIG_FILE, "w") as f:
            json.dump(data, f, indent=2)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for display."""
        return {
            "training": asdict(self.training),
            "build": asdict(self.build),
            "defaults": asdict(self.defaults),
        }

    def training_parameters(self) -> TrainingParameters:
        """Training defaults as a validated TrainingParameters."""
        return TrainingParameters(**asdict(self.training))

    def set_value(self, key: str, raw: str) -> None:
        """Set a dotted key (e.g. ``build.max_concurrent``) from its text form.

        Raises:
            KeyError: Unknown section or field
            ValueError: Value doesn't parse as the field's type
        """
        section_name, _, name = key.partition(".")
        if section_name not in _SECTIONS or not name:
            raise KeyError(key)
        section = getattr(self, section_name)
        field_types = {f.name: f.type for f in fields(section)}
        if name not in field_types:
            raise KeyError(key)
        setattr(section, name, _coerce(raw, field_types[name]))

    @property
    def ledger_path_resolved(self) -> Path:
        """Resolve the ledger path, creating its directory."""
        path = Path(self.defaults.ledger_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


# =============================================================================
# Value coercion and application
# =============================================================================


def _coerce(raw: Any, field_type: Any) -> Any:
    """Convert a raw (usually string) value to a dataclass field's type."""
    type_name = field_type.__name__ if isinstance(field_type, type) else str(field_type)
    if raw is None and "None" in type_name:
        return None
    if isinstance(raw, str):
        if "None" in type_name and raw.strip().lower() in ("", "none", "null"):
            return None
        if type_name.startswith("bool"):
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(f"Invalid boolean: {raw!r}")
    if type_name.startswith("int"):
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid integer: {raw!r}") from None
    if type_name.startswith("float"):
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid number: {raw!r}") from None
    return raw


def _apply_dict(config: VartreeConfig, data: dict) -> None:
    """Apply a dict of values onto a VartreeConfig."""
    for section_name in _SECTIONS:
        values = data.get(section_name)
        if not isinstance(values, dict):
            continue
        section = getattr(config, section_name)
        field_types = {f.name: f.type for f in fields(section)}
        for k, v in values.items():
            if k in field_types:
                setattr(section, k, _coerce(v, field_types[k]))


# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "VARTREE_CV_LIMIT": ("training", "cv_limit"),
    "VARTREE_TOTAL_COUNT_LIMIT": ("training", "total_count_limit"),
    "VARTREE_MAX_DEPTH": ("training", "max_depth"),
    "VARTREE_MAX_FEATURES": ("training", "max_features"),
    "VARTREE_DEBUG_MESSAGES": ("training", "debug_messages"),
    "VARTREE_MAX_CONCURRENT": ("build", "max_concurrent"),
    "VARTREE_MAX_PENDING_NODES": ("build", "max_pending_nodes"),
    "VARTREE_QUERY_TIMEOUT": ("build", "query_timeout"),
    "VARTREE_MAX_RETRIES": ("build", "max_retries"),
    "VARTREE_QPM_OVERRIDE": ("build", "qpm_override"),
    "VARTREE_LEDGER_PATH": ("defaults", "ledger_path"),
    "VARTREE_PROVIDER": ("defaults", "provider"),
    "VARTREE_DATABASE": ("defaults", "database"),
}


def _apply_env(config: VartreeConfig) -> None:
    for env_name, (section_name, name) in _ENV_OVERRIDES.items():
        val = os.environ.get(env_name)
        if not val:
            continue
        try:
            config.set_value(f"{section_name}.{name}", val)
        except ValueError:
            logger.warning("Invalid %s=%r, ignoring", env_name, val)


_dotenv_loaded = False


def _ensure_dotenv() -> None:
    """Load a .env file into os.environ once, without overriding real env vars."""
    global _dotenv_loaded
    if _dotenv_loaded:
        return
    _dotenv_loaded = True
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)


# =============================================================================
# Global config singleton
# =============================================================================

_config: VartreeConfig | None = None


def get_config() -> VartreeConfig:
    """Get the global VartreeConfig instance.

    First call loads from file + env vars. Subsequent calls return cached instance.
    Use configure() to replace the global config programmatically.
    """
    global _config
    if _config is None:
        _config = VartreeConfig.load()
    return _config


def configure(config: VartreeConfig) -> None:
    """Set the global VartreeConfig programmatically."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global config (forces reload on next get_config())."""
    global _config
    _config = None
