"""
DAG Flow — Config Loader

Two-tier configuration over a base YAML file:
  1. Per-environment overlay files (config/{DAGFLOW_ENV}.yaml merged over base)
  2. Environment variable overrides (DAGFLOW_ prefixed)

Usage:
    from dagflow.config import load_config, load_settings

    cfg = load_config(base_path="dagflow.yaml", env="prod")
    timeout = get_config_value("engine.default_timeout", cfg, default=None)

    settings = load_settings()
    wf = Workflow("invoice_approval", settings=settings)

Environment variables:
    DAGFLOW_ENV          — active profile (dev, staging, prod)
    DAGFLOW_CONFIG_DIR   — directory for overlay files (default: config/)
    DAGFLOW_*            — overrides, "__" separates nesting levels
                           (e.g. DAGFLOW_RETRY__DEFAULT__MAX_RETRIES=3)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from dagflow.retry import DEFAULT_POLICY, RetryPolicy, get_retry_policy

logger = logging.getLogger("dagflow.config")

ENV_PREFIX = "DAGFLOW_"
DEFAULT_CONFIG_PATH = "dagflow.yaml"


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_scalar(value: str) -> Any:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 1: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml beside the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get(f"{ENV_PREFIX}ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load DAGFLOW_ prefixed environment variables as config overrides.

    Naming convention:
      DAGFLOW_ENGINE__LOG_LEVEL=DEBUG → {"engine": {"log_level": "DEBUG"}}
      DAGFLOW_RETRY__STEPS__FETCH__MAX_RETRIES=5
        → {"retry": {"steps": {"fetch": {"max_retries": 5}}}}

    Values are parsed as YAML scalars (numbers, booleans, null).
    DAGFLOW_ENV, DAGFLOW_CONFIG_DIR and DAGFLOW_VERSION are meta config and skipped.
    """
    excluded = {f"{prefix}ENV", f"{prefix}CONFIG_DIR", f"{prefix}VERSION"}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        path = [part.lower() for part in key[len(prefix):].split("__") if part]
        if not path:
            continue
        _set_nested(overrides, path, _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = DEFAULT_CONFIG_PATH,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with layered merging.

    Priority (highest wins):
      1. Environment variable overrides (DAGFLOW_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (dagflow.yaml)

    A missing base file is not an error; every setting has a default.
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get(f"{ENV_PREFIX}ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("engine.default_timeout", cfg, 30)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Engine Settings
# ═══════════════════════════════════════════════════════════════════

def _optional_seconds(value: Any, name: str) -> float | None:
    if value is None:
        return None
    seconds = float(value)
    if seconds <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")
    return seconds


@dataclass
class EngineSettings:
    """Engine-wide defaults a Workflow falls back on."""
    log_level: str = "INFO"
    default_retry: RetryPolicy = DEFAULT_POLICY
    step_retry: dict[str, RetryPolicy] = field(default_factory=dict)
    default_timeout: float | None = None      # per attempt, normal steps
    human_gate_timeout: float | None = None   # review deadline, human gates

    def retry_policy_for(self, step_name: str) -> RetryPolicy:
        return self.step_retry.get(step_name, self.default_retry)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EngineSettings:
        engine = config.get("engine") or {}
        step_names = ((config.get("retry") or {}).get("steps") or {}).keys()
        return cls(
            log_level=str(engine.get("log_level", "INFO")).upper(),
            default_retry=get_retry_policy(None, config),
            step_retry={name: get_retry_policy(name, config) for name in step_names},
            default_timeout=_optional_seconds(
                engine.get("default_timeout"), "engine.default_timeout"),
            human_gate_timeout=_optional_seconds(
                engine.get("human_gate_timeout"), "engine.human_gate_timeout"),
        )


def load_settings(
    base_path: str = DEFAULT_CONFIG_PATH,
    env: str = "",
    config_dir: str = "",
) -> EngineSettings:
    """Load config from disk and environment and build EngineSettings."""
    return EngineSettings.from_config(load_config(base_path, env=env, config_dir=config_dir))
