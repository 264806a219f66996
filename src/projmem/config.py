"""
Configuration for projmem.

A MemoryConfig is the only thing a MemoryStore is constructed from. Loading
it (from YAML and PROJMEM_* environment variables) is the caller's job; the
store never inspects its environment.

Priority (highest to lowest):
    1. Explicit overrides (CLI flags)
    2. Environment variables (PROJMEM_*)
    3. YAML config file
    4. Field defaults
"""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from projmem.errors import ConfigError
from projmem.schema import StorageProfile

DEFAULT_LOCATION = ".projmem/memory.db"

# Environment variable -> config field
ENV_VARS: dict[str, str] = {
    "PROJMEM_BACKEND": "backend",
    "PROJMEM_DB_PATH": "location",
    "PROJMEM_LOCATION": "location",
    "PROJMEM_MAX_DECISIONS": "max_decisions",
    "PROJMEM_MAX_PATTERNS": "max_patterns",
    "PROJMEM_MAX_CONTEXT_KEYS": "max_context_keys",
    "PROJMEM_POOL_SIZE": "pool_size",
    "PROJMEM_POOL_TIMEOUT_SECONDS": "pool_timeout_seconds",
    "PROJMEM_RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window_seconds",
    "PROJMEM_RATE_LIMIT_MAX_OPS": "rate_limit_max_ops",
    "PROJMEM_MAX_TEXT_LENGTH": "max_text_length",
}


class MemoryConfig(BaseModel):
    """
    Resolved configuration for a memory store.

    Attributes:
        backend: Which storage profile to use
        location: SQLite file path (or ":memory:") or PostgreSQL DSN
        max_decisions: Decision count ceiling
        max_patterns: Pattern count ceiling
        max_context_keys: Context entry count ceiling
        pool_size: Number of pooled connections
        pool_timeout_seconds: How long a call waits for a connection
        rate_limit_window_seconds: Fixed window length
        rate_limit_max_ops: Operations allowed per window
        max_text_length: Free-text truncation length
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: StorageProfile = Field(default=StorageProfile.SQLITE)
    location: str = Field(default=DEFAULT_LOCATION, min_length=1)
    max_decisions: int = Field(default=1000, ge=1)
    max_patterns: int = Field(default=500, ge=1)
    max_context_keys: int = Field(default=100, ge=1)
    pool_size: int = Field(default=5, ge=1, le=64)
    pool_timeout_seconds: float = Field(default=5.0, gt=0)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_max_ops: int = Field(default=100, ge=1)
    max_text_length: int = Field(default=10000, ge=100)


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> MemoryConfig:
    """
    Load a MemoryConfig from an optional YAML file, overlaid with environment variables.

    Args:
        path: Optional YAML file using MemoryConfig field names
        environ: Environment mapping (defaults to os.environ)
        **overrides: Final explicit values (e.g. from CLI flags); None values are ignored

    Returns:
        Validated MemoryConfig

    Raises:
        ConfigError: If the file cannot be read or a value is invalid
    """
    data: dict[str, Any] = {}
    source = "environment"

    if path is not None:
        cfg_path = Path(path)
        source = cfg_path.name
        try:
            with cfg_path.open() as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(
                message=f"Cannot read config file {cfg_path.name}: {exc.__class__.__name__}",
                source=source,
            ) from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(
                message=f"Config file {cfg_path.name} must contain a mapping",
                source=source,
            )
        data.update(loaded or {})

    _apply_env_overrides(data, os.environ if environ is None else environ)
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return MemoryConfig.model_validate(data)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(message=f"Invalid configuration: {problems}", source=source) from exc


def _apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    """Overlay PROJMEM_* environment variables onto the parsed file data."""
    for var, field_name in ENV_VARS.items():
        if value := environ.get(var):
            data[field_name] = value
