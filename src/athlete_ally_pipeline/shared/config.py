"""Configuration file loading with environment variable substitution."""

import os
import re
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ['json', 'text']:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class HealthConfig(BaseModel):
    """HTTP server configuration for health, metrics and API routes."""
    host: str = Field(default="0.0.0.0", description="HTTP server host")
    port: int = Field(default=4101, description="HTTP server port")


class RetryConfig(BaseModel):
    """Retry configuration for startup connections."""
    max_attempts: int = Field(default=5, ge=1, description="Maximum retry attempts")
    initial_backoff_seconds: float = Field(default=1.0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=30.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")


class TelemetryConfig(BaseModel):
    """Tracing configuration."""
    tracer: str = Field(default="null", description="Tracer implementation: null or logging")

    @field_validator('tracer')
    @classmethod
    def validate_tracer(cls, v):
        if v not in ['null', 'logging']:
            raise ValueError("Tracer must be 'null' or 'logging'")
        return v


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Args:
        obj: Configuration object (dict, list, string, or other)

    Returns:
        Object with environment variables substituted

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            # Handle default values: VAR_NAME:-default_value
            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_yaml_config(config_file: Optional[str]) -> Dict[str, Any]:
    """
    Load a YAML configuration file and substitute environment variables.

    Returns an empty dict when no file is given, so settings fall back to
    their defaults and environment variables.

    Raises:
        FileNotFoundError: If config_file is given but does not exist
    """
    if not config_file:
        return {}

    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_file, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    return substitute_env_vars(raw_config)


def apply_env_overrides(
    data: Dict[str, Any],
    overrides: Mapping[str, Tuple[str, ...]],
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """
    Copy well-known environment variables into nested configuration keys.

    Environment variables take precedence over config file values.

    Args:
        data: Configuration loaded from YAML
        overrides: Env var name -> key path inside data
        environ: Environment to read (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    result = dict(data)

    for env_name, path in overrides.items():
        value = environ.get(env_name)
        if value is None or value == '':
            continue

        node = result
        for key in path[:-1]:
            child = node.get(key)
            child = dict(child) if isinstance(child, dict) else {}
            node[key] = child
            node = child
        node[path[-1]] = value

    return result
