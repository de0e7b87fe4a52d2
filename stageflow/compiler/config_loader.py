"""Configuration loader for stageflow.

Parses configuration into kernel config models. Supports two sources:

1. **kind: Config YAML** (or a plain TOML file), loaded via explicit path
   or the ``STAGEFLOW_CONFIG_PATH`` env var.
2. **pyproject.toml [tool.stageflow]**: auto-discovery fallback, searched
   in the current directory and its parents.

The kernel never touches config file formats directly.
"""

from __future__ import annotations

import os
import re
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

import yaml

from stageflow.kernel.config.models import LoggingConfig, StageflowConfig, StorageConfig
from stageflow.kernel.domain.graph import SkipPolicy
from stageflow.kernel.exceptions import ConfigurationError, ValidationError
from stageflow.kernel.logging import get_logger
from stageflow.kernel.orchestration.models import OrchestratorConfig

_TRUTHY_VALUES = frozenset({"true", "1", "yes", "on", "enabled"})
_FALSY_VALUES = frozenset({"false", "0", "no", "off", "disabled"})

logger = get_logger(__name__)


def _parse_bool_env(value: str) -> bool:
    """Parse boolean from environment variable value.

    Raises
    ------
    ValueError
        If value is not a recognized boolean string
    """
    normalized = value.lower().strip()
    if normalized in _TRUTHY_VALUES:
        return True
    if normalized in _FALSY_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ``${VAR}`` and ``${VAR:default}`` in strings.

    Unknown variables without a default keep their placeholder.

    Examples
    --------
    >>> os.environ["STAGEFLOW_DOC_VAR"] = "x"
    >>> substitute_env_vars({"a": "${STAGEFLOW_DOC_VAR}", "b": ["${NOPE_NOT_SET:fallback}"]})
    {'a': 'x', 'b': ['fallback']}
    """
    if isinstance(data, str):

        def replacer(match: re.Match[str]) -> str:
            var_name, default = match.group(1), match.group(2)
            value = os.environ.get(var_name)
            if value is not None:
                return value
            if default is not None:
                return default
            logger.debug("Environment variable ${{{}}} not found, keeping placeholder", var_name)
            return match.group(0)

        return ConfigLoader.ENV_VAR_PATTERN.sub(replacer, data)

    if isinstance(data, dict):
        return {key: substitute_env_vars(value) for key, value in data.items()}

    if isinstance(data, list):
        return [substitute_env_vars(item) for item in data]

    return data


@lru_cache(maxsize=32)
def _load_and_parse_cached(path_str: str) -> StageflowConfig:
    """Cached configuration loader."""
    return ConfigLoader()._load_and_parse(Path(path_str))


class ConfigLoader:
    """Loads and processes stageflow configuration files."""

    ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")

    def load_config_file(self, path: str | Path | None = None) -> StageflowConfig:
        """Load configuration from YAML or TOML.

        Parameters
        ----------
        path : str | Path | None
            Path to config file. If None, searches using discovery order.

        Raises
        ------
        FileNotFoundError
            If no configuration file is found
        ConfigurationError
            If the file is not a valid configuration
        """
        config_path = self._find_config_file(path)
        return _load_and_parse_cached(str(config_path.absolute()))

    def _load_and_parse(self, config_path: Path) -> StageflowConfig:
        logger.info("Loading configuration from {}", config_path)
        if config_path.suffix in (".yaml", ".yml"):
            return self._load_yaml_config(config_path)
        return self._load_toml_config(config_path)

    def _load_yaml_config(self, config_path: Path) -> StageflowConfig:
        """Load and parse a ``kind: Config`` YAML file."""
        with config_path.open("r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(config_path.name, f"invalid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(config_path.name, f"expected a mapping, got {type(data).__name__}")

        kind = data.get("kind")
        if kind != "Config":
            raise ConfigurationError(
                config_path.name, f"YAML config must use 'kind: Config' manifest format, got 'kind: {kind}'"
            )

        spec = data.get("spec", {})
        if not isinstance(spec, dict):
            raise ConfigurationError(config_path.name, "'spec' field in kind: Config must be a mapping")

        return self._parse_config(substitute_env_vars(spec))

    def _load_toml_config(self, config_path: Path) -> StageflowConfig:
        """Load and parse a TOML config file (pyproject.toml or standalone)."""
        with config_path.open("rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(config_path.name, f"invalid TOML: {e}") from e

        if config_path.name == "pyproject.toml":
            section = data.get("tool", {}).get("stageflow", {})
            if not section:
                logger.warning("No [tool.stageflow] section found in pyproject.toml, using defaults")
                return get_default_config()
        elif "stageflow" in data.get("tool", {}):
            section = data["tool"]["stageflow"]
        else:
            section = data

        return self._parse_config(substitute_env_vars(section))

    def _find_config_file(self, path: str | Path | None) -> Path:
        """Find configuration file.

        Discovery order:
        1. Explicit path argument
        2. ``STAGEFLOW_CONFIG_PATH`` env var
        3. ``pyproject.toml`` in CWD
        4. ``pyproject.toml`` in parent directories (with ``[tool.stageflow]``)
        """
        if path:
            config_path = Path(path)
            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            return config_path

        if env_path := os.getenv("STAGEFLOW_CONFIG_PATH"):
            config_path = Path(env_path)
            if config_path.exists():
                logger.debug("Using config from STAGEFLOW_CONFIG_PATH: {}", config_path)
                return config_path
            logger.warning("STAGEFLOW_CONFIG_PATH set but file not found: {}", config_path)

        if Path("pyproject.toml").exists():
            return Path("pyproject.toml")

        current = Path.cwd()
        while current != current.parent:
            pyproject = current / "pyproject.toml"
            if pyproject.exists():
                with pyproject.open("rb") as f:
                    data = tomllib.load(f)
                if "stageflow" in data.get("tool", {}):
                    return pyproject
            current = current.parent

        raise FileNotFoundError(
            "No configuration file found. Provide a kind: Config YAML path, "
            "set STAGEFLOW_CONFIG_PATH, or add [tool.stageflow] to pyproject.toml"
        )

    def _parse_config(self, data: dict[str, Any]) -> StageflowConfig:
        """Parse format-agnostic configuration data into StageflowConfig."""
        config = StageflowConfig()
        config.logging = self._parse_logging_config(data.get("logging", {}))
        config.orchestrator = self._parse_orchestrator_config(data.get("orchestrator", {}))

        storage_data = data.get("storage", {})
        if storage_data:
            defaults = StorageConfig()
            config.storage = StorageConfig(
                artifact_dir=str(storage_data.get("artifact_dir", defaults.artifact_dir)),
                run_dir=str(storage_data.get("run_dir", defaults.run_dir)),
            )

        config.secret_prefix = str(data.get("secret_prefix", ""))
        if "settings" in data:
            config.settings = dict(data["settings"])
            logger.debug("Loaded {} settings", len(config.settings))
        return config

    def _parse_orchestrator_config(self, data: dict[str, Any]) -> OrchestratorConfig:
        """Parse orchestrator options; ``STAGEFLOW_MAX_CONCURRENCY`` overrides."""
        max_concurrency = data.get("max_concurrency", 4)
        if env_max := os.getenv("STAGEFLOW_MAX_CONCURRENCY"):
            max_concurrency = env_max
            logger.debug("Overriding max_concurrency from env: {}", env_max)

        try:
            return OrchestratorConfig(
                max_concurrency=int(max_concurrency),
                default_stage_timeout=(
                    float(data["default_stage_timeout"])
                    if data.get("default_stage_timeout") is not None
                    else None
                ),
                skip_policy=SkipPolicy(data.get("skip_policy", SkipPolicy.PROPAGATE)),
                cancel_on_failure=bool(data.get("cancel_on_failure", False)),
                cancel_grace_period=float(data.get("cancel_grace_period", 5.0)),
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise ConfigurationError("orchestrator", str(e)) from e

    def _parse_logging_config(self, logging_data: dict[str, Any]) -> LoggingConfig:
        """Parse logging configuration with environment variable overrides.

        Environment variables take precedence over config file values:
        - STAGEFLOW_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        - STAGEFLOW_LOG_FORMAT: Output format (console, json, structured, rich)
        - STAGEFLOW_LOG_FILE: Optional file path for log output
        - STAGEFLOW_LOG_COLOR: Use color output (true/false)
        """
        level = str(logging_data.get("level", "INFO")).upper()
        format_type = str(logging_data.get("format", "structured")).lower()
        output_file = logging_data.get("output_file")
        use_color = logging_data.get("use_color", True)

        if env_level := os.getenv("STAGEFLOW_LOG_LEVEL"):
            level = env_level.upper()
            logger.debug("Overriding log level from env: {}", level)

        if env_format := os.getenv("STAGEFLOW_LOG_FORMAT"):
            format_type = env_format.lower()
            logger.debug("Overriding log format from env: {}", format_type)

        if env_file := os.getenv("STAGEFLOW_LOG_FILE"):
            output_file = env_file

        if env_color := os.getenv("STAGEFLOW_LOG_COLOR"):
            try:
                use_color = _parse_bool_env(env_color)
            except ValueError as e:
                logger.warning("Invalid STAGEFLOW_LOG_COLOR value: {}", e)

        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigurationError("logging", f"unknown log level {level!r}")
        if format_type not in {"console", "json", "structured", "rich"}:
            raise ConfigurationError("logging", f"unknown log format {format_type!r}")

        return LoggingConfig(
            level=cast("Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']", level),
            format=cast("Literal['console', 'json', 'structured', 'rich']", format_type),
            output_file=output_file,
            use_color=bool(use_color),
            include_timestamp=bool(logging_data.get("include_timestamp", True)),
            backtrace=bool(logging_data.get("backtrace", True)),
            diagnose=bool(logging_data.get("diagnose", False)),
        )


def load_config(path: str | Path | None = None) -> StageflowConfig:
    """Load configuration from file or return defaults when none is found."""
    try:
        return ConfigLoader().load_config_file(path)
    except FileNotFoundError:
        if path:
            raise
        logger.debug("No configuration file found, using defaults")
        return get_default_config()


def clear_config_cache() -> None:
    """Clear the configuration cache (useful in tests)."""
    _load_and_parse_cached.cache_clear()


def get_default_config() -> StageflowConfig:
    """Default configuration, with environment overrides applied."""
    return ConfigLoader()._parse_config({})
