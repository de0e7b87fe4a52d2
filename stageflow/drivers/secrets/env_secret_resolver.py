"""Environment variable based secret resolver."""

import os
from typing import Any

from stageflow.kernel.logging import get_logger
from stageflow.kernel.types import Secret

__all__ = ["EnvSecretResolver"]

logger = get_logger(__name__)


class EnvSecretResolver:
    """Secret resolver that reads from environment variables.

    Useful for development and for CI hosts that inject credentials into
    the orchestrator's environment. Values are wrapped in ``Secret`` so
    they never show up in logs or persisted run records.

    Examples
    --------
    Basic usage::

        resolver = EnvSecretResolver()
        token = await resolver.aresolve("REGISTRY_TOKEN")
        print(token)  # <SECRET>

    With prefix::

        resolver = EnvSecretResolver(env_prefix="CI_")
        # Will look for CI_REGISTRY_TOKEN
    """

    env_prefix: str
    allow_empty: bool
    _cache: dict[str, Secret]

    def __init__(self, env_prefix: str = "", allow_empty: bool = False, **kwargs: Any) -> None:
        """Initialize the resolver.

        Args
        ----
            env_prefix: Prefix for environment variable names (e.g., "CI_").
            allow_empty: Allow empty secret values. Default: False.
            **kwargs: Additional options for forward compatibility.
        """
        self.env_prefix = env_prefix
        self.allow_empty = allow_empty
        self._cache = {}

    async def aresolve(self, key: str) -> Secret:
        """Resolve a secret from the environment.

        Raises
        ------
        KeyError
            If the variable is not set
        ValueError
            If the value is empty (unless allow_empty=True)
        """
        if key in self._cache:
            return self._cache[key]

        env_var_name = f"{self.env_prefix}{key}"
        value = os.getenv(env_var_name)

        if value is None:
            raise KeyError(f"Secret '{key}' not found in environment (looked for: {env_var_name})")
        if value == "" and not self.allow_empty:
            raise ValueError(f"Secret '{key}' cannot be empty (set allow_empty=True to allow empty secrets)")

        logger.debug("Resolved secret '{}' from environment", key)
        secret = Secret(value)
        self._cache[key] = secret
        return secret

    def clear_cache(self) -> None:
        self._cache.clear()
