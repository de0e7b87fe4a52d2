"""Secret resolver drivers."""

from stageflow.drivers.secrets.env_secret_resolver import EnvSecretResolver

__all__ = ["EnvSecretResolver"]
