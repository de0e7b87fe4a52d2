"""Run store drivers."""

from stageflow.drivers.run_store.json_file import JsonFileRunStore
from stageflow.drivers.run_store.memory import InMemoryRunStore

__all__ = ["InMemoryRunStore", "JsonFileRunStore"]
