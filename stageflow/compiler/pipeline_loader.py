"""Pipeline manifest loader: ``kind: Pipeline`` YAML -> PipelineDefinition.

Example manifest::

    apiVersion: v1
    kind: Pipeline
    metadata:
      name: java-ci
    spec:
      env:
        IMAGE: registry.example.com/app
      secrets:
        REGISTRY_TOKEN: registry/token
      stages:
        - name: compile
          action: "shell: mvn -B package"
          outputs: [app.jar]
        - name: test
          needs: [compile]
          action: "shell: mvn -B test"
          inputs: [app.jar]
          retries: 1
        - name: deploy
          needs: [test]
          when: "branch == 'main'"
          action: "shell: ./deploy.sh"
          secrets: [REGISTRY_TOKEN]

Manifests are validated with pydantic (unknown fields are rejected) and
then compiled into domain objects, which run the graph checks (cycles,
duplicates, missing prerequisites, artifact wiring).
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from stageflow.compiler.config_loader import substitute_env_vars
from stageflow.kernel.domain.pipeline import PipelineDefinition, StageDefinition
from stageflow.kernel.exceptions import ValidationError
from stageflow.kernel.logging import get_logger

logger = get_logger(__name__)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _stringify(values: dict[str, Any]) -> dict[str, str]:
    return {str(key): _env_value(value) for key, value in values.items()}


class StageManifest(BaseModel):
    """One entry of ``spec.stages``."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    action: str = Field(description="Action reference, 'scheme: target'")
    needs: list[str] = Field(default_factory=list)
    when: str | None = None
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    retries: int = Field(default=0, ge=0)
    timeout: float | None = Field(default=None, gt=0)
    optional: bool = False
    env: dict[str, Any] = Field(default_factory=dict)
    secrets: list[str] = Field(default_factory=list)

    @field_validator("needs", "inputs", "outputs", "secrets", mode="before")
    @classmethod
    def _single_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("action", mode="before")
    @classmethod
    def _mapping_action(cls, value: Any) -> Any:
        # `action: {shell: "make"}` is shorthand for `action: "shell: make"`
        if isinstance(value, dict) and len(value) == 1:
            ((scheme, target),) = value.items()
            return f"{scheme}: {target}"
        return value

    @field_validator("action")
    @classmethod
    def _has_scheme(cls, value: str) -> str:
        scheme, sep, target = value.partition(":")
        if not sep or not scheme.strip() or not target.strip():
            raise ValueError("must look like 'scheme: target', e.g. 'shell: make build'")
        return value

    def to_definition(self) -> StageDefinition:
        return StageDefinition(
            name=self.name,
            action=self.action,
            needs=tuple(self.needs),
            when=self.when,
            inputs=tuple(self.inputs),
            outputs=tuple(self.outputs),
            retries=self.retries,
            timeout=self.timeout,
            optional=self.optional,
            env=_stringify(self.env),
            secrets=tuple(self.secrets),
        )


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: dict[str, Any] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict)
    stages: list[StageManifest] = Field(min_length=1)

    @field_validator("secrets", mode="before")
    @classmethod
    def _secret_list(cls, value: Any) -> Any:
        # A bare list maps each handle to a secret key of the same name
        if isinstance(value, list):
            return {str(name): str(name) for name in value}
        return value


class PipelineMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    description: str | None = None


class PipelineManifest(BaseModel):
    """Top-level ``kind: Pipeline`` document."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: str = "v1"
    kind: Literal["Pipeline"]
    metadata: PipelineMetadata
    spec: PipelineSpec

    def to_definition(self) -> PipelineDefinition:
        return PipelineDefinition(
            name=self.metadata.name,
            stages=tuple(stage.to_definition() for stage in self.spec.stages),
            variables=_stringify(self.spec.env),
            secrets=dict(self.spec.secrets),
        )


def _error_field(error: dict[str, Any]) -> str:
    parts: list[str] = []
    for loc in error.get("loc", ()):
        if isinstance(loc, int):
            parts[-1:] = [f"{parts[-1]}[{loc}]"] if parts else [f"[{loc}]"]
        else:
            parts.append(str(loc))
    return ".".join(parts) or "manifest"


class PipelineLoader:
    """Loads pipeline manifests from YAML files or strings.

    Examples
    --------
    Example usage::

        pipeline = PipelineLoader().load_file("pipelines/java-ci.yaml")
        controller = PipelineController(pipeline)
    """

    def __init__(self, substitute_env: bool = True) -> None:
        self.substitute_env = substitute_env

    def load_file(self, path: str | Path) -> PipelineDefinition:
        """Load a manifest file.

        Raises
        ------
        FileNotFoundError
            If the file does not exist
        ValidationError
            If the manifest is malformed
        """
        yaml_path = Path(path)
        if not yaml_path.is_file():
            raise FileNotFoundError(f"Pipeline manifest not found: {yaml_path}")
        return self.load_string(yaml_path.read_text(encoding="utf-8"), source=str(yaml_path))

    def load_string(self, content: str, source: str = "<string>") -> PipelineDefinition:
        document = self._select_document(self._parse_yaml(content, source), source)
        if self.substitute_env:
            document = substitute_env_vars(document)

        try:
            manifest = PipelineManifest.model_validate(document)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(_error_field(dict(first)), first["msg"], first.get("input")) from e

        pipeline = manifest.to_definition()
        logger.info(
            "Loaded pipeline '{}' with {} stage(s) from {}", pipeline.name, len(pipeline.stages), source
        )
        return pipeline

    @staticmethod
    def _parse_yaml(content: str, source: str) -> list[Any]:
        try:
            return [doc for doc in _parse_yaml_cached(content) if doc is not None]
        except yaml.YAMLError as e:
            raise ValidationError(source, f"invalid YAML: {e}") from e

    @staticmethod
    def _select_document(documents: list[Any], source: str) -> dict[str, Any]:
        """Pick the ``kind: Pipeline`` document; other kinds are ignored."""
        for doc in documents:
            if not isinstance(doc, dict):
                raise ValidationError(source, f"YAML document must be a mapping, got {type(doc).__name__}")
        pipelines = [doc for doc in documents if doc.get("kind") == "Pipeline"]
        if not pipelines:
            kinds = ", ".join(str(doc.get("kind")) for doc in documents) or "none"
            raise ValidationError("kind", f"no 'kind: Pipeline' document in {source} (found: {kinds})")
        if len(pipelines) > 1:
            logger.warning("{} contains {} pipeline documents; using the first", source, len(pipelines))
        return pipelines[0]


@lru_cache(maxsize=32)
def _parse_yaml_cached(content: str) -> tuple[Any, ...]:
    return tuple(yaml.safe_load_all(content))


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """Shortcut for ``PipelineLoader().load_file(path)``."""
    return PipelineLoader().load_file(path)
