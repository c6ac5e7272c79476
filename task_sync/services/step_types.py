"""Typed views over the per-type ``steps.settings`` JSON blob.

A step's settings hold exactly one recognized top-level key naming its type,
e.g. ``{"rubric_shell": {...}}``. Parsing maps that key to a pydantic model;
unknown nested fields ride along as extras so newer shapes survive a
read-modify-write cycle.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, cast

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


RubricRunMode = Literal["solutions", "golden", "golden-only", "original-only"]


class StepSettingsError(ValueError):
    """Raised when a step's settings cannot be mapped to a known type shape."""


class UnknownStepTypeError(StepSettingsError):
    """Raised when no recognized type key is present."""


class AmbiguousStepTypeError(StepSettingsError):
    """Raised when more than one recognized type key is present."""


class Dependency(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int


class Triggers(BaseModel):
    """Stored observations compared against current state before re-running."""

    model_config = ConfigDict(extra="allow")

    files: dict[str, str] = Field(default_factory=dict)
    containers: dict[str, str] = Field(default_factory=dict)
    volumes: list[str] = Field(default_factory=list)
    image_id: str = ""
    image_tag: str = ""


class StepConfig(BaseModel):
    """Fields shared by every step type."""

    model_config = ConfigDict(extra="allow")

    depends_on: list[Dependency] = Field(default_factory=list)
    files: dict[str, str] = Field(default_factory=dict)
    triggers: Triggers = Field(default_factory=Triggers)
    # Per-invocation only; stripped from every persisted dump.
    force: bool = False

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_dependency_ids(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [{"id": item} if isinstance(item, int) and not isinstance(item, bool) else item for item in value]
        return value

    def dependency_ids(self) -> list[int]:
        return [dep.id for dep in self.depends_on]


class FileExistsConfig(StepConfig):
    """``files`` maps relative path -> last observed mtime (RFC 3339)."""


class RubricsImportConfig(StepConfig):
    json_file: str = ""
    md_file: str = ""

    def rubric_path(self) -> str:
        return self.json_file or self.md_file


class RubricSetConfig(StepConfig):
    file: str = ""
    # Solution patch filename -> container name.
    assign_containers: dict[str, str] = Field(default_factory=dict)


class Assignment(BaseModel):
    model_config = ConfigDict(extra="allow")

    patch: str
    container: str


class RubricShellConfig(StepConfig):
    command: str = ""
    run_mode: RubricRunMode = "solutions"
    criterion_id: str = ""
    counter: str = ""
    score: int = 0
    required: bool = False
    rubric: str = ""
    rerun: bool = False
    hash_last_run: str = ""
    generated_by: str = ""
    assignments: list[Assignment] = Field(default_factory=list)


class DockerBuildConfig(StepConfig):
    image_tag: str = ""
    image_id: str = ""
    parameters: list[str] = Field(default_factory=list)


class DockerPullConfig(StepConfig):
    image_tag: str = ""
    image_id: str = ""
    prevent_run_before: str = ""


class DockerPoolConfig(StepConfig):
    """Long-lived containers for the original tree, the golden tree and each solution."""

    solutions: int = Field(default=4, ge=0, le=4)
    # Extra ``docker run`` arguments; ``%%IMAGETAG%%`` is substituted.
    parameters: list[str] = Field(default_factory=list)
    image_id: str = ""


class DockerImageRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    image_id: str = ""
    image_tag: str = ""


class DockerShellConfig(StepConfig):
    docker: DockerImageRef = Field(default_factory=DockerImageRef)
    # Ordered list of ``{label: shell command}`` maps.
    command: list[dict[str, str]] = Field(default_factory=list)


# Bulk dispatch walks the types in registration order.
STEP_TYPES: dict[str, type[StepConfig]] = {
    "file_exists": FileExistsConfig,
    "rubrics_import": RubricsImportConfig,
    "rubric_set": RubricSetConfig,
    "rubric_shell": RubricShellConfig,
    "docker_build": DockerBuildConfig,
    "docker_pull": DockerPullConfig,
    "docker_pool": DockerPoolConfig,
    "docker_shell": DockerShellConfig,
}


@dataclass(frozen=True, slots=True)
class ParsedStepSettings:
    type_key: str
    config: StepConfig


def detect_type_key(settings: object) -> str:
    """Return the single recognized type key or raise."""
    if not isinstance(settings, dict):
        msg = "step settings must be a JSON object"
        raise StepSettingsError(msg)
    found = [key for key in STEP_TYPES if key in settings]
    if not found:
        msg = f"step settings contain no recognized type key (expected one of {', '.join(STEP_TYPES)})"
        raise UnknownStepTypeError(msg)
    if len(found) > 1:
        msg = f"step settings contain multiple type keys: {', '.join(found)}"
        raise AmbiguousStepTypeError(msg)
    return found[0]


def parse_config(type_key: str, payload: object) -> StepConfig:
    model = STEP_TYPES.get(type_key)
    if model is None:
        msg = f"unknown step type: {type_key}"
        raise UnknownStepTypeError(msg)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        msg = f"'{type_key}' settings must be a JSON object"
        raise StepSettingsError(msg)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        msg = f"invalid {type_key} settings: {exc.errors(include_url=False)}"
        raise StepSettingsError(msg) from exc


def parse_step_settings(settings: object) -> ParsedStepSettings:
    type_key = detect_type_key(settings)
    payload = cast(dict[str, Any], settings)[type_key]
    return ParsedStepSettings(type_key=type_key, config=parse_config(type_key, payload))


def dump_config(config: StepConfig) -> dict[str, Any]:
    """Serialize a config for storage; ``force`` is never written back."""
    return config.model_dump(mode="json", exclude={"force"}, exclude_defaults=True)


def dump_step_settings(type_key: str, config: StepConfig) -> dict[str, Any]:
    return {type_key: dump_config(config)}


def strip_force(settings: dict[str, Any]) -> dict[str, Any]:
    """Drop ``force`` from every type block of a raw settings object."""
    cleaned: dict[str, Any] = {}
    for key, value in settings.items():
        if isinstance(value, dict) and "force" in value:
            value = {inner: item for inner, item in value.items() if inner != "force"}
        cleaned[key] = value
    return cleaned


__all__ = [
    "STEP_TYPES",
    "AmbiguousStepTypeError",
    "Assignment",
    "Dependency",
    "DockerBuildConfig",
    "DockerImageRef",
    "DockerPoolConfig",
    "DockerPullConfig",
    "DockerShellConfig",
    "FileExistsConfig",
    "ParsedStepSettings",
    "RubricRunMode",
    "RubricSetConfig",
    "RubricShellConfig",
    "RubricsImportConfig",
    "StepConfig",
    "StepSettingsError",
    "Triggers",
    "UnknownStepTypeError",
    "detect_type_key",
    "dump_config",
    "dump_step_settings",
    "parse_config",
    "parse_step_settings",
    "strip_force",
]
