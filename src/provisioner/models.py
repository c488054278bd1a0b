"""Pydantic models for resource declarations with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A single typed input for the graph builder
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import EmptyReplaceKeyPolicy

# Identifier patterns shared with addresses and references
RESOURCE_TYPE_PATTERN = r"^[a-z][a-z0-9_]*$"
RESOURCE_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]*$"
PROVIDER_NAME_PATTERN = r"^[a-z][a-z0-9_]*$"

DEFAULT_PROVIDER = "default"


class LifecycleConfig(BaseModel):
    """Lifecycle hints for replacement ordering."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    create_before_destroy: bool = Field(False, alias="createBeforeDestroy")


class ForEachConfig(BaseModel):
    """Keyed data source a template is expanded over.

    Either a named mapping (declared under ``mappings``) or inline items.
    """

    model_config = {"extra": "forbid"}

    mapping: str | None = None
    items: dict[str, str] | None = None

    @model_validator(mode="after")
    def validate_source(self) -> ForEachConfig:
        if (self.mapping is None) == (self.items is None):
            raise ValueError("forEach requires exactly one of 'mapping' or 'items'")
        return self


class ValidationConfig(BaseModel):
    """Child records published to satisfy external validation.

    ``attributes`` are merged into every validation record the provider
    requests, e.g. the DNS zone the records belong to.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    record_type: Annotated[str, Field(pattern=RESOURCE_TYPE_PATTERN, alias="recordType")]
    provider: Annotated[str, Field(pattern=PROVIDER_NAME_PATTERN)] = DEFAULT_PROVIDER
    attributes: dict[str, Any] = Field(default_factory=dict)


class ResourceDeclaration(BaseModel):
    """One declared resource (or for_each template)."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(pattern=RESOURCE_TYPE_PATTERN, max_length=64)]
    name: Annotated[str, Field(pattern=RESOURCE_NAME_PATTERN, max_length=128)]
    provider: Annotated[str, Field(pattern=PROVIDER_NAME_PATTERN)] = DEFAULT_PROVIDER
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Explicit ordering without an attribute reference, as "type.name"
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    for_each: ForEachConfig | None = Field(None, alias="forEach")
    validation: ValidationConfig | None = None

    @field_validator("for_each", mode="before")
    @classmethod
    def expand_shorthand(cls, v: Any) -> Any:
        # forEach: redirects  ->  forEach: {mapping: redirects}
        if isinstance(v, str):
            return {"mapping": v}
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for entry in v:
            if entry.count(".") != 1:
                raise ValueError(f"dependsOn entries must be 'type.name': {entry}")
        return v

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class ProviderDeclaration(BaseModel):
    """Provider instance a resource can bind to."""

    model_config = {"extra": "forbid"}

    kind: str = "local"
    region: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class SettingsConfig(BaseModel):
    """Declaration-level behavior switches."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    empty_replace_key: EmptyReplaceKeyPolicy | None = Field(None, alias="emptyReplaceKey")


class Declaration(BaseModel):
    """Complete resource declaration."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)

    # Mapping name -> JSON file path, relative to the declaration file
    mappings: dict[str, str] = Field(default_factory=dict)

    providers: dict[str, ProviderDeclaration] = Field(
        default_factory=lambda: {DEFAULT_PROVIDER: ProviderDeclaration()}
    )
    settings: SettingsConfig = Field(default_factory=SettingsConfig)

    @model_validator(mode="after")
    def validate_bindings(self) -> Declaration:
        errors: list[str] = []
        for resource in self.resources:
            if resource.provider not in self.providers:
                errors.append(f"{resource.address}: unknown provider '{resource.provider}'")
            if resource.validation and resource.validation.provider not in self.providers:
                errors.append(
                    f"{resource.address}: unknown validation provider "
                    f"'{resource.validation.provider}'"
                )
            if (
                resource.for_each
                and resource.for_each.mapping
                and resource.for_each.mapping not in self.mappings
            ):
                errors.append(
                    f"{resource.address}: unknown mapping '{resource.for_each.mapping}'"
                )
        if errors:
            raise ValueError("; ".join(errors))
        return self
