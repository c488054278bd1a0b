"""Resource nodes produced by the graph builder."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import DEFAULT_PROVIDER
from .references import Reference, ResourceId


@dataclass(frozen=True)
class ValidationPolicy:
    """Where and how validation records for a node are published."""

    record_type: str
    provider: str = DEFAULT_PROVIDER
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_type": self.record_type,
            "provider": self.provider,
            "attributes": self.attributes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationPolicy:
        return cls(
            record_type=data["record_type"],
            provider=data.get("provider", DEFAULT_PROVIDER),
            attributes=data.get("attributes", {}),
        )


@dataclass(frozen=True)
class ResourceNode:
    """A declared provisionable unit. Read-only once the graph is built.

    Attributes:
        id: Type, logical name and, for expanded instances, the instance key.
        provider: Name of the provider instance the node binds to.
        attributes: Declared attributes; values may hold references.
        references: Attribute references to other nodes' outputs.
        depends_on: Addresses this node depends on (references and explicit).
        create_before_destroy: Replacement creates the new object first.
        validation: Validation record policy, if the node awaits validation.
        for_each: Key set of a template node; None for concrete nodes.
    """

    id: ResourceId
    provider: str = DEFAULT_PROVIDER
    attributes: dict[str, Any] = field(default_factory=dict)
    references: tuple[Reference, ...] = ()
    depends_on: tuple[str, ...] = ()
    create_before_destroy: bool = False
    validation: ValidationPolicy | None = None
    for_each: frozenset[str] | None = None

    @property
    def address(self) -> str:
        return self.id.address

    @property
    def type(self) -> str:
        return self.id.type

    @property
    def name(self) -> str:
        return self.id.name
