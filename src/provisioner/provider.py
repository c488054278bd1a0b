"""Provider API boundary.

The engine treats providers as an opaque capability set: create, read, update
and delete keyed by resource type, each returning a provider-assigned id and
computed outputs. Providers are synchronous; the executor runs them in a
thread executor under a timeout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import ProviderNotConfiguredError

logger = logging.getLogger(__name__)


class ProviderAPIError(Exception):
    """Raised by providers for API-side failures.

    Attributes:
        retryable: The call may succeed if repeated (throttling, eventual
            consistency).
        not_found: The addressed object does not exist.
    """

    def __init__(self, message: str, *, retryable: bool = False, not_found: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.not_found = not_found


@dataclass(frozen=True)
class ResourceTypeSchema:
    """What the engine needs to know about a resource type.

    Attributes:
        resource_type: Type name, e.g. "certificate".
        outputs: Computed outputs available after create.
        replace_on: Attributes whose change forces a replacement.
        ready_output: Output polled until it equals ``ready_value``; None
            when the resource is ready as soon as create returns.
        ready_value: Value of ``ready_output`` that signals readiness.
        validation_output: Output listing the validation records the
            provider requires before the resource becomes ready.
    """

    resource_type: str
    outputs: frozenset[str] = frozenset()
    replace_on: frozenset[str] = frozenset()
    ready_output: str | None = None
    ready_value: Any = None
    validation_output: str | None = None

    @property
    def awaits_readiness(self) -> bool:
        return self.ready_output is not None


@dataclass(frozen=True)
class ProviderResponse:
    """Confirmed provider response."""

    provider_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class Provider(Protocol):
    """Capability set a provider implements."""

    def schema(self, resource_type: str) -> ResourceTypeSchema | None:
        """Return the schema for a type, or None when unknown."""

    def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResponse:
        """Create an object and return its id and outputs."""

    def read(self, resource_type: str, provider_id: str) -> ProviderResponse | None:
        """Read an object; None when it does not exist."""

    def update(
        self, resource_type: str, provider_id: str, attributes: dict[str, Any]
    ) -> ProviderResponse:
        """Update an object in place."""

    def delete(self, resource_type: str, provider_id: str) -> None:
        """Delete an object."""


class ProviderRegistry:
    """Named provider instances that resource nodes bind to."""

    def __init__(self, providers: dict[str, Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = dict(providers or {})

    def register(self, name: str, provider: Provider) -> None:
        if name in self._providers:
            logger.warning("Replacing registered provider", extra={"provider": name})
        self._providers[name] = provider

    def get(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError as e:
            raise ProviderNotConfiguredError(
                f"Provider '{name}' is not configured. Configured: {sorted(self._providers)}"
            ) from e

    def schema_for(self, name: str, resource_type: str) -> ResourceTypeSchema | None:
        return self.get(name).schema(resource_type)

    @property
    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers
