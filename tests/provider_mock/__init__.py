"""In-memory provider mock for engine tests.

Key Features:
- In-memory object store keyed by provider id
- Call recording (operation, type, id, attributes) for ordering assertions
- Error injection per operation and resource type
- Controllable certificate readiness (validated by published records,
  manually, or never)
- Concurrency tracking for worker-pool assertions

Usage:
    from provider_mock import MockProvider, mock_registry

    provider = MockProvider()
    registry = mock_registry(provider)
    ...
    assert provider.operations("create") == ["dns_zone", "certificate"]
"""

from .provider import (
    DEFAULT_SCHEMAS,
    MockCall,
    MockObject,
    MockProvider,
    ReadinessMode,
    mock_registry,
)

__all__ = [
    "DEFAULT_SCHEMAS",
    "MockCall",
    "MockObject",
    "MockProvider",
    "ReadinessMode",
    "mock_registry",
]
