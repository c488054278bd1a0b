"""Batch expansion of for_each templates.

A template node plus a keyed data source expands into one concrete node per
key. Instances are independent of each other: each depends only on what the
template references (typically the parent bucket).
"""

from __future__ import annotations

import logging
from dataclasses import replace

from .errors import InvalidMappingError
from .nodes import ResourceNode
from .references import EACH_PATTERN, REFERENCE_PATTERN, substitute_each

logger = logging.getLogger(__name__)


def expand(template: ResourceNode, mapping: dict[str, str]) -> list[ResourceNode]:
    """Expand a for_each template over a mapping.

    Args:
        template: Node whose attributes may use ``${each.key}`` / ``${each.value}``.
        mapping: Source key -> target value.

    Returns:
        One node per mapping key, sorted by key.

    Raises:
        InvalidMappingError: If a key or value carries reference syntax.
    """
    instances: list[ResourceNode] = []

    for key in sorted(mapping):
        value = mapping[key]
        # Mapping data is literal; it must not smuggle references into the graph
        for text in (key, value):
            if REFERENCE_PATTERN.search(text) or EACH_PATTERN.search(text):
                raise InvalidMappingError(
                    f"{template.address}: mapping entry '{key}' contains reference syntax"
                )

        instances.append(
            replace(
                template,
                id=template.id.with_key(key),
                attributes=substitute_each(template.attributes, key, value),
                for_each=None,
            )
        )

    logger.debug(
        "Expanded for_each template",
        extra={"address": template.address, "instance_count": len(instances)},
    )
    return instances
