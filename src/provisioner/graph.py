"""Resource graph construction and validation.

This module turns a validated declaration into a directed acyclic graph of
resource nodes:
1. for_each templates are expanded against their keyed data source
2. attribute references and explicit depends_on entries become edges
3. every reference target (node and output) is checked to exist
4. cycles are rejected before anything is planned

Building is a pure transformation: no state is read and no provider is called.
"""

from __future__ import annotations

import copy
import heapq
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from .config import MAX_RESOURCES_PER_GRAPH, EmptyReplaceKeyPolicy
from .errors import (
    AmbiguousRedirectError,
    CycleError,
    DuplicateResourceError,
    SpecLoadError,
    UndefinedReferenceError,
)
from .expander import expand
from .models import Declaration, ResourceDeclaration
from .nodes import ResourceNode, ValidationPolicy
from .provider import ProviderRegistry
from .references import ResourceId, contains_each, find_references

logger = logging.getLogger(__name__)

# Attribute whose empty value is ambiguous for website redirects
REPLACE_KEY_ATTRIBUTE = "replace_key_with"


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes keyed by address."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def __contains__(self, address: object) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, address: str) -> ResourceNode:
        return self.nodes[address]

    def dependents(self, address: str) -> list[str]:
        """Addresses of nodes that depend on ``address``."""
        return sorted(a for a, node in self.nodes.items() if address in node.depends_on)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CycleError: If a cycle is detected.
        """
        remaining = self._unsorted_after_kahn()
        if remaining:
            raise CycleError(self._find_cycle(remaining))

    def topological_sort(self) -> list[str]:
        """Return addresses in dependency order (dependencies first).

        Ties are broken by address so the order is stable across runs.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[str, list[str]] = {address: [] for address in self.nodes}
        in_degree: dict[str, int] = {address: 0 for address in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.address)
                in_degree[node.address] += 1

        result: list[str] = []
        queue = [address for address, degree in in_degree.items() if degree == 0]
        heapq.heapify(queue)

        while queue:
            current = heapq.heappop(queue)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(queue, dependent)

        return result

    def _unsorted_after_kahn(self) -> set[str]:
        in_degree = {address: len(node.depends_on) for address, node in self.nodes.items()}
        dependents: dict[str, list[str]] = {address: [] for address in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.address)

        queue = [address for address, degree in in_degree.items() if degree == 0]
        processed: set[str] = set()
        while queue:
            current = queue.pop()
            processed.add(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return set(self.nodes) - processed

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Return one concrete cycle among nodes Kahn's algorithm left behind."""
        visiting: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def visit(address: str) -> list[str] | None:
            visiting.append(address)
            on_path.add(address)
            for dep in sorted(self.nodes[address].depends_on):
                if dep not in candidates or dep in done:
                    continue
                if dep in on_path:
                    return visiting[visiting.index(dep):] + [dep]
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            on_path.discard(address)
            done.add(address)
            return None

        for start in sorted(candidates):
            if start not in done:
                cycle = visit(start)
                if cycle:
                    return cycle
        return sorted(candidates)


def normalize_replace_keys(
    value: Any, policy: EmptyReplaceKeyPolicy | None, address: str
) -> Any:
    """Apply the configured meaning of an empty ``replace_key_with``.

    Raises:
        AmbiguousRedirectError: If an empty value is found and no policy is set.
    """
    if isinstance(value, dict):
        result: dict[str, Any] = {}
        for key, item in value.items():
            if key == REPLACE_KEY_ATTRIBUTE and item == "":
                if policy is None:
                    raise AmbiguousRedirectError(
                        f"{address}: empty '{REPLACE_KEY_ATTRIBUTE}' is ambiguous; "
                        "set settings.emptyReplaceKey or EMPTY_REPLACE_KEY to "
                        f"one of {[p.value for p in EmptyReplaceKeyPolicy]}"
                    )
                result[key] = "/" if policy == EmptyReplaceKeyPolicy.ROOT else ""
            else:
                result[key] = normalize_replace_keys(item, policy, address)
        return result
    if isinstance(value, list):
        return [normalize_replace_keys(item, policy, address) for item in value]
    return value


def node_from_declaration(
    declaration: ResourceDeclaration,
    policy: EmptyReplaceKeyPolicy | None = None,
) -> ResourceNode:
    """Build the (template) node for one declaration; edges are resolved later."""
    address = declaration.address
    attributes = normalize_replace_keys(copy.deepcopy(declaration.attributes), policy, address)

    validation: ValidationPolicy | None = None
    references = find_references(attributes)
    if declaration.validation is not None:
        validation = ValidationPolicy(
            record_type=declaration.validation.record_type,
            provider=declaration.validation.provider,
            attributes=copy.deepcopy(declaration.validation.attributes),
        )
        references += [
            replace(ref, attribute="validation")
            for ref in find_references(validation.attributes)
        ]

    return ResourceNode(
        id=ResourceId(declaration.type, declaration.name),
        provider=declaration.provider,
        attributes=attributes,
        references=tuple(references),
        create_before_destroy=declaration.lifecycle.create_before_destroy,
        validation=validation,
    )


def build_graph(
    declaration: Declaration,
    mappings: dict[str, dict[str, str]] | None = None,
    *,
    registry: ProviderRegistry | None = None,
    empty_replace_key: EmptyReplaceKeyPolicy | None = None,
) -> ResourceGraph:
    """Build and validate the resource graph.

    Args:
        declaration: Validated declaration.
        mappings: Loaded keyed data sources by mapping name.
        registry: Providers used to check referenced outputs, if available.
        empty_replace_key: Fallback when the declaration sets no policy.

    Returns:
        Acyclic resource graph.

    Raises:
        CycleError: If references form a cycle.
        UndefinedReferenceError: If a reference targets a missing node or output.
        DuplicateResourceError: If two declarations share an identity.
        AmbiguousRedirectError: If an empty replace key has no policy.
        SpecLoadError: If a non-template uses ``${each.*}``.
    """
    mappings = mappings or {}
    policy = declaration.settings.empty_replace_key or empty_replace_key

    nodes: dict[str, ResourceNode] = {}
    templates: dict[str, list[str]] = {}
    declared: set[str] = set()
    explicit_deps: dict[str, list[str]] = {}

    for resource in declaration.resources:
        if resource.address in declared:
            raise DuplicateResourceError(f"Duplicate resource: {resource.address}")
        declared.add(resource.address)
        explicit_deps[resource.address] = resource.depends_on
        template = node_from_declaration(resource, policy)

        if resource.for_each is not None:
            if resource.for_each.mapping is not None:
                source = mappings.get(resource.for_each.mapping)
                if source is None:
                    raise SpecLoadError(
                        f"{resource.address}: mapping '{resource.for_each.mapping}' was not loaded"
                    )
            else:
                source = resource.for_each.items or {}
            template = replace(template, for_each=frozenset(source))
            expanded = expand(template, source)
            templates[template.address] = [node.address for node in expanded]
        else:
            if contains_each(template.attributes):
                raise SpecLoadError(f"{resource.address}: ${{each.*}} used without forEach")
            expanded = [template]

        for node in expanded:
            nodes[node.address] = node

    if len(nodes) > MAX_RESOURCES_PER_GRAPH:
        raise SpecLoadError(
            f"Declaration expands to {len(nodes)} resources, "
            f"exceeding limit of {MAX_RESOURCES_PER_GRAPH}"
        )

    graph = ResourceGraph()
    for address, node in nodes.items():
        deps: set[str] = set()

        for ref in node.references:
            if ref.target not in nodes:
                detail = ""
                if ref.target in templates:
                    detail = "forEach resources must be referenced with an instance key"
                raise UndefinedReferenceError(address, ref.target, detail)
            _check_output(address, nodes[ref.target], ref.output, registry)
            deps.add(ref.target)

        for explicit in explicit_deps.get(node.id.template_address, []):
            if explicit in nodes:
                deps.add(explicit)
            elif explicit in templates:
                deps.update(templates[explicit])
            else:
                raise UndefinedReferenceError(address, explicit, "listed in dependsOn")

        if address in deps:
            raise CycleError([address, address])

        graph.nodes[address] = replace(node, depends_on=tuple(sorted(deps)))

    graph.validate()

    logger.info(
        "Built resource graph",
        extra={
            "node_count": len(graph),
            "template_count": len(templates),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph


def _check_output(
    source: str, target: ResourceNode, output: str, registry: ProviderRegistry | None
) -> None:
    if registry is None or output == "id" or output in target.attributes:
        return
    schema = registry.schema_for(target.provider, target.type)
    if schema is None:
        return
    if output not in schema.outputs:
        raise UndefinedReferenceError(
            source,
            f"{target.address}.{output}",
            f"{target.type} outputs are {sorted(schema.outputs)}",
        )
