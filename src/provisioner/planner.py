"""Change planning.

The planner diffs the desired resource graph against the last committed state
and produces an ordered change-set:

- every reference edge A -> B orders B's change before A's;
- replacements honor create-before-destroy: the replacement is created, the
  dependents switch over, and only then is the original (re-committed as a
  deposed record) deleted;
- a deposed record left by an interrupted replacement is deleted only after
  the live object's change and every dependent update that moves off it;
- removed resources are deleted after everything that depended on them has
  been deleted or updated away from them;
- independent changes are ordered by address so plans are deterministic.

Planning never calls a provider and never writes state.
"""

from __future__ import annotations

import heapq
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import PlanConflictError, ReconcileError, StalePlanError
from .graph import ResourceGraph
from .nodes import ResourceNode
from .provider import ProviderRegistry
from .references import base_address, deposed_address, is_deposed, resolve_references
from .state import StateRecord, StateStore, fingerprint

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1


class Action(str, Enum):
    """Planned action for one resource identity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


class ChangeReason(str, Enum):
    """Why a change was planned."""

    NEW = "new"
    MODIFIED = "modified"
    REPLACE = "replace"
    RESUME_VALIDATION = "resume-validation"
    REMOVED = "removed"
    DEPOSED = "deposed"
    UNCHANGED = "unchanged"


# Tie-break among independent changes at the same address
_ACTION_RANK = {Action.DELETE: 0, Action.CREATE: 1, Action.UPDATE: 2, Action.NO_OP: 3}


@dataclass
class PlannedChange:
    """One unit of work for the executor.

    Carries everything needed to apply it without the declaration: the
    declared attributes, provider binding, dependencies and, for deletes and
    updates, the prior provider id.
    """

    address: str
    resource_type: str
    action: Action
    reason: ChangeReason
    provider: str
    prerequisites: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    changed_attributes: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    create_before_destroy: bool = False
    validation: dict[str, Any] | None = None
    prior_provider_id: str | None = None

    @property
    def key(self) -> str:
        """Unique key of this change within a plan."""
        suffix = ":replace" if self.action == Action.DELETE and self.reason == ChangeReason.REPLACE else ""
        return f"{self.action.value}:{self.address}{suffix}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "address": self.address,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "reason": self.reason.value,
            "provider": self.provider,
            "prerequisites": self.prerequisites,
            "attributes": self.attributes,
            "changed_attributes": self.changed_attributes,
            "dependencies": self.dependencies,
            "create_before_destroy": self.create_before_destroy,
            "validation": self.validation,
            "prior_provider_id": self.prior_provider_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlannedChange:
        return cls(
            address=data["address"],
            resource_type=data["resource_type"],
            action=Action(data["action"]),
            reason=ChangeReason(data["reason"]),
            provider=data["provider"],
            prerequisites=list(data.get("prerequisites", [])),
            attributes=data.get("attributes", {}),
            changed_attributes=list(data.get("changed_attributes", [])),
            dependencies=list(data.get("dependencies", [])),
            create_before_destroy=data.get("create_before_destroy", False),
            validation=data.get("validation"),
            prior_provider_id=data.get("prior_provider_id"),
        )


@dataclass
class ChangeSummary:
    """Counts of planned actions."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    no_op_count: int = 0

    @property
    def total_significant(self) -> int:
        return self.create_count + self.update_count + self.delete_count

    def to_dict(self) -> dict[str, int]:
        return {
            "create": self.create_count,
            "update": self.update_count,
            "delete": self.delete_count,
            "no-op": self.no_op_count,
        }


@dataclass
class Plan:
    """Ordered change-set computed against one state snapshot."""

    changes: list[PlannedChange] = field(default_factory=list)
    state_fingerprint: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    source: str | None = None

    @property
    def actionable(self) -> list[PlannedChange]:
        return [c for c in self.changes if c.action != Action.NO_OP]

    @property
    def has_changes(self) -> bool:
        return bool(self.actionable)

    def summary(self) -> ChangeSummary:
        summary = ChangeSummary()
        for change in self.changes:
            match change.action:
                case Action.CREATE:
                    summary.create_count += 1
                case Action.UPDATE:
                    summary.update_count += 1
                case Action.DELETE:
                    summary.delete_count += 1
                case Action.NO_OP:
                    summary.no_op_count += 1
        return summary

    def check_fresh(self, records: dict[str, StateRecord]) -> None:
        """Refuse a plan computed against a different state snapshot.

        Raises:
            StalePlanError: If the current snapshot does not match.
        """
        current = fingerprint(records)
        if current != self.state_fingerprint:
            raise StalePlanError(
                "Plan was computed against a different state snapshot "
                f"(plan {self.state_fingerprint[:12]}, current {current[:12]}). "
                "Run plan again."
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "created_at": self.created_at.isoformat(),
            "source": self.source,
            "state_fingerprint": self.state_fingerprint,
            "changes": [change.to_dict() for change in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        version = data.get("format_version")
        if version != PLAN_FORMAT_VERSION:
            raise ValueError(f"Unsupported plan format version: {version}")
        return cls(
            changes=[PlannedChange.from_dict(c) for c in data.get("changes", [])],
            state_fingerprint=data["state_fingerprint"],
            created_at=datetime.fromisoformat(data["created_at"]),
            source=data.get("source"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def to_report(self) -> dict[str, Any]:
        """Machine-readable report of the plan."""
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "created_at": self.created_at.isoformat(),
            "source": self.source,
            "state_fingerprint": self.state_fingerprint,
            "summary": self.summary().to_dict(),
            "resource_changes": [
                {
                    "address": change.address,
                    "type": change.resource_type,
                    "provider": change.provider,
                    "action": change.action.value,
                    "reason": change.reason.value,
                    "changed_attributes": change.changed_attributes,
                    "after": change.attributes if change.action != Action.DELETE else None,
                    "depends_on": change.prerequisites,
                }
                for change in self.changes
            ],
        }


def _duplicates_live(address: str, records: dict[str, StateRecord]) -> bool:
    """Whether a deposed record names the same object as the live record."""
    if not is_deposed(address):
        return False
    live = records.get(base_address(address))
    return live is not None and live.provider_id == records[address].provider_id


class _UnknownValue(Exception):
    """A referenced value is only known after apply."""

    pass


class Planner:
    """Computes ordered change-sets from a resource graph and state.

    Args:
        registry: Providers consulted for per-type schemas (replace-on
            attributes). Without a registry every attribute change is an
            in-place update unless the provider binding changes.
    """

    def __init__(self, registry: ProviderRegistry | None = None) -> None:
        self._registry = registry

    def plan(self, graph: ResourceGraph, store: StateStore, source: str | None = None) -> Plan:
        """Plan against the store's current snapshot (read once)."""
        return self.plan_from_records(graph, store.load(), source=source)

    def plan_from_records(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        source: str | None = None,
    ) -> Plan:
        """Plan against an explicit state snapshot.

        Raises:
            PlanConflictError: If a reference targets a node with neither a
                pending change nor a recorded value for the output.
            CycleError: If the graph has a cycle.
        """
        order = graph.topological_sort()

        changes: dict[str, PlannedChange] = {}
        apply_key: dict[str, str] = {}  # desired address -> key of its apply/no-op change
        actions: dict[str, Action] = {}
        replaced: set[str] = set()
        superseded = {
            base_address(address)
            for address in records
            if is_deposed(address) and not _duplicates_live(address, records)
        }

        for address in order:
            node = graph.get(address)
            record = records.get(address)
            action, reason, changed = self._diff(
                node, record, actions, replaced, records, superseded
            )

            if action != Action.NO_OP:
                self._check_references(node, actions, records)

            if reason == ChangeReason.REPLACE:
                replaced.add(address)
                if record is None:
                    raise ReconcileError(f"{address}: replacement planned without a state record")
                # While an older deposed original is pending deletion, dependents
                # still use that one, so the live object is deleted in place
                depose = node.create_before_destroy and address not in superseded
                delete_address = deposed_address(address) if depose else address
                delete = PlannedChange(
                    address=delete_address,
                    resource_type=record.resource_type,
                    action=Action.DELETE,
                    reason=ChangeReason.REPLACE,
                    provider=record.provider,
                    dependencies=list(record.dependencies),
                    prior_provider_id=record.provider_id,
                )
                changes[delete.key] = delete

            change = PlannedChange(
                address=address,
                resource_type=node.type,
                action=action,
                reason=reason,
                provider=node.provider,
                attributes=node.attributes,
                changed_attributes=sorted(changed),
                dependencies=list(node.depends_on),
                create_before_destroy=node.create_before_destroy,
                validation=node.validation.to_dict() if node.validation else None,
                prior_provider_id=record.provider_id if record and action == Action.UPDATE else None,
            )
            changes[change.key] = change
            apply_key[address] = change.key
            actions[address] = action

        for address in sorted(records):
            record = records[address]
            if address in graph:
                continue
            if _duplicates_live(address, records):
                # Committed before a replacement create that never happened
                continue
            if record.parent is not None and base_address(record.parent) in graph:
                # Validation records are managed by their live parent
                continue
            delete = PlannedChange(
                address=address,
                resource_type=record.resource_type,
                action=Action.DELETE,
                reason=ChangeReason.DEPOSED if is_deposed(address) else ChangeReason.REMOVED,
                provider=record.provider,
                dependencies=list(record.dependencies),
                prior_provider_id=record.provider_id,
            )
            changes[delete.key] = delete

        edges = self._prerequisites(graph, records, changes, apply_key)
        ordered = self._order(changes, edges)

        plan = Plan(changes=ordered, state_fingerprint=fingerprint(records), source=source)
        summary = plan.summary()
        logger.info(
            "Plan computed",
            extra={
                "create": summary.create_count,
                "update": summary.update_count,
                "delete": summary.delete_count,
                "no_op": summary.no_op_count,
            },
        )
        return plan

    def _diff(
        self,
        node: ResourceNode,
        record: StateRecord | None,
        actions: dict[str, Action],
        replaced: set[str],
        records: dict[str, StateRecord],
        superseded: set[str],
    ) -> tuple[Action, ChangeReason, set[str]]:
        if record is None:
            return Action.CREATE, ChangeReason.NEW, set(node.attributes)

        changed = {
            key
            for key in set(node.attributes) | set(record.attributes)
            if node.attributes.get(key) != record.attributes.get(key)
        }

        pending = {ref.target for ref in node.references if actions.get(ref.target) != Action.NO_OP}
        for ref in node.references:
            if ref.target in replaced and ref.attribute in node.attributes:
                changed.add(ref.attribute)

        # Compare values that are already known against what was last sent.
        # A target with a deposed original keeps its live outputs while its
        # change is pending, so dependents still on the original move over.
        def lookup(target: str, output: str) -> Any:
            if target in pending and target not in superseded:
                raise _UnknownValue(target)
            try:
                return records[target].value(output)
            except KeyError as e:
                raise _UnknownValue(target) from e

        for key, value in node.attributes.items():
            if key in changed:
                continue
            try:
                resolved = resolve_references(value, lookup)
            except _UnknownValue:
                continue
            if key not in record.resolved or resolved != record.resolved[key]:
                changed.add(key)

        if node.validation is not None and node.validation.to_dict() != record.validation:
            changed.add("validation")

        if changed or record.provider != node.provider:
            if record.provider != node.provider or changed & self._replace_on(node):
                return Action.CREATE, ChangeReason.REPLACE, changed
            return Action.UPDATE, ChangeReason.MODIFIED, changed

        if not record.ready:
            return Action.UPDATE, ChangeReason.RESUME_VALIDATION, changed

        return Action.NO_OP, ChangeReason.UNCHANGED, changed

    def _replace_on(self, node: ResourceNode) -> frozenset[str]:
        if self._registry is None:
            return frozenset()
        schema = self._registry.schema_for(node.provider, node.type)
        return schema.replace_on if schema else frozenset()

    def _check_references(
        self,
        node: ResourceNode,
        actions: dict[str, Action],
        records: dict[str, StateRecord],
    ) -> None:
        for ref in node.references:
            if actions.get(ref.target) != Action.NO_OP:
                continue  # known after the target's change commits
            record = records.get(ref.target)
            if record is None or not record.has_value(ref.output):
                raise PlanConflictError(node.address, ref.target, ref.output)

    def _prerequisites(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        changes: dict[str, PlannedChange],
        apply_key: dict[str, str],
    ) -> dict[str, set[str]]:
        """Ordering edges: change key -> keys that must complete first."""
        edges: dict[str, set[str]] = {key: set() for key in changes}

        deletes = {
            key: change for key, change in changes.items() if change.action == Action.DELETE
        }

        def has_change(key: str) -> bool:
            return changes[key].action != Action.NO_OP

        # Desired nodes: dependencies first
        for address, key in apply_key.items():
            for dep in graph.get(address).depends_on:
                edges[key].add(apply_key[dep])
            in_place = f"delete:{address}:replace"
            if in_place in changes:
                edges[key].add(in_place)

        # Deletes: whatever still relies on the object goes first
        for key, change in deletes.items():
            target = base_address(change.address)
            in_place_replace = (
                change.reason == ChangeReason.REPLACE and not is_deposed(change.address)
            )

            for other_key, other in deletes.items():
                if other_key == key or base_address(other.address) == target:
                    continue
                other_record = records.get(other.address)
                relies = target in other.dependencies or (
                    other_record is not None and other_record.parent == target
                )
                if relies:
                    edges[key].add(other_key)

            if in_place_replace:
                continue

            if target in apply_key:
                # The deposed original goes only once its successor is in place
                edges[key].add(apply_key[target])

            for address, dependent_key in apply_key.items():
                if address == target or not has_change(dependent_key):
                    continue
                record = records.get(address)
                if record is not None and target in record.dependencies:
                    edges[key].add(dependent_key)

        for key, change in changes.items():
            change.prerequisites = sorted(k for k in edges[key] if has_change(k))
        return edges

    def _order(
        self, changes: dict[str, PlannedChange], edges: dict[str, set[str]]
    ) -> list[PlannedChange]:
        """Kahn's algorithm with address-then-action tie-break."""
        dependents: dict[str, list[str]] = {key: [] for key in changes}
        in_degree: dict[str, int] = {key: 0 for key in changes}
        for key, prereqs in edges.items():
            for prereq in prereqs:
                dependents[prereq].append(key)
                in_degree[key] += 1

        def sort_key(key: str) -> tuple[str, int, str]:
            change = changes[key]
            return (base_address(change.address), _ACTION_RANK[change.action], key)

        heap = [sort_key(key) for key, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)

        ordered: list[PlannedChange] = []
        while heap:
            _, _, key = heapq.heappop(heap)
            ordered.append(changes[key])
            for dependent in dependents[key]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, sort_key(dependent))

        if len(ordered) != len(changes):
            stuck = sorted(key for key, degree in in_degree.items() if degree > 0)
            raise ReconcileError(
                f"Cannot order changes with circular prerequisites: {', '.join(stuck)}"
            )

        return ordered
