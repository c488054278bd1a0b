"""Tests for change planning."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest
from provider_mock import mock_registry

from provisioner.errors import PlanConflictError, ReconcileError, StalePlanError
from provisioner.graph import ResourceGraph, build_graph
from provisioner.models import Declaration
from provisioner.planner import Action, ChangeReason, Plan, Planner
from provisioner.references import resolve_references
from provisioner.state import StateRecord

ZONE = {"type": "dns_zone", "name": "site", "attributes": {"name": "example.com"}}
BUCKET = {"type": "storage_bucket", "name": "site", "attributes": {"bucket": "site-bucket"}}
CERT = {"type": "certificate", "name": "site", "attributes": {"domain_name": "example.com"}}
CDN = {
    "type": "cdn_distribution",
    "name": "site",
    "attributes": {
        "origin_domain": "${storage_bucket.site.website_endpoint}",
        "certificate_arn": "${certificate.site.arn}",
    },
}
REDIRECTS = {
    "type": "storage_object",
    "name": "redirects",
    "forEach": "redirects",
    "attributes": {
        "bucket": "${storage_bucket.site.bucket}",
        "key": "${each.key}",
        "website_redirect": "${each.value}",
    },
}

OUTPUTS = {
    "storage_bucket.site": {"website_endpoint": "site.web"},
    "certificate.site": {"arn": "arn:cert:1", "status": "ISSUED"},
    "dns_zone.site": {"zone_id": "Z1"},
}


def graph_of(*resources: dict[str, Any], mapping: dict[str, str] | None = None) -> ResourceGraph:
    data: dict[str, Any] = {"resources": list(resources)}
    if mapping is not None:
        data["mappings"] = {"redirects": "redirects.json"}
    return build_graph(Declaration.model_validate(data), {"redirects": mapping or {}})


def converged(graph: ResourceGraph, outputs: dict[str, dict[str, Any]] | None = None) -> dict[str, StateRecord]:
    """State as it would be after a successful apply of ``graph``."""
    outputs = OUTPUTS if outputs is None else outputs
    records: dict[str, StateRecord] = {}
    for address in graph.topological_sort():
        node = graph.get(address)
        resolved = resolve_references(node.attributes, lambda a, o: records[a].value(o))
        records[address] = StateRecord(
            address=address,
            resource_type=node.type,
            provider=node.provider,
            provider_id=f"id-{address}",
            attributes=node.attributes,
            resolved=resolved,
            outputs=dict(outputs.get(address, {})),
            dependencies=list(node.depends_on),
            validation=node.validation.to_dict() if node.validation else None,
        )
    return records


def keys(plan: Plan) -> list[str]:
    return [change.key for change in plan.actionable]


def assert_ordered(plan: Plan) -> None:
    position = {change.key: i for i, change in enumerate(plan.changes)}
    for change in plan.changes:
        for prereq in change.prerequisites:
            assert position[prereq] < position[change.key], f"{prereq} must precede {change.key}"


@pytest.fixture
def planner() -> Planner:
    return Planner(mock_registry())


class TestInitialPlan:
    """Tests for planning against empty state."""

    def test_all_creates_in_dependency_order(self, planner: Planner) -> None:
        """Test that every node is created after what it references."""
        plan = planner.plan_from_records(graph_of(CDN, CERT, BUCKET, ZONE), {})

        assert keys(plan) == [
            "create:certificate.site",
            "create:dns_zone.site",
            "create:storage_bucket.site",
            "create:cdn_distribution.site",
        ]
        cdn = plan.changes[-1]
        assert cdn.prerequisites == ["create:certificate.site", "create:storage_bucket.site"]
        assert_ordered(plan)

    def test_deterministic(self, planner: Planner) -> None:
        graph = graph_of(BUCKET, REDIRECTS, mapping={f"/p{i}": f"/t{i}" for i in range(10)})
        assert keys(planner.plan_from_records(graph, {})) == keys(planner.plan_from_records(graph, {}))

    def test_summary(self, planner: Planner) -> None:
        plan = planner.plan_from_records(graph_of(BUCKET, REDIRECTS, mapping={"/a": "/b", "/c": "/d"}), {})
        summary = plan.summary()
        assert summary.create_count == 3
        assert summary.total_significant == 3


class TestConvergedPlan:
    """Tests for planning against matching state."""

    def test_no_changes(self, planner: Planner) -> None:
        """Test that re-planning a converged state yields zero changes."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN, REDIRECTS, mapping={"/old-page": "https://example.com/new-page"})

        plan = planner.plan_from_records(graph, converged(graph))

        assert not plan.has_changes
        assert plan.summary().no_op_count == len(graph)

    def test_attribute_update(self, planner: Planner) -> None:
        """Test that a non-replacing attribute change is an update."""
        records = converged(graph_of(ZONE, BUCKET))
        bucket = dict(BUCKET, attributes={"bucket": "site-bucket", "versioning": True})

        plan = planner.plan_from_records(graph_of(ZONE, bucket), records)

        assert keys(plan) == ["update:storage_bucket.site"]
        assert plan.actionable[0].changed_attributes == ["versioning"]
        assert plan.actionable[0].prior_provider_id == "id-storage_bucket.site"

    def test_upstream_output_change_updates_dependent(self, planner: Planner) -> None:
        """Test that a changed recorded output propagates to dependents."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN)
        records = converged(graph)
        records["storage_bucket.site"].outputs["website_endpoint"] = "moved.web"

        plan = planner.plan_from_records(graph, records)

        assert keys(plan) == ["update:cdn_distribution.site"]
        assert plan.actionable[0].changed_attributes == ["origin_domain"]

    def test_pending_validation_resumes(self, planner: Planner) -> None:
        """Test that a record awaiting validation yields an update."""
        graph = graph_of(CERT)
        records = converged(graph)
        records["certificate.site"] = replace(records["certificate.site"], ready=False)

        plan = planner.plan_from_records(graph, records)

        assert keys(plan) == ["update:certificate.site"]
        assert plan.actionable[0].reason == ChangeReason.RESUME_VALIDATION

    def test_validation_records_of_live_parent_kept(self, planner: Planner) -> None:
        """Test that published validation records are not planned for deletion."""
        graph = graph_of(CERT)
        records = converged(graph)
        child = 'dns_record.site_validation["_v.example.com."]'
        records[child] = StateRecord(
            address=child,
            resource_type="dns_record",
            provider="default",
            provider_id="rec-1",
            parent="certificate.site",
            dependencies=["certificate.site"],
        )

        assert not planner.plan_from_records(graph, records).has_changes

    def test_unresolvable_reference(self, planner: Planner) -> None:
        """Test that a no-op target without the referenced output conflicts."""
        records = converged(graph_of(BUCKET, CERT), outputs={})

        with pytest.raises(PlanConflictError, match="storage_bucket.site.website_endpoint"):
            planner.plan_from_records(graph_of(BUCKET, CERT, CDN), records)


class TestReplacement:
    """Tests for replacements."""

    def test_replace_deletes_first_by_default(self, planner: Planner) -> None:
        """Test delete-then-create and dependent update ordering."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN)
        records = converged(graph)
        bucket = dict(BUCKET, attributes={"bucket": "renamed-bucket"})

        plan = planner.plan_from_records(graph_of(ZONE, CERT, bucket, CDN), records)

        assert keys(plan) == [
            "delete:storage_bucket.site:replace",
            "create:storage_bucket.site",
            "update:cdn_distribution.site",
        ]
        assert plan.actionable[0].prior_provider_id == "id-storage_bucket.site"
        assert plan.actionable[2].changed_attributes == ["origin_domain"]
        assert_ordered(plan)

    def test_create_before_destroy(self, planner: Planner) -> None:
        """Test that the replacement exists before the original is deleted."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN)
        records = converged(graph)
        cert = dict(CERT, attributes={"domain_name": "example.org"}, lifecycle={"createBeforeDestroy": True})

        plan = planner.plan_from_records(graph_of(ZONE, cert, BUCKET, CDN), records)

        assert keys(plan) == [
            "create:certificate.site",
            "update:cdn_distribution.site",
            "delete:certificate.site#deposed:replace",
        ]
        delete = plan.actionable[-1]
        assert delete.prior_provider_id == "id-certificate.site"
        assert "create:certificate.site" in delete.prerequisites
        assert "update:cdn_distribution.site" in delete.prerequisites
        assert_ordered(plan)

    def test_provider_change_replaces(self, planner: Planner) -> None:
        graph = graph_of(ZONE)
        records = converged(graph)
        records["dns_zone.site"] = replace(records["dns_zone.site"], provider="legacy")

        plan = planner.plan_from_records(graph, records)

        assert keys(plan) == ["delete:dns_zone.site:replace", "create:dns_zone.site"]
        assert plan.actionable[0].provider == "legacy"

    def test_leftover_deposed_record_deleted(self, planner: Planner) -> None:
        """Test that a deposed record from an interrupted run is deleted."""
        graph = graph_of(CERT)
        records = converged(graph)
        deposed = replace(records["certificate.site"].as_deposed(), provider_id="id-old-certificate")
        records[deposed.address] = deposed

        plan = planner.plan_from_records(graph, records)

        assert keys(plan) == ["delete:certificate.site#deposed"]
        assert plan.actionable[0].reason == ChangeReason.DEPOSED
        assert plan.actionable[0].prior_provider_id == "id-old-certificate"

    def test_deposed_deleted_after_dependents_move(self, planner: Planner) -> None:
        """Test resuming a replacement whose validation did not finish."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN)
        records = converged(graph)
        cdn = records["cdn_distribution.site"]
        records["cdn_distribution.site"] = replace(cdn, resolved=dict(cdn.resolved, certificate_arn="arn:cert:0"))
        records["certificate.site#deposed"] = replace(
            records["certificate.site"].as_deposed(),
            provider_id="id-old-certificate",
            outputs={"arn": "arn:cert:0", "status": "ISSUED"},
        )
        records["certificate.site"] = replace(records["certificate.site"], ready=False)

        plan = planner.plan_from_records(graph, records)

        assert keys(plan) == [
            "update:certificate.site",
            "update:cdn_distribution.site",
            "delete:certificate.site#deposed",
        ]
        assert plan.actionable[1].changed_attributes == ["certificate_arn"]
        assert plan.actionable[2].prerequisites == [
            "update:cdn_distribution.site",
            "update:certificate.site",
        ]
        assert_ordered(plan)

    def test_replace_while_deposed_pending(self, planner: Planner) -> None:
        """Test that a second replacement deletes the unused live object, not the original."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN)
        records = converged(graph)
        records["certificate.site#deposed"] = replace(
            records["certificate.site"].as_deposed(), provider_id="id-old-certificate"
        )
        records["certificate.site"] = replace(records["certificate.site"], ready=False)
        cert = dict(CERT, attributes={"domain_name": "example.org"}, lifecycle={"createBeforeDestroy": True})

        plan = planner.plan_from_records(graph_of(ZONE, cert, BUCKET, CDN), records)

        assert keys(plan) == [
            "delete:certificate.site:replace",
            "create:certificate.site",
            "update:cdn_distribution.site",
            "delete:certificate.site#deposed",
        ]
        assert plan.actionable[0].prior_provider_id == "id-certificate.site"
        assert plan.actionable[-1].prior_provider_id == "id-old-certificate"
        assert_ordered(plan)

    def test_deposed_copy_of_live_record_ignored(self, planner: Planner) -> None:
        """Test that a deposed record naming the live object does not block planning."""
        graph = graph_of(ZONE, CERT, BUCKET, CDN)
        records = converged(graph)
        records["certificate.site#deposed"] = records["certificate.site"].as_deposed()

        assert not planner.plan_from_records(graph, records).has_changes

        cert = dict(CERT, attributes={"domain_name": "example.org"}, lifecycle={"createBeforeDestroy": True})
        plan = planner.plan_from_records(graph_of(ZONE, cert, BUCKET, CDN), records)

        assert keys(plan) == [
            "create:certificate.site",
            "update:cdn_distribution.site",
            "delete:certificate.site#deposed:replace",
        ]
        assert_ordered(plan)


class TestInternalErrors:
    """Tests for planner errors that valid input does not reach."""

    def test_replace_without_record(self) -> None:
        class ReplacingPlanner(Planner):
            def _diff(self, node: Any, record: Any, *args: Any) -> Any:
                return Action.CREATE, ChangeReason.REPLACE, set()

        with pytest.raises(ReconcileError, match="replacement planned without a state record"):
            ReplacingPlanner().plan_from_records(graph_of(ZONE), {})

    def test_circular_prerequisites(self) -> None:
        """Test that an ordering cycle is reported with the stuck changes."""

        class LoopingPlanner(Planner):
            def _prerequisites(self, graph: Any, records: Any, changes: Any, apply_key: Any) -> Any:
                first, second = sorted(changes)
                return {first: {second}, second: {first}}

        with pytest.raises(ReconcileError, match="circular prerequisites: create:dns_zone.site, create:storage_bucket.site"):
            LoopingPlanner().plan_from_records(graph_of(ZONE, BUCKET), {})


class TestRemoval:
    """Tests for removed resources."""

    def test_removed_mapping_key(self, planner: Planner) -> None:
        """Test that removing one key yields exactly one delete."""
        before = graph_of(BUCKET, REDIRECTS, mapping={"/a": "/x", "/b": "/y", "/c": "/z"})
        after = graph_of(BUCKET, REDIRECTS, mapping={"/a": "/x", "/c": "/z"})

        plan = planner.plan_from_records(after, converged(before))

        assert keys(plan) == ['delete:storage_object.redirects["/b"]']
        assert plan.actionable[0].reason == ChangeReason.REMOVED

    def test_dependents_deleted_first(self, planner: Planner) -> None:
        """Test that objects are deleted before their bucket."""
        records = converged(graph_of(ZONE, BUCKET, REDIRECTS, mapping={"/a": "/x"}))

        plan = planner.plan_from_records(graph_of(ZONE), records)

        assert keys(plan) == [
            'delete:storage_object.redirects["/a"]',
            "delete:storage_bucket.site",
        ]
        assert_ordered(plan)

    def test_validation_records_deleted_before_parent(self, planner: Planner) -> None:
        graph = graph_of(CERT)
        records = converged(graph)
        child = 'dns_record.site_validation["_v.example.com."]'
        records[child] = StateRecord(
            address=child,
            resource_type="dns_record",
            provider="default",
            provider_id="rec-1",
            parent="certificate.site",
        )

        plan = planner.plan_from_records(graph_of(ZONE), records)

        assert keys(plan) == [
            f"delete:{child}",
            "delete:certificate.site",
            "create:dns_zone.site",
        ]
        assert_ordered(plan)

    def test_dependent_updated_before_delete(self, planner: Planner) -> None:
        """Test that a dependent drops its reference before the target goes."""
        records = converged(graph_of(ZONE, CERT, BUCKET, CDN))
        cdn = dict(CDN, attributes={"origin_domain": "${storage_bucket.site.website_endpoint}"})

        plan = planner.plan_from_records(graph_of(ZONE, BUCKET, cdn), records)

        assert keys(plan) == ["update:cdn_distribution.site", "delete:certificate.site"]
        assert plan.actionable[1].prerequisites == ["update:cdn_distribution.site"]


class TestPlanSerialization:
    """Tests for saved plans."""

    def test_round_trip(self, planner: Planner) -> None:
        graph = graph_of(ZONE, BUCKET, REDIRECTS, mapping={"/a": "/b"})
        plan = planner.plan_from_records(graph, {}, source="site.yaml")

        restored = Plan.from_dict(plan.to_dict())

        assert keys(restored) == keys(plan)
        assert restored.state_fingerprint == plan.state_fingerprint
        assert restored.source == "site.yaml"
        assert restored.changes[0].action == Action.CREATE

    def test_unsupported_version(self) -> None:
        with pytest.raises(ValueError, match="format version"):
            Plan.from_dict({"format_version": 99})

    def test_stale_plan(self, planner: Planner) -> None:
        """Test that a plan refuses a different state snapshot."""
        graph = graph_of(ZONE)
        plan = planner.plan_from_records(graph, {})

        plan.check_fresh({})
        with pytest.raises(StalePlanError, match="different state snapshot"):
            plan.check_fresh(converged(graph))

    def test_report(self, planner: Planner) -> None:
        """Test the machine-readable report."""
        plan = planner.plan_from_records(
            graph_of(BUCKET, REDIRECTS, mapping={"/old-page": "https://example.com/new-page"}), {}
        )

        report = plan.to_report()

        assert report["summary"] == {"create": 2, "update": 0, "delete": 0, "no-op": 0}
        redirect = report["resource_changes"][1]
        assert redirect["address"] == 'storage_object.redirects["/old-page"]'
        assert redirect["after"]["key"] == "/old-page"
        assert redirect["after"]["website_redirect"] == "https://example.com/new-page"
