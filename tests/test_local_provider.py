"""Tests for the JSON-file backed local provider."""

from __future__ import annotations

from pathlib import Path

import pytest

from provisioner.local_provider import CERTIFICATE_ISSUED, CERTIFICATE_PENDING, LocalCloud, LocalProvider
from provisioner.provider import ProviderAPIError


@pytest.fixture
def cloud(tmp_path: Path) -> LocalCloud:
    return LocalCloud(tmp_path / "cloud.json")


class TestLocalProvider:
    """Tests for LocalProvider."""

    def test_state_shared_across_instances(self, cloud: LocalCloud, tmp_path: Path) -> None:
        """Test that regions share one world and it survives reloads."""
        east = LocalProvider(cloud, "us-east-1")
        created = east.create("dns_zone", {"name": "example.com"})

        other = LocalProvider(LocalCloud(tmp_path / "cloud.json"), "eu-west-1")
        read = other.read("dns_zone", created.provider_id)

        assert read is not None
        assert read.outputs["zone_id"] == created.outputs["zone_id"]

    def test_zone_outputs(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)
        zone = provider.create("dns_zone", {"name": "example.com"})

        assert zone.outputs["zone_id"] == zone.provider_id
        assert len(zone.outputs["name_servers"]) == 4
        assert len({ns.split(".", 1)[1] for ns in zone.outputs["name_servers"]}) == 1

    def test_certificate_issued_after_validation_records(self, cloud: LocalCloud) -> None:
        """Test the DNS validation lifecycle."""
        provider = LocalProvider(cloud)
        zone = provider.create("dns_zone", {"name": "example.com"})
        cert = provider.create(
            "certificate", {"domain_name": "example.com", "subject_alternative_names": ["www.example.com"]}
        )

        assert cert.outputs["status"] == CERTIFICATE_PENDING
        records = cert.outputs["validation_records"]
        assert len(records) == 2

        for record in records:
            provider.create("dns_record", {"zone_id": zone.outputs["zone_id"], **record})

        read = provider.read("certificate", cert.provider_id)
        assert read is not None
        assert read.outputs["status"] == CERTIFICATE_ISSUED

    def test_cdn_requires_issued_certificate(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)
        cert = provider.create("certificate", {"domain_name": "example.com"})

        with pytest.raises(ProviderAPIError, match="not issued"):
            provider.create("cdn_distribution", {"certificate_arn": cert.outputs["arn"]})

    def test_object_requires_bucket(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)

        with pytest.raises(ProviderAPIError, match="does not exist"):
            provider.create("storage_object", {"bucket": "missing", "key": "/a"})

    def test_bucket_names_unique(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)
        provider.create("storage_bucket", {"bucket": "site"})

        with pytest.raises(ProviderAPIError, match="already exists"):
            provider.create("storage_bucket", {"bucket": "site"})

    def test_non_empty_bucket_delete_refused(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)
        bucket = provider.create("storage_bucket", {"bucket": "site"})
        provider.create("storage_object", {"bucket": "site", "key": "/a"})

        with pytest.raises(ProviderAPIError, match="not empty"):
            provider.delete("storage_bucket", bucket.provider_id)

    def test_update_rejects_replace_attributes(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)
        bucket = provider.create("storage_bucket", {"bucket": "site"})

        with pytest.raises(ProviderAPIError, match="cannot be updated in place"):
            provider.update("storage_bucket", bucket.provider_id, {"bucket": "renamed"})

    def test_delete_missing_is_not_found(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)

        with pytest.raises(ProviderAPIError) as exc_info:
            provider.delete("dns_zone", "dns_zone-missing")

        assert exc_info.value.not_found is True

    def test_unsupported_type(self, cloud: LocalCloud) -> None:
        provider = LocalProvider(cloud)

        assert provider.schema("queue") is None
        with pytest.raises(ProviderAPIError, match="Unsupported resource type"):
            provider.create("queue", {})
