"""Local provider simulating the static-site topology in a JSON file.

The local cloud stores every object in one JSON document so that several
named provider instances (e.g. a "us_east_1" instance for the certificate and
a "default" one for everything else) observe the same world, and so that
state survives between CLI invocations.

Supported resource types:
- dns_zone: hosted zone for a domain
- dns_record: record inside a zone
- certificate: TLS certificate validated through DNS records; it becomes
  ISSUED once every requested validation record exists as a dns_record
- storage_bucket: object storage bucket with optional website hosting
- storage_object: object in a bucket, typically a website redirect
- cdn_distribution: CDN in front of a bucket; requires an issued certificate
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .provider import ProviderAPIError, ProviderResponse, ResourceTypeSchema

logger = logging.getLogger(__name__)

CERTIFICATE_ISSUED = "ISSUED"
CERTIFICATE_PENDING = "PENDING_VALIDATION"
DEFAULT_REGION = "local-1"

SCHEMAS: dict[str, ResourceTypeSchema] = {
    "dns_zone": ResourceTypeSchema(
        resource_type="dns_zone",
        outputs=frozenset({"zone_id", "name_servers"}),
        replace_on=frozenset({"name"}),
    ),
    "dns_record": ResourceTypeSchema(
        resource_type="dns_record",
        outputs=frozenset({"fqdn"}),
        replace_on=frozenset({"zone_id", "name", "type"}),
    ),
    "certificate": ResourceTypeSchema(
        resource_type="certificate",
        outputs=frozenset({"arn", "status", "validation_records"}),
        replace_on=frozenset({"domain_name", "subject_alternative_names"}),
        ready_output="status",
        ready_value=CERTIFICATE_ISSUED,
        validation_output="validation_records",
    ),
    "storage_bucket": ResourceTypeSchema(
        resource_type="storage_bucket",
        outputs=frozenset({"arn", "website_endpoint", "regional_domain_name"}),
        replace_on=frozenset({"bucket"}),
    ),
    "storage_object": ResourceTypeSchema(
        resource_type="storage_object",
        outputs=frozenset({"etag"}),
        replace_on=frozenset({"bucket", "key"}),
    ),
    "cdn_distribution": ResourceTypeSchema(
        resource_type="cdn_distribution",
        outputs=frozenset({"domain_name", "hosted_zone_id", "status"}),
    ),
}


def _digest(*parts: str, length: int = 16) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:length]


class LocalCloud:
    """JSON-file backed object store shared by local provider instances."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ProviderAPIError(f"Local cloud file is unreadable: {self._path}: {e}") from e
        return data.get("objects", {})

    def _save(self, objects: dict[str, dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"objects": objects}, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._path)

    def objects(self, object_type: str | None = None) -> dict[str, dict[str, Any]]:
        with self._lock:
            objects = self._load()
        if object_type is None:
            return objects
        return {oid: obj for oid, obj in objects.items() if obj["type"] == object_type}

    def get(self, object_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._load().get(object_id)

    def put(self, object_id: str, obj: dict[str, Any]) -> None:
        with self._lock:
            objects = self._load()
            objects[object_id] = obj
            self._save(objects)

    def delete(self, object_id: str) -> bool:
        with self._lock:
            objects = self._load()
            if object_id not in objects:
                return False
            del objects[object_id]
            self._save(objects)
            return True


class LocalProvider:
    """Provider instance bound to one region of a LocalCloud."""

    def __init__(self, cloud: LocalCloud, region: str | None = None) -> None:
        self._cloud = cloud
        self._region = region or DEFAULT_REGION

    @property
    def region(self) -> str:
        return self._region

    def schema(self, resource_type: str) -> ResourceTypeSchema | None:
        return SCHEMAS.get(resource_type)

    def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResponse:
        self._require_type(resource_type)
        self._check_create(resource_type, attributes)

        object_id = f"{resource_type}-{uuid.uuid4().hex[:12]}"
        obj = {
            "type": resource_type,
            "region": self._region,
            "attributes": attributes,
            "created_at": datetime.now(UTC).isoformat(),
        }
        obj["outputs"] = self._initial_outputs(resource_type, object_id, attributes)
        self._cloud.put(object_id, obj)

        logger.debug(
            "Local object created",
            extra={"resource_type": resource_type, "provider_id": object_id, "region": self._region},
        )
        return self._response(object_id, obj)

    def read(self, resource_type: str, provider_id: str) -> ProviderResponse | None:
        obj = self._cloud.get(provider_id)
        if obj is None or obj["type"] != resource_type:
            return None
        if resource_type == "certificate":
            obj["outputs"]["status"] = self._certificate_status(obj)
            self._cloud.put(provider_id, obj)
        return self._response(provider_id, obj)

    def update(
        self, resource_type: str, provider_id: str, attributes: dict[str, Any]
    ) -> ProviderResponse:
        obj = self._cloud.get(provider_id)
        if obj is None or obj["type"] != resource_type:
            raise ProviderAPIError(f"{resource_type} {provider_id} not found", not_found=True)

        schema = SCHEMAS[resource_type]
        changed = {k for k in schema.replace_on if obj["attributes"].get(k) != attributes.get(k)}
        if changed:
            raise ProviderAPIError(
                f"{resource_type} attributes {sorted(changed)} cannot be updated in place"
            )
        if resource_type == "cdn_distribution":
            self._check_certificate(attributes)

        obj["attributes"] = attributes
        obj["updated_at"] = datetime.now(UTC).isoformat()
        if resource_type == "storage_object":
            obj["outputs"]["etag"] = _digest(json.dumps(attributes, sort_keys=True))
        self._cloud.put(provider_id, obj)
        return self._response(provider_id, obj)

    def delete(self, resource_type: str, provider_id: str) -> None:
        obj = self._cloud.get(provider_id)
        if obj is None or obj["type"] != resource_type:
            raise ProviderAPIError(f"{resource_type} {provider_id} not found", not_found=True)

        if resource_type == "storage_bucket":
            name = obj["attributes"].get("bucket")
            remaining = [
                oid
                for oid, other in self._cloud.objects("storage_object").items()
                if other["attributes"].get("bucket") == name
            ]
            if remaining:
                raise ProviderAPIError(f"Bucket {name} is not empty ({len(remaining)} objects)")

        self._cloud.delete(provider_id)
        logger.debug("Local object deleted", extra={"resource_type": resource_type, "provider_id": provider_id})

    def _require_type(self, resource_type: str) -> None:
        if resource_type not in SCHEMAS:
            raise ProviderAPIError(f"Unsupported resource type: {resource_type}")

    def _check_create(self, resource_type: str, attributes: dict[str, Any]) -> None:
        match resource_type:
            case "storage_bucket":
                name = attributes.get("bucket")
                if not name:
                    raise ProviderAPIError("storage_bucket requires 'bucket'")
                for other in self._cloud.objects("storage_bucket").values():
                    if other["attributes"].get("bucket") == name:
                        raise ProviderAPIError(f"Bucket {name} already exists")
            case "storage_object":
                name = attributes.get("bucket")
                buckets = self._cloud.objects("storage_bucket").values()
                if not any(b["attributes"].get("bucket") == name for b in buckets):
                    raise ProviderAPIError(f"Bucket {name} does not exist", not_found=True)
            case "dns_record":
                zone_id = attributes.get("zone_id")
                if zone_id not in self._cloud.objects("dns_zone"):
                    raise ProviderAPIError(f"Zone {zone_id} does not exist", not_found=True)
            case "cdn_distribution":
                self._check_certificate(attributes)

    def _check_certificate(self, attributes: dict[str, Any]) -> None:
        arn = attributes.get("certificate_arn")
        if arn is None:
            return
        for cert in self._cloud.objects("certificate").values():
            if cert["outputs"].get("arn") == arn:
                if self._certificate_status(cert) != CERTIFICATE_ISSUED:
                    raise ProviderAPIError(f"Certificate {arn} is not issued")
                return
        raise ProviderAPIError(f"Certificate {arn} does not exist")

    def _initial_outputs(
        self, resource_type: str, object_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        match resource_type:
            case "dns_zone":
                ns_label = _digest(object_id, length=12)
                return {
                    "zone_id": object_id,
                    "name_servers": [f"ns-{i}.z{ns_label}.local." for i in range(1, 5)],
                }
            case "dns_record":
                name = str(attributes.get("name", "")).rstrip(".")
                return {"fqdn": name}
            case "certificate":
                arn = f"arn:local:certificate:{self._region}:{object_id}"
                domains = [attributes.get("domain_name", "")]
                domains += list(attributes.get("subject_alternative_names", []))
                records = [
                    {
                        "name": f"_{_digest(domain)}.{domain}.",
                        "type": "CNAME",
                        "value": f"_{_digest(arn, domain)}.validations.local.",
                    }
                    for domain in sorted(set(domains))
                    if domain
                ]
                return {"arn": arn, "status": CERTIFICATE_PENDING, "validation_records": records}
            case "storage_bucket":
                bucket = attributes.get("bucket", "")
                return {
                    "arn": f"arn:local:storage:::{bucket}",
                    "website_endpoint": f"{bucket}.website-{self._region}.storage.local",
                    "regional_domain_name": f"{bucket}.{self._region}.storage.local",
                }
            case "storage_object":
                return {"etag": _digest(json.dumps(attributes, sort_keys=True))}
            case "cdn_distribution":
                return {
                    "domain_name": f"d{_digest(object_id, length=12)}.cdn.local",
                    "hosted_zone_id": "ZCDNLOCAL",
                    "status": "Deployed",
                }
        return {}

    def _certificate_status(self, cert: dict[str, Any]) -> str:
        published = {
            (str(r["attributes"].get("name")), str(r["attributes"].get("value")))
            for r in self._cloud.objects("dns_record").values()
        }
        required = cert["outputs"].get("validation_records", [])
        if all((r["name"], r["value"]) in published for r in required):
            return CERTIFICATE_ISSUED
        return CERTIFICATE_PENDING

    def _response(self, object_id: str, obj: dict[str, Any]) -> ProviderResponse:
        return ProviderResponse(provider_id=object_id, outputs=dict(obj["outputs"]))
