"""Persistent state store.

One JSON document per resource identity under ``<state_dir>/records``. Each
commit replaces a single document atomically (temp file + ``os.replace``), so
a crash mid-run never corrupts unrelated records and leaves a resumable
partial state.

The store is read once at the start of a run and written incrementally as
each provider response is confirmed. Commits are serialized per identity;
independent identities never contend.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import StateCorruptError, StateLockError
from .references import deposed_address

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
RECORDS_DIR = "records"
LOCK_FILE = "apply.lock"


@dataclass
class StateRecord:
    """Last confirmed provider state of one resource identity.

    Attributes:
        address: Resource identity.
        resource_type: Resource type.
        provider: Provider instance name.
        provider_id: Provider-assigned identifier.
        attributes: Declared attribute snapshot (references unresolved).
        resolved: Attribute values last sent to the provider.
        outputs: Computed outputs from the last provider response.
        dependencies: Addresses the resource depended on when applied.
        parent: Owning resource for validation records.
        ready: False while external validation is still pending.
        create_before_destroy: Lifecycle policy at apply time.
        validation: Validation policy snapshot, if any.
        updated_at: Commit time.
    """

    address: str
    resource_type: str
    provider: str
    provider_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    resolved: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    parent: str | None = None
    ready: bool = True
    create_before_destroy: bool = False
    validation: dict[str, Any] | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def value(self, name: str) -> Any:
        """Look up an output, falling back to resolved attributes and ``id``.

        Raises:
            KeyError: If nothing is recorded under ``name``.
        """
        if name in self.outputs:
            return self.outputs[name]
        if name in self.resolved:
            return self.resolved[name]
        if name == "id":
            return self.provider_id
        raise KeyError(name)

    def has_value(self, name: str) -> bool:
        return name in self.outputs or name in self.resolved or name == "id"

    def as_deposed(self) -> StateRecord:
        return replace(self, address=deposed_address(self.address))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "address": self.address,
            "resource_type": self.resource_type,
            "provider": self.provider,
            "provider_id": self.provider_id,
            "attributes": self.attributes,
            "resolved": self.resolved,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "parent": self.parent,
            "ready": self.ready,
            "create_before_destroy": self.create_before_destroy,
            "validation": self.validation,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        return cls(
            address=data["address"],
            resource_type=data["resource_type"],
            provider=data["provider"],
            provider_id=data["provider_id"],
            attributes=data.get("attributes", {}),
            resolved=data.get("resolved", {}),
            outputs=data.get("outputs", {}),
            dependencies=list(data.get("dependencies", [])),
            parent=data.get("parent"),
            ready=data.get("ready", True),
            create_before_destroy=data.get("create_before_destroy", False),
            validation=data.get("validation"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


def fingerprint(records: dict[str, StateRecord]) -> str:
    """Hash a state snapshot; plans carry it to detect staleness."""
    digest = hashlib.sha256()
    for address in sorted(records):
        payload = records[address].to_dict()
        payload.pop("updated_at", None)
        digest.update(json.dumps(payload, sort_keys=True, default=str).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def _record_filename(address: str) -> str:
    # Addresses carry quotes, slashes and brackets; hash them into a safe name
    return hashlib.sha256(address.encode("utf-8")).hexdigest()[:32] + ".json"


class StateStore:
    """File-backed store of StateRecords."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._records_dir = state_dir / RECORDS_DIR
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def initialize(self) -> None:
        """Create the on-disk layout. Safe to call repeatedly."""
        self._records_dir.mkdir(parents=True, exist_ok=True)
        logger.info("State store initialized", extra={"state_dir": str(self._state_dir)})

    @property
    def initialized(self) -> bool:
        return self._records_dir.is_dir()

    def load(self) -> dict[str, StateRecord]:
        """Read every record. Returns an empty snapshot if uninitialized."""
        records: dict[str, StateRecord] = {}
        if not self._records_dir.is_dir():
            return records

        for path in sorted(self._records_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                record = StateRecord.from_dict(data)
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise StateCorruptError(str(path), str(e)) from e
            records[record.address] = record

        logger.debug("Loaded state", extra={"record_count": len(records)})
        return records

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(address)
            if lock is None:
                lock = threading.Lock()
                self._locks[address] = lock
            return lock

    def commit(self, record: StateRecord) -> None:
        """Atomically upsert one record."""
        self._records_dir.mkdir(parents=True, exist_ok=True)
        target = self._records_dir / _record_filename(record.address)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True, default=str)

        with self._lock_for(record.address):
            fd, tmp_name = tempfile.mkstemp(dir=self._records_dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

        logger.debug("Committed state record", extra={"address": record.address})

    def remove(self, address: str) -> None:
        """Remove one record. Missing records are ignored."""
        target = self._records_dir / _record_filename(address)
        with self._lock_for(address):
            target.unlink(missing_ok=True)
        logger.debug("Removed state record", extra={"address": address})

    @contextmanager
    def lock(self) -> Generator[None, None, None]:
        """Hold the exclusive run lock for the duration of an apply.

        Raises:
            StateLockError: If another run holds the lock.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self._state_dir / LOCK_FILE
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise StateLockError(
                f"State is locked by another run ({lock_path}). "
                "Remove the lock file if that run is no longer active."
            ) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps({"pid": os.getpid(), "since": datetime.now(UTC).isoformat()}))
            yield
        finally:
            lock_path.unlink(missing_ok=True)
