"""Plan execution against provider APIs.

The executor walks a plan as a dependency-ordered work queue:
1. a change is dispatched once every prerequisite change has committed
2. at most MAX_WORKERS changes are in flight; the rest wait their turn
3. each provider call runs in a thread executor under a timeout, and
   retryable provider errors are retried with exponential backoff
4. every confirmed provider response is committed to the state store before
   any dependent change is dispatched

On the first failure no further changes are dispatched. In-flight changes
finish (or fail) on their own, and every record committed so far stays valid
for the next plan. There is no rollback.

Resources whose schema declares a readiness signal (DNS-validated
certificates) go through an extra step after create: the validation records
the provider asks for are published as child resources, then readiness is
polled until it is observed or the deadline passes.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from .config import Config
from .errors import (
    ApplyCanceledError,
    PlanConflictError,
    ProviderError,
    ReconcileError,
)
from .nodes import ValidationPolicy
from .planner import Action, ChangeReason, Plan, PlannedChange
from .provider import Provider, ProviderAPIError, ProviderRegistry, ProviderResponse, ResourceTypeSchema
from .references import ResourceId, is_deposed, resolve_references
from .state import StateRecord, StateStore
from .validation import PollSchedule, ValidationWaiter

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Result of one apply run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    applied: list[str] = field(default_factory=list)
    failed: str | None = None
    not_started: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def validation_record_address(parent: str, record_type: str, record_name: str) -> str:
    """Identity of a validation record published on behalf of ``parent``."""
    parent_id = ResourceId.parse(parent)
    key = record_name if parent_id.key is None else f"{parent_id.key}/{record_name}"
    return ResourceId(record_type, f"{parent_id.name}_validation", key).address


class Executor:
    """Applies plans with bounded concurrency.

    Args:
        config: Worker, timeout, retry and validation settings.
        registry: Providers the plan's changes are bound to.
        store: State store that every confirmed response is committed to.
        waiter: Readiness waiter; built from ``config`` when omitted.
    """

    def __init__(
        self,
        config: Config,
        registry: ProviderRegistry,
        store: StateStore,
        waiter: ValidationWaiter | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store
        self._waiter = waiter or ValidationWaiter(PollSchedule.from_config(config))
        self._cancel_event = asyncio.Event()
        self._records: dict[str, StateRecord] = {}

    @property
    def records(self) -> dict[str, StateRecord]:
        """State as known to the executor, including this run's commits."""
        return dict(self._records)

    def cancel(self) -> None:
        """Stop dispatching new changes; in-flight changes finish."""
        logger.warning("Apply cancellation requested")
        self._cancel_event.set()

    async def apply(self, plan: Plan, records: dict[str, StateRecord]) -> ApplyResult:
        """Apply every actionable change in ``plan``.

        Args:
            plan: Plan to apply; must match ``records``.
            records: State snapshot loaded at the start of the run.

        Returns:
            ApplyResult; ``error`` is set when the run stopped early.
        """
        result = ApplyResult()
        self._records = dict(records)

        order = plan.actionable
        pending: dict[str, PlannedChange] = {change.key: change for change in order}
        done: set[str] = set()
        running: dict[asyncio.Task[None], PlannedChange] = {}

        logger.info("Apply started", extra={"change_count": len(order)})

        while pending or running:
            if result.error is None and not self._cancel_event.is_set():
                for change in order:
                    if len(running) >= self._config.max_workers:
                        break
                    if change.key not in pending:
                        continue
                    if not all(prereq in done for prereq in change.prerequisites):
                        continue
                    del pending[change.key]
                    task = asyncio.create_task(self._apply_change(change), name=change.key)
                    running[task] = change

            if not running:
                break

            finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                change = running.pop(task)
                error = task.exception()
                if error is None:
                    done.add(change.key)
                    result.applied.append(change.key)
                elif result.error is None:
                    result.error = error
                    result.failed = change.key
                else:
                    logger.error(
                        "Additional change failed",
                        extra={"key": change.key, "error": str(error)},
                    )

        result.not_started = [change.key for change in order if change.key in pending]
        if result.error is None and result.not_started:
            if self._cancel_event.is_set():
                result.error = ApplyCanceledError(
                    f"Apply canceled with {len(result.not_started)} changes not started"
                )
            else:
                result.error = ReconcileError(
                    f"Changes with unsatisfiable prerequisites: {', '.join(result.not_started)}"
                )

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _apply_change(self, change: PlannedChange) -> None:
        logger.info(
            "Applying change",
            extra={"address": change.address, "action": change.action.value, "reason": change.reason.value},
        )
        match change.action:
            case Action.CREATE:
                await self._create(change)
            case Action.UPDATE:
                await self._update(change)
            case Action.DELETE:
                await self._delete(change)
            case Action.NO_OP:
                return

    def _resolve(self, address: str, value: Any) -> Any:
        def lookup(target: str, output: str) -> Any:
            record = self._records.get(target)
            if record is None or not record.has_value(output):
                raise PlanConflictError(address, target, output)
            return record.value(output)

        return resolve_references(value, lookup)

    def _commit(self, record: StateRecord) -> None:
        self._store.commit(record)
        self._records[record.address] = record

    def _forget(self, address: str) -> None:
        self._store.remove(address)
        self._records.pop(address, None)

    async def _create(self, change: PlannedChange) -> None:
        provider = self._registry.get(change.provider)
        resolved = self._resolve(change.address, change.attributes)

        original = self._records.get(change.address)
        deposed: StateRecord | None = None
        if change.reason == ChangeReason.REPLACE and original is not None:
            # Keep the original tracked until its delete is confirmed
            deposed = original.as_deposed()
            self._commit(deposed)

        try:
            response = await self._call(
                change.address, "create", provider.create, change.resource_type, resolved
            )
        except ProviderError:
            if deposed is not None:
                # The original is still the live object
                self._forget(deposed.address)
            raise

        schema = provider.schema(change.resource_type)

        record = StateRecord(
            address=change.address,
            resource_type=change.resource_type,
            provider=change.provider,
            provider_id=response.provider_id,
            attributes=change.attributes,
            resolved=resolved,
            outputs=response.outputs,
            dependencies=change.dependencies,
            ready=_is_ready(schema, response.outputs),
            create_before_destroy=change.create_before_destroy,
            validation=change.validation,
        )
        self._commit(record)

        if schema is not None and schema.awaits_readiness:
            await self._await_ready(change, record, provider, schema)

    async def _update(self, change: PlannedChange) -> None:
        record = self._records.get(change.address)
        if record is None:
            raise PlanConflictError(change.address, change.address, "id")

        provider = self._registry.get(change.provider)
        schema = provider.schema(change.resource_type)

        if change.reason != ChangeReason.RESUME_VALIDATION:
            resolved = self._resolve(change.address, change.attributes)
            response = await self._call(
                change.address, "update", provider.update, change.resource_type, record.provider_id, resolved
            )
            record = replace(
                record,
                provider_id=response.provider_id,
                attributes=change.attributes,
                resolved=resolved,
                outputs=response.outputs,
                dependencies=change.dependencies,
                ready=_is_ready(schema, response.outputs),
                create_before_destroy=change.create_before_destroy,
                validation=change.validation,
                updated_at=datetime.now(UTC),
            )
            self._commit(record)

        if schema is not None and schema.awaits_readiness:
            await self._await_ready(change, record, provider, schema)

    async def _delete(self, change: PlannedChange) -> None:
        provider = self._registry.get(change.provider)
        record = self._records.get(change.address)
        provider_id = change.prior_provider_id or (record.provider_id if record else None)

        if provider_id is not None:
            await self._call(change.address, "delete", provider.delete, change.resource_type, provider_id)
        self._forget(change.address)

        if is_deposed(change.address):
            logger.info("Deleted deposed object", extra={"address": change.address})

    async def _await_ready(
        self,
        change: PlannedChange,
        record: StateRecord,
        provider: Provider,
        schema: ResourceTypeSchema,
    ) -> None:
        """Publish requested validation records, then poll for readiness."""
        policy = ValidationPolicy.from_dict(change.validation) if change.validation else None
        current = await self._read(change.address, provider, record)
        latest: dict[str, Any] = current.outputs
        requested = latest.get(schema.validation_output, []) if schema.validation_output else []

        wanted: set[str] = set()
        if policy is not None:
            wanted = {
                validation_record_address(change.address, policy.record_type, str(item["name"]))
                for item in requested
            }

        if not _is_ready(schema, latest):
            if requested and policy is None:
                logger.warning(
                    "Provider requested validation records but none are managed here",
                    extra={"address": change.address, "requested": len(requested)},
                )
            elif policy is not None:
                await self._publish_validation_records(change.address, policy, requested)

            async def check() -> bool:
                nonlocal latest
                response = await self._read(change.address, provider, record)
                latest = response.outputs
                return _is_ready(schema, latest)

            await self._waiter.wait(change.address, check)

        self._commit(replace(record, outputs=latest, ready=True, updated_at=datetime.now(UTC)))

        if policy is not None and wanted:
            await self._remove_stale_validation_records(change.address, wanted)

    async def _read(self, address: str, provider: Provider, record: StateRecord) -> ProviderResponse:
        response = await self._call(address, "read", provider.read, record.resource_type, record.provider_id)
        if response is None:
            raise ProviderError(address, "read", "object no longer exists")
        return response

    async def _publish_validation_records(
        self,
        parent: str,
        policy: ValidationPolicy,
        requested: list[dict[str, Any]],
    ) -> None:
        """Upsert one child record per requested validation record."""
        provider = self._registry.get(policy.provider)
        base = self._resolve(parent, policy.attributes)
        for item in requested:
            address = validation_record_address(parent, policy.record_type, str(item["name"]))
            attributes = {**base, **item}
            existing = self._records.get(address)

            if existing is not None and existing.resolved == attributes and existing.provider == policy.provider:
                logger.debug("Validation record unchanged", extra={"address": address})
                continue

            if existing is None:
                response = await self._call(address, "create", provider.create, policy.record_type, attributes)
            else:
                response = await self._call(
                    address, "update", provider.update, policy.record_type, existing.provider_id, attributes
                )

            self._commit(
                StateRecord(
                    address=address,
                    resource_type=policy.record_type,
                    provider=policy.provider,
                    provider_id=response.provider_id,
                    attributes=attributes,
                    resolved=attributes,
                    outputs=response.outputs,
                    dependencies=[parent],
                    parent=parent,
                )
            )
            logger.info("Published validation record", extra={"address": address, "parent": parent})

    async def _remove_stale_validation_records(self, parent: str, keep: set[str]) -> None:
        stale = sorted(
            address
            for address, record in self._records.items()
            if record.parent == parent and address not in keep
        )
        for address in stale:
            record = self._records[address]
            provider = self._registry.get(record.provider)
            await self._call(address, "delete", provider.delete, record.resource_type, record.provider_id)
            self._forget(address)
            logger.info("Removed stale validation record", extra={"address": address, "parent": parent})

    async def _call(self, address: str, action: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one provider call with timeout and retry.

        Raises:
            ProviderError: If the call fails permanently or exhausts retries.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.provider_timeout_seconds
        attempts = self._config.provider_max_retries

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout=timeout)
            except TimeoutError as e:
                logger.error(
                    "Provider call timed out",
                    extra={"address": address, "action": action, "timeout_seconds": timeout},
                )
                raise ProviderError(address, action, f"timed out after {timeout}s") from e
            except ProviderAPIError as e:
                if e.not_found and action == "delete":
                    logger.info("Object already deleted", extra={"address": address})
                    return None
                if not e.retryable or attempt == attempts:
                    raise ProviderError(address, action, str(e)) from e

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "address": address,
                        "action": action,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)
            except Exception as e:
                logger.error(
                    "Provider call raised",
                    extra={"address": address, "action": action, "error": repr(e)},
                )
                raise ProviderError(address, action, str(e) or type(e).__name__) from e

        # provider_max_retries >= 1, so the loop always returns or raises
        raise AssertionError("Retry loop completed without a result")

    def _log_result(self, result: ApplyResult) -> None:
        """Log the apply result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "changes_applied": len(result.applied),
            "changes_not_started": len(result.not_started),
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["failed_change"] = result.failed
            logger.error("Apply failed", extra=extra)
        else:
            logger.info("Apply result", extra=extra)


def _is_ready(schema: ResourceTypeSchema | None, outputs: dict[str, Any]) -> bool:
    if schema is None or schema.ready_output is None:
        return True
    return outputs.get(schema.ready_output) == schema.ready_value
