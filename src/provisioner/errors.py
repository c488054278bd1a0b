"""Error taxonomy for the reconciliation engine.

Graph and planning errors are raised before any provider call is made, so they
are always safe to retry once the input is fixed. Executor errors abort the
remaining plan but leave every committed state record in place.
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for all engine errors."""

    pass


class SpecLoadError(ReconcileError):
    """Raised when a declaration cannot be loaded or fails validation."""

    pass


class InvalidMappingError(ReconcileError):
    """Raised when an external keyed data source is malformed."""

    pass


class CycleError(ReconcileError):
    """Raised when resource references form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Reference cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UndefinedReferenceError(ReconcileError):
    """Raised when an attribute references a missing node or output."""

    def __init__(self, source: str, target: str, detail: str = "") -> None:
        message = f"{source} references undefined {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.source = source
        self.target = target


class DuplicateResourceError(ReconcileError):
    """Raised when two declarations produce the same identity."""

    pass


class AmbiguousRedirectError(ReconcileError):
    """Raised when an empty replace key is declared without an explicit policy."""

    pass


class PlanConflictError(ReconcileError):
    """Raised when a reference cannot be satisfied by pending or prior state."""

    def __init__(self, address: str, target: str, output: str) -> None:
        super().__init__(
            f"{address}: cannot resolve {target}.{output}, "
            f"{target} has no pending change and no recorded value for '{output}'"
        )
        self.address = address
        self.target = target
        self.output = output


class StalePlanError(ReconcileError):
    """Raised when a plan no longer matches the current state snapshot."""

    pass


class StateLockError(ReconcileError):
    """Raised when another run holds the state lock."""

    pass


class StateCorruptError(ReconcileError):
    """Raised when a persisted state record cannot be read."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Corrupt state record {path}: {detail}")
        self.path = path


class ProviderNotConfiguredError(ReconcileError):
    """Raised when a node is bound to a provider that is not registered."""

    pass


class ProviderError(ReconcileError):
    """Wraps a provider-side failure with the failing identity and action."""

    def __init__(self, address: str, action: str, message: str) -> None:
        super().__init__(f"{action} {address} failed: {message}")
        self.address = address
        self.action = action


class ValidationTimeoutError(ReconcileError):
    """Raised when external validation does not complete before the deadline.

    Re-running apply later is the expected recovery; records that were
    already committed are recognized as no-ops on the next run.
    """

    def __init__(self, address: str, waited_seconds: float, polls: int) -> None:
        super().__init__(
            f"validate {address} timed out after {waited_seconds:.0f}s ({polls} polls)"
        )
        self.address = address
        self.action = "validate"
        self.waited_seconds = waited_seconds
        self.polls = polls


class ApplyCanceledError(ReconcileError):
    """Raised when an apply run is aborted between changes."""

    pass
