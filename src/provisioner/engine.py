"""Engine facade for the operator verbs.

    init   -> prepare the state store and check provider configuration
    plan   -> load declaration + mappings, build the graph, diff against state
    apply  -> under the state lock, refuse stale plans, execute
    show   -> machine-readable report of a saved plan

The facade owns wiring only; every decision is made by the graph builder,
planner and executor.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .config import MAX_PLAN_FILE_SIZE_BYTES, Config
from .errors import ReconcileError, SpecLoadError
from .executor import ApplyResult, Executor
from .graph import ResourceGraph, build_graph
from .local_provider import LocalCloud, LocalProvider
from .models import Declaration, ProviderDeclaration
from .planner import Plan, Planner
from .provider import Provider, ProviderRegistry
from .spec_loader import load_declaration, load_mappings
from .state import StateStore

logger = logging.getLogger(__name__)

LOCAL_CLOUD_FILE = "local-cloud.json"


def _local_provider(declaration: ProviderDeclaration, state_dir: Path, clouds: dict[Path, LocalCloud]) -> Provider:
    path = Path(declaration.options.get("path", state_dir / LOCAL_CLOUD_FILE)).resolve()
    cloud = clouds.setdefault(path, LocalCloud(path))
    return LocalProvider(cloud, declaration.region)


PROVIDER_KINDS: dict[str, Callable[[ProviderDeclaration, Path, dict[Path, LocalCloud]], Provider]] = {
    "local": _local_provider,
}


def build_registry(declaration: Declaration, state_dir: Path) -> ProviderRegistry:
    """Instantiate every provider the declaration configures.

    Raises:
        SpecLoadError: If a provider kind is unknown.
    """
    registry = ProviderRegistry()
    clouds: dict[Path, LocalCloud] = {}
    for name, provider in sorted(declaration.providers.items()):
        factory = PROVIDER_KINDS.get(provider.kind)
        if factory is None:
            raise SpecLoadError(
                f"Provider '{name}' has unknown kind '{provider.kind}'. "
                f"Supported: {sorted(PROVIDER_KINDS)}"
            )
        registry.register(name, factory(provider, state_dir, clouds))
    return registry


def write_plan(plan: Plan, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(plan.to_json(), encoding="utf-8")


def read_plan(path: Path) -> Plan:
    """Load a saved plan.

    Raises:
        ReconcileError: If the file is missing, too large or malformed.
    """
    if not path.exists():
        raise ReconcileError(f"Plan file not found: {path}")
    if path.stat().st_size > MAX_PLAN_FILE_SIZE_BYTES:
        raise ReconcileError(f"Plan file exceeds maximum size of {MAX_PLAN_FILE_SIZE_BYTES} bytes: {path}")
    try:
        return Plan.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (ValueError, KeyError, TypeError) as e:
        raise ReconcileError(f"Invalid plan file {path}: {e}") from e


class Engine:
    """Wires loader, graph builder, planner, state store and executor.

    Args:
        config: Engine configuration.
        spec_path: Declaration file.
        registry: Providers to use instead of those the declaration configures.
    """

    def __init__(
        self,
        config: Config,
        spec_path: Path,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self._config = config
        self._spec_path = spec_path
        self._store = StateStore(config.state_dir)
        self._registry = registry
        self._declaration: Declaration | None = None
        self._executor: Executor | None = None

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def declaration(self) -> Declaration:
        if self._declaration is None:
            self._declaration = load_declaration(self._spec_path)
        return self._declaration

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = build_registry(self.declaration, self._config.state_dir)
        return self._registry

    def init(self) -> None:
        """Prepare the state store and validate provider configuration."""
        self._store.initialize()
        logger.info(
            "Initialized",
            extra={"state_dir": str(self._config.state_dir), "providers": self.registry.names},
        )

    def build(self) -> ResourceGraph:
        """Load mapping sources and build the resource graph."""
        declaration = self.declaration
        mappings = load_mappings(declaration, self._spec_path.parent)
        return build_graph(
            declaration,
            mappings,
            registry=self.registry,
            empty_replace_key=self._config.empty_replace_key,
        )

    def plan(self) -> Plan:
        """Compute a plan against the current state snapshot."""
        if not self._store.initialized:
            raise ReconcileError(f"State store is not initialized: {self._config.state_dir}. Run init first.")
        graph = self.build()
        return Planner(self.registry).plan(graph, self._store, source=str(self._spec_path))

    async def apply(self, plan: Plan) -> ApplyResult:
        """Apply a plan under the state lock.

        Raises:
            StateLockError: If another run holds the lock.
            StalePlanError: If state changed since the plan was computed.
        """
        with self._store.lock():
            records = self._store.load()
            plan.check_fresh(records)
            self._executor = Executor(self._config, self.registry, self._store)
            try:
                return await self._executor.apply(plan, records)
            finally:
                self._executor = None

    def cancel(self) -> None:
        if self._executor is not None:
            self._executor.cancel()

    @staticmethod
    def show(plan: Plan) -> dict[str, Any]:
        return plan.to_report()
