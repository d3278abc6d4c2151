"""Lifecycle hooks, diagnostics collectors and their dynamic loading."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any, Callable, Optional
import importlib
import sys

import structlog

from .errors import ConfigError

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .models import Scenario, StepReport

LOGGER = structlog.get_logger("agentqa.hooks")


@dataclass(frozen=True)
class ScenarioInfo:
    id: str
    name: Optional[str] = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_scenario(cls, scenario: "Scenario") -> "ScenarioInfo":
        return cls(id=scenario.id, name=scenario.name, tags=tuple(scenario.tags))


@dataclass(frozen=True)
class ResultInfo:
    status: str
    duration_ms: float
    error: Optional[str] = None


@dataclass(frozen=True)
class HookContext:
    user_id: str


BeforeEachHook = Callable[[ScenarioInfo, HookContext], Any]
AfterEachHook = Callable[[ScenarioInfo, ResultInfo, HookContext], Any]


@dataclass
class LifecycleHooks:
    """Per-scenario callbacks run around every scenario execution."""

    before_each: Optional[BeforeEachHook] = None
    after_each: Optional[AfterEachHook] = None


class DiagnosticsCollector(ABC):
    """Gathers extra evidence after a step fails."""

    @abstractmethod
    def collect(self, scenario: "Scenario", report: "StepReport", context: "ExecutionContext") -> None: ...


class LoggingDiagnosticsCollector(DiagnosticsCollector):
    def collect(self, scenario: "Scenario", report: "StepReport", context: "ExecutionContext") -> None:
        LOGGER.warning(
            "step_diagnostics",
            scenario_id=scenario.id,
            step=report.display_name,
            status=report.status,
            user_id=context.user_id,
            conversation_id=context.conversation_id,
            failures=[item.message for item in report.failed_assertions],
            error=report.error,
        )


@dataclass
class HookLoader:
    """Resolves ``module:attribute`` references, caching modules and attributes."""

    search_root: Path
    _cache: dict[tuple[str, str], Any] = field(default_factory=dict)
    _modules: dict[str, ModuleType] = field(default_factory=dict)
    _path_added: bool = False

    def resolve(self, reference: str) -> Any:
        module_name, sep, attribute = reference.partition(":")
        if not sep or not module_name or not attribute:
            raise ConfigError(f"Hook reference '{reference}' must look like 'module:attribute'")
        key = (module_name, attribute)
        if key in self._cache:
            return self._cache[key]

        self._ensure_path()
        module = self._modules.get(module_name)
        if module is None:
            try:
                module = importlib.import_module(module_name)
            except ImportError as exc:
                raise ConfigError(f"Hook module {module_name} could not be imported: {exc}") from exc
            self._modules[module_name] = module
        target = getattr(module, attribute, None)
        if target is None:
            raise ConfigError(f"Hook {attribute} not found in {module_name}")
        self._cache[key] = target
        return target

    def load_hooks(self, reference: str) -> LifecycleHooks:
        """Load hooks from a ``LifecycleHooks`` instance, a factory, or a module object."""

        target = self.resolve(reference)
        if callable(target) and not isinstance(target, LifecycleHooks):
            target = target()
        if isinstance(target, LifecycleHooks):
            return target
        return LifecycleHooks(
            before_each=getattr(target, "before_each", None),
            after_each=getattr(target, "after_each", None),
        )

    def _ensure_path(self) -> None:
        if self._path_added:
            return
        root = str(self.search_root)
        if root not in sys.path:
            sys.path.insert(0, root)
        self._path_added = True
