import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from pydantic import BaseModel

from leadflow.config import config as settings
from leadflow.errors import ActionTimeoutError, ConfigurationError
from leadflow.models.automation import ActionType
from leadflow.models.execution import ActionResult, ActionStatus, TriggerSnapshot
from leadflow.services.interpolator import TemplateInterpolator

logger = logging.getLogger(__name__)

DELAY_KEY = "delay"


class ActionOutcome(BaseModel):
    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None


class ActionExecutor(ABC):
    """One integration. Receives the fully interpolated config."""

    @abstractmethod
    async def execute(self, config: Dict[str, Any]) -> Union[ActionOutcome, Dict[str, Any]]:
        ...


class ActionRegistry:
    def __init__(self, executors: Optional[Mapping[ActionType, ActionExecutor]] = None):
        self._executors: Dict[ActionType, ActionExecutor] = {}
        for action_type, executor in (executors or {}).items():
            self.register(action_type, executor)

    def register(self, action_type: ActionType, executor: ActionExecutor, replace: bool = False):
        action_type = ActionType(action_type)
        if action_type in self._executors and not replace:
            raise ValueError(f"An executor is already registered for '{action_type.value}'")
        self._executors[action_type] = executor
        logger.info(f"[REGISTRY] Registered {executor.__class__.__name__} for {action_type.value}")

    def unregister(self, action_type: ActionType):
        self._executors.pop(ActionType(action_type), None)

    def resolve(self, action_type: str) -> ActionExecutor:
        try:
            kind = ActionType(action_type)
        except ValueError:
            raise ConfigurationError(f"Unknown action type '{action_type}'", {"type": action_type})
        executor = self._executors.get(kind)
        if executor is None:
            raise ConfigurationError(
                f"No executor registered for action type '{kind.value}'", {"type": kind.value}
            )
        return executor

    @property
    def registered_types(self) -> Iterable[ActionType]:
        return tuple(self._executors)

    def __contains__(self, action_type) -> bool:
        try:
            return ActionType(action_type) in self._executors
        except ValueError:
            return False


def parse_delay_hours(config: Mapping[str, Any]) -> float:
    raw = config.get(DELAY_KEY) if isinstance(config, Mapping) else None
    if raw is None or raw == "":
        return 0.0
    if isinstance(raw, bool):
        raise ConfigurationError(f"Invalid delay '{raw}'", {"delay": raw})
    try:
        hours = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid delay '{raw}'", {"delay": raw})
    if hours < 0:
        raise ConfigurationError(f"Delay cannot be negative ({raw})", {"delay": raw})
    return hours


def build_context(
    trigger: TriggerSnapshot,
    environment: Optional[Mapping[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    """Template context: event payload at the top level plus ``event``, ``user`` and ``now``."""
    context: Dict[str, Any] = dict(trigger.data)
    context.update(environment or {})
    context.setdefault("user", {})
    context["event"] = {"type": trigger.type, "data": trigger.data}
    context["now"] = now
    return context


class ActionDispatcher:
    """Resolves an action's config and runs its executor with a timeout.

    Never raises for action-level problems: unknown types, executor exceptions
    and timeouts all come back as a failed ``ActionResult``.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        interpolator: Optional[TemplateInterpolator] = None,
        timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.interpolator = interpolator or TemplateInterpolator(clock=self.clock)
        self.timeout = timeout if timeout is not None else settings.ACTION_TIMEOUT_SECONDS
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.MAX_CONCURRENT_ACTIONS)

    def resolve_config(self, action_config: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
        stripped = {key: value for key, value in (action_config or {}).items() if key != DELAY_KEY}
        return self.interpolator.render_config(stripped, context, context.get("now"))

    async def dispatch(self, action_type: str, action_config: Mapping[str, Any], context: Mapping[str, Any]) -> ActionResult:
        started = time.monotonic()
        resolved = None
        try:
            executor = self.registry.resolve(action_type)
            resolved = self.resolve_config(action_config, context)
            outcome = await self._invoke(executor, resolved)
        except ConfigurationError as e:
            logger.warning(f"[DISPATCH] Configuration error for {action_type}: {e.message}")
            return self._result(action_type, started, resolved, error=e.message)
        except ActionTimeoutError as e:
            logger.warning(f"[DISPATCH] {action_type} timed out: {e.message}")
            return self._result(action_type, started, resolved, error=e.message)
        except Exception as e:
            logger.error(f"[DISPATCH] {action_type} raised: {e}", exc_info=True)
            return self._result(action_type, started, resolved, error=str(e) or e.__class__.__name__)

        if outcome.success:
            logger.info(f"[DISPATCH] {action_type} succeeded")
            return self._result(action_type, started, resolved, output=outcome.output)
        error = outcome.error or f"{action_type} reported a failure"
        logger.warning(f"[DISPATCH] {action_type} failed: {error}")
        return self._result(action_type, started, resolved, error=error, output=outcome.output)

    async def _invoke(self, executor: ActionExecutor, resolved: Dict[str, Any]) -> ActionOutcome:
        async with self._semaphore:
            try:
                outcome = await asyncio.wait_for(executor.execute(resolved), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise ActionTimeoutError(f"Action timed out after {self.timeout:g}s")
        if isinstance(outcome, ActionOutcome):
            return outcome
        if isinstance(outcome, Mapping):
            return ActionOutcome(**outcome)
        raise TypeError(f"{executor.__class__.__name__} returned {type(outcome).__name__}, expected an outcome")

    def _result(self, action_type, started, resolved, error=None, output=None) -> ActionResult:
        return ActionResult(
            type=action_type,
            status=ActionStatus.FAILED if error else ActionStatus.SUCCESS,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            error=error,
            output=output,
            resolved_config=resolved,
            completed_at=self.clock(),
        )
