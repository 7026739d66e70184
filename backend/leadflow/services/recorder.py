import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from leadflow.config import config
from leadflow.errors import AutomationError, PersistenceError
from leadflow.models.execution import ActionResult, AutomationExecution, ExecutionStatus
from leadflow.models.scheduled_action import ScheduledAction
from leadflow.services.store import ExecutionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutionRecorder:
    """Writes execution progress and folds finished runs into automation stats.

    Store calls are retried with back-off. Because every store operation is
    idempotent, a retry replays the write and never the action that produced it.
    """

    def __init__(
        self,
        store: ExecutionStore,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.store = store
        self.max_retries = max_retries if max_retries is not None else config.PERSISTENCE_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else config.PERSISTENCE_RETRY_DELAY

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self.max_retries)
        for attempt in range(attempts):
            try:
                return await call()
            except AutomationError:
                # Not-found and similar are answers, not transient failures.
                raise
            except Exception as e:
                if attempt == attempts - 1:
                    logger.error(f"[RECORDER] {operation} failed after {attempts} attempts: {e}", exc_info=True)
                    raise PersistenceError(f"{operation} failed: {e}", operation=operation, attempts=attempts) from e
                logger.warning(f"[RECORDER] Retry {attempt + 1}/{attempts} for {operation}: {e}")
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

    async def record_started(self, execution: AutomationExecution):
        await self._with_retry(
            f"create_execution({execution.id})",
            lambda: self.store.create_execution(execution),
        )

    async def record_action(self, execution_id: str, action_index: int, result: ActionResult):
        await self._with_retry(
            f"append_action_result({execution_id}, {action_index})",
            lambda: self.store.append_action_result(execution_id, action_index, result),
        )

    async def record_scheduled(self, entry: ScheduledAction):
        await self._with_retry(
            f"enqueue_scheduled_action({entry.execution_id}, {entry.action_index})",
            lambda: self.store.enqueue_scheduled_action(entry),
        )

    async def finalize(
        self,
        execution: AutomationExecution,
        status: ExecutionStatus,
        end_time: datetime,
        error: Optional[str] = None,
    ) -> AutomationExecution:
        """Fix the terminal status, then count the run exactly once."""
        transitioned = await self._with_retry(
            f"finalize_execution({execution.id})",
            lambda: self.store.finalize_execution(execution.id, status, end_time, error),
        )
        stored = await self.load(execution.id)
        if not transitioned:
            logger.info(f"[RECORDER] Execution {execution.id} was already {stored.status.value}")
        return await self.count_run(stored, end_time)

    async def load(self, execution_id: str) -> AutomationExecution:
        return await self._with_retry(
            f"get_execution({execution_id})",
            lambda: self.store.get_execution(execution_id),
        )

    async def count_run(
        self, execution: AutomationExecution, end_time: Optional[datetime] = None
    ) -> AutomationExecution:
        """Fold a terminal execution into its automation's stats.

        Safe to replay: ``increment_stats`` is keyed on the execution id, and the
        execution is only flagged ``counted`` after the increment went through.
        """
        if execution.counted:
            return execution
        counted = await self._with_retry(
            f"increment_stats({execution.automation_id}, {execution.id})",
            lambda: self.store.increment_stats(
                execution.automation_id, execution.status, execution.id, execution.end_time or end_time
            ),
        )
        if counted:
            logger.info(
                f"[RECORDER] Counted {execution.status.value} run {execution.id} "
                f"for automation {execution.automation_id}"
            )
        await self._with_retry(
            f"mark_execution_counted({execution.id})",
            lambda: self.store.mark_execution_counted(execution.id),
        )
        execution.counted = True
        return execution
