"""Task handling boundary.

``TaskHandler.handle`` is the outermost frame for one inbound task:

1. Serialize on the conversation lock.
2. Resolve the workspace (reuse, evict-then-create, or block).
3. Run the workflow through the coordinator, then release the workspace
   lease so eviction may consider it again.

Nothing raised by a single task escapes this boundary; unexpected errors
are logged with full context and reported as ``TaskStatus.ERROR``.

``submit`` runs ``handle`` in the background and tracks the task so that
shutdown can wait for in-flight work to drain.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from dockyard.runtime.isolation.allocator import WorkspaceLimitError
from dockyard.runtime.isolation.provider import WorkspaceCreateError
from dockyard.runtime.models.api import TaskAccepted, TaskOutcome
from dockyard.runtime.models.enums import StartStatus, TaskStatus

if TYPE_CHECKING:
    from dockyard.runtime.execution.coordinator import WorkflowRunCoordinator
    from dockyard.runtime.execution.notify import Notifier
    from dockyard.runtime.isolation.allocator import WorkspaceAllocator
    from dockyard.runtime.locks import ConversationLock
    from dockyard.runtime.models.api import TaskRequest


class ShuttingDownError(RuntimeError):
    """Raised when submitting a task during shutdown."""


_START_TO_TASK_STATUS = {
    StartStatus.COMPLETED: TaskStatus.COMPLETED,
    StartStatus.FAILED: TaskStatus.FAILED,
    StartStatus.REJECTED: TaskStatus.REJECTED,
    StartStatus.BLOCKED: TaskStatus.BLOCKED,
}

_UNEXPECTED_ERROR_MESSAGE = "❌ **Error**: Something went wrong while processing this request. Please try again."


class TaskHandler:
    """Runs tasks under the conversation lock and tracks background work."""

    def __init__(
        self,
        lock: ConversationLock,
        allocator: WorkspaceAllocator,
        coordinator: WorkflowRunCoordinator,
        notifier: Notifier,
    ) -> None:
        self._lock = lock
        self._allocator = allocator
        self._coordinator = coordinator
        self._notifier = notifier
        self._tasks: set[asyncio.Task[TaskOutcome]] = set()
        self._drain_event = asyncio.Event()
        self._drain_event.set()
        self._shutting_down = False

    # -- Handling --------------------------------------------------------------

    async def handle(self, task: TaskRequest) -> TaskOutcome:
        """Process one task to completion.  Never raises."""
        try:
            return await self._lock.with_lock(task.conversation_id, lambda: self._run(task))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Unhandled error processing task (conversation={}, workflow={}, codebase={})",
                task.conversation_id,
                task.workflow_name,
                task.codebase_id,
            )
            await self._notifier.send(task.conversation_id, _UNEXPECTED_ERROR_MESSAGE)
            return TaskOutcome(conversation_id=task.conversation_id, status=TaskStatus.ERROR, detail=str(exc))

    async def _run(self, task: TaskRequest) -> TaskOutcome:
        try:
            workspace = await self._allocator.resolve(task)
        except WorkspaceLimitError as exc:
            logger.warning("Task blocked: {}", exc)
            return TaskOutcome(conversation_id=task.conversation_id, status=TaskStatus.BLOCKED, detail=str(exc))
        except WorkspaceCreateError as exc:
            return TaskOutcome(conversation_id=task.conversation_id, status=TaskStatus.FAILED, detail=str(exc))

        try:
            result = await self._coordinator.start(
                task.conversation_id,
                task.steps,
                task.user_message,
                workflow_name=task.workflow_name,
                workspace=workspace,
                codebase_id=task.codebase_id,
                context=task.context,
                metadata=task.metadata,
                loop=task.loop,
            )
        finally:
            self._allocator.release(workspace)
        return TaskOutcome(
            conversation_id=task.conversation_id,
            status=_START_TO_TASK_STATUS[result.status],
            run_id=result.run_id,
            workspace_id=workspace.workspace_id,
            detail=result.error,
        )

    # -- Background ------------------------------------------------------------

    def submit(self, task: TaskRequest) -> TaskAccepted:
        """Schedule ``handle`` in the background.  Raises ``ShuttingDownError``."""
        if self._shutting_down:
            raise ShuttingDownError
        queued = self._lock.is_locked(task.conversation_id)
        background = asyncio.create_task(self.handle(task), name=f"dockyard-task-{task.conversation_id}")
        self._tasks.add(background)
        self._drain_event.clear()
        background.add_done_callback(self._forget)
        logger.debug("Task submitted for conversation {} (queued={})", task.conversation_id, queued)
        return TaskAccepted(conversation_id=task.conversation_id, queued=queued)

    def _forget(self, task: asyncio.Task[TaskOutcome]) -> None:
        self._tasks.discard(task)
        if not self._tasks:
            self._drain_event.set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Refuse new submissions.  In-flight tasks keep running."""
        self._shutting_down = True
        logger.info("Task handler: shutdown initiated, refusing new tasks")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait for in-flight tasks.  Returns ``False`` if *timeout* expired first."""
        if not self._tasks:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Task handler: drain timed out after {}s with {} task(s) still running",
                timeout,
                len(self._tasks),
            )
            return False
        else:
            return True

    async def cancel_remaining(self) -> int:
        """Cancel tasks still running after a drain timeout.  Returns how many were cancelled."""
        remaining = [task for task in self._tasks if not task.done()]
        for task in remaining:
            logger.warning("Task handler: cancelling unfinished task {}", task.get_name())
            task.cancel()
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)
        return len(remaining)
