"""Workflow run coordinator -- guards, executes and records a workflow run.

The coordinator runs an ordered list of steps for one conversation inside
an already-resolved workspace:

1. **Guard**: at most one ``running`` run per conversation.  The durable
   store is queried first; a run that cannot be guarded is never started.
2. **Execute**: each step's prompt is resolved, rendered and sent to the
   completion client, chaining the session from the previous step.  A
   parallel block runs its steps concurrently, each in a fresh session.  A
   loop workflow repeats one prompt until the output carries its signal.
3. **Record**: progress, terminal status and an append-only event log are
   persisted; the user is notified at each boundary.  Whatever the run left
   uncommitted in the workspace is committed once it ends.

The caller (task handler) is responsible for:

- Holding the conversation lock around ``start``
- Resolving the workspace (``WorkspaceAllocator.resolve``)

Notifications and event-log writes are best-effort.  A step failure ends
the run; failures are classified only to pick the hint shown to the user,
never to retry.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from dockyard.runtime.classify import format_failure
from dockyard.runtime.execution.completion import CompletionEventType
from dockyard.runtime.execution.prompts import failure_guidance, render_step_prompt
from dockyard.runtime.models.enums import ErrorClass, RunEventType, RunStatus, StartStatus
from dockyard.runtime.models.run import RunEvent
from dockyard.runtime.store.base import RunAlreadyActiveError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from dockyard.runtime.execution.completion import CompletionClient
    from dockyard.runtime.execution.notify import Notifier
    from dockyard.runtime.execution.prompts import PromptResolver
    from dockyard.runtime.isolation.provider import WorkspaceProvider
    from dockyard.runtime.models.run import LoopConfig, WorkflowRunIndex, WorkflowStep
    from dockyard.runtime.models.workspace import WorkspaceIndex
    from dockyard.runtime.outcomes import EffectOutcome
    from dockyard.runtime.store.base import PersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 90.0


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class RunResult:
    """Outcome of ``WorkflowRunCoordinator.start``."""

    status: StartStatus
    run_id: str | None = None
    failed_step: str | None = None
    error: str | None = None
    error_class: ErrorClass | None = None


@dataclass
class _StepResult:
    ok: bool
    session_handle: str | None = None
    output: str = ""
    error: str | None = None
    error_class: ErrorClass | None = None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def _already_running_message(active: WorkflowRunIndex) -> str:
    since = active.started_at.strftime("%Y-%m-%d %H:%M UTC") if active.started_at else "earlier"
    return (
        f"❌ **Workflow already running**: A `{active.workflow_name}` workflow "
        f"(ID: {active.run_id[:8]}) has been running since {since}. "
        "Please wait for it to complete."
    )


_RACE_LOST_MESSAGE = "❌ **Workflow already running**: Please wait for it to complete."
_BLOCKED_GUARD_MESSAGE = (
    "❌ **Workflow blocked**: Unable to verify if another workflow is running. Please try again in a moment."
)
_BLOCKED_CLEANUP_MESSAGE = "❌ **Workflow blocked**: A stale workflow exists but could not be marked as failed."
_BLOCKED_CREATE_MESSAGE = "❌ **Workflow failed**: Unable to start workflow. Please try again later."


_ARTIFACT_COMMIT_WARNING = (
    "⚠️ **Warning**: Could not auto-commit workflow artifacts. "
    "The changes are still in the workspace; commit them manually."
)


def _start_message(
    workflow_name: str,
    steps: Sequence[WorkflowStep],
    loop: LoopConfig | None,
    workspace: WorkspaceIndex,
) -> str:
    if loop is not None:
        plan = f"**Loop**: until `{loop.until}` (max {loop.max_iterations} iterations)"
    else:
        plan = "**Steps**: " + " → ".join(f"`{step.label}`" for step in steps)
    return f"📍 `{workspace.branch_name}`\n\n🚀 **Starting workflow**: `{workflow_name}`\n\n{plan}"


def _loop_incomplete_message(workflow_name: str, loop: LoopConfig) -> str:
    return (
        f"❌ **Loop incomplete**: `{workflow_name}` ran {loop.max_iterations} iteration(s) "
        f"without the completion signal `{loop.until}`.\n\n"
        "**Options:**\n"
        "• Raise `max_iterations`\n"
        f"• Make the prompt end its output with `<promise>{loop.until}</promise>` once the work is done"
    )


def detect_completion_signal(output: str, signal: str) -> bool:
    """True if *output* announces *signal*.

    Accepted forms: ``<promise>SIGNAL</promise>`` anywhere (any case), the
    signal at the very end of the output (trailing punctuation allowed), or
    the signal alone on a line.
    """
    escaped = re.escape(signal)
    if re.search(rf"<promise>\s*{escaped}\s*</promise>", output, re.IGNORECASE):
        return True
    if re.search(rf"{escaped}[\s.,;:!?]*$", output):
        return True
    return re.search(rf"^\s*{escaped}\s*$", output, re.MULTILINE) is not None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class WorkflowRunCoordinator:
    """Runs workflows against the completion client and records them.

    Parameters
    ----------
    gateway:
        Durable run / event store.
    client:
        Completion client that executes each step.
    notifier:
        Best-effort user notifications.
    prompts:
        Step prompt resolver.
    step_timeout:
        Upper bound in seconds for one step's completion stream.
    abandon_after:
        A ``running`` run inactive for longer than this is failed as
        abandoned instead of rejecting the new run.  ``None`` disables
        the takeover.
    provider:
        Commits what a run left uncommitted in its workspace.  ``None``
        skips the commit.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        client: CompletionClient,
        notifier: Notifier,
        prompts: PromptResolver,
        *,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        abandon_after: timedelta | None = None,
        provider: WorkspaceProvider | None = None,
    ) -> None:
        self._gateway = gateway
        self._client = client
        self._notifier = notifier
        self._prompts = prompts
        self._step_timeout = step_timeout
        self._abandon_after = abandon_after
        self._provider = provider

    async def start(
        self,
        conversation_id: str,
        steps: Sequence[WorkflowStep],
        user_message: str,
        *,
        workflow_name: str,
        workspace: WorkspaceIndex,
        codebase_id: str | None = None,
        context: str | None = None,
        metadata: dict[str, Any] | None = None,
        loop: LoopConfig | None = None,
    ) -> RunResult:
        """Guard, execute and record one workflow run.

        *steps* run in order, unless *loop* is given, in which case its
        prompt is repeated and *steps* must be empty.

        Never raises for run failures; the returned ``RunResult`` carries
        the outcome.
        """
        # -- Guard -------------------------------------------------------------
        rejected = await self._check_active_run(conversation_id)
        if rejected is not None:
            return rejected

        run_metadata = dict(metadata or {})
        if context:
            run_metadata.setdefault("context", context)
        try:
            run = await self._gateway.create_run(
                workflow_name=workflow_name,
                conversation_id=conversation_id,
                codebase_id=codebase_id or workspace.codebase_id,
                workspace_id=workspace.workspace_id,
                user_message=user_message,
                metadata=run_metadata,
            )
        except RunAlreadyActiveError:
            logger.info("Run creation lost the race for conversation %s", conversation_id)
            await self._notify(conversation_id, _RACE_LOST_MESSAGE)
            return RunResult(status=StartStatus.REJECTED)
        except Exception:
            logger.exception("Failed to create workflow run for conversation %s", conversation_id)
            await self._notify(conversation_id, _BLOCKED_CREATE_MESSAGE)
            return RunResult(status=StartStatus.BLOCKED)

        # -- Execute -----------------------------------------------------------
        logger.info("Starting workflow %s (run=%s, conversation=%s)", workflow_name, run.run_id, conversation_id)
        try:
            result = await self._execute(run, steps, loop, workspace, context)
        except Exception as exc:
            logger.exception("Workflow %s failed with unhandled error (run=%s)", workflow_name, run.run_id)
            error_class, message = format_failure(exc)
            result = await self._fail_run(run, None, None, message, error_class)
        await self._commit_artifacts(run, workspace)
        return result

    # -- Guard -----------------------------------------------------------------

    async def _check_active_run(self, conversation_id: str) -> RunResult | None:
        try:
            active = await self._gateway.get_active_run(conversation_id)
        except Exception:
            logger.exception("Failed to check for an active run (conversation=%s)", conversation_id)
            await self._notify(conversation_id, _BLOCKED_GUARD_MESSAGE)
            return RunResult(status=StartStatus.BLOCKED)

        if active is None:
            return None

        if not self._is_abandoned(active):
            logger.info("Rejecting workflow: run %s already running for %s", active.run_id, conversation_id)
            await self._notify(conversation_id, _already_running_message(active))
            return RunResult(status=StartStatus.REJECTED, run_id=active.run_id)

        logger.warning("Marking abandoned run %s as failed (conversation=%s)", active.run_id, conversation_id)
        try:
            await self._gateway.update_run_status(active.run_id, RunStatus.FAILED, metadata={"error": "abandoned"})
        except Exception:
            logger.exception("Failed to fail abandoned run %s", active.run_id)
            await self._notify(conversation_id, _BLOCKED_CLEANUP_MESSAGE)
            return RunResult(status=StartStatus.BLOCKED, run_id=active.run_id)
        return None

    def _is_abandoned(self, run: WorkflowRunIndex) -> bool:
        if self._abandon_after is None:
            return False
        last_activity = run.last_activity_at or run.started_at
        if last_activity is None:
            return False
        return datetime.now(tz=UTC) - last_activity > self._abandon_after

    # -- Execution -------------------------------------------------------------

    async def _execute(
        self,
        run: WorkflowRunIndex,
        steps: Sequence[WorkflowStep],
        loop: LoopConfig | None,
        workspace: WorkspaceIndex,
        context: str | None,
    ) -> RunResult:
        payload: dict[str, Any] = {"workflow_name": run.workflow_name}
        if loop is not None:
            payload["loop"] = loop.model_dump(exclude={"prompt"})
        else:
            payload["steps"] = [step.label for step in steps]
        await self._log_event(run, RunEventType.WORKFLOW_START, payload=payload)
        await self._notify(run.conversation_id, _start_message(run.workflow_name, steps, loop, workspace))

        if loop is not None:
            return await self._execute_loop(run, loop, workspace, context)

        session_handle: str | None = None
        for index, step in enumerate(steps):
            if len(steps) > 1:
                await self._notify(run.conversation_id, f"⏳ **Step {index + 1}/{len(steps)}**: `{step.label}`")

            if step.parallel is not None:
                failed = await self._run_parallel(run, index, step, workspace, context)
                if failed is not None:
                    return failed
                session_handle = None
            else:
                command = step.command or ""
                resume = None if index == 0 or step.clear_context else session_handle
                result = await self._run_step(run, index, command, workspace, context, resume)
                if not result.ok:
                    return await self._fail_run(run, index, command, result.error or "", result.error_class)
                if result.session_handle:
                    session_handle = result.session_handle

            try:
                await self._gateway.update_run_progress(run.run_id, index + 1)
            except Exception:
                logger.exception("Failed to record progress for run %s (step %d)", run.run_id, index + 1)

        await self._gateway.update_run_status(run.run_id, RunStatus.COMPLETED)
        await self._log_event(run, RunEventType.WORKFLOW_COMPLETE)
        await self._notify(run.conversation_id, f"✅ **Workflow complete**: `{run.workflow_name}`")
        logger.info("Workflow %s completed (run=%s)", run.workflow_name, run.run_id)
        return RunResult(status=StartStatus.COMPLETED, run_id=run.run_id)

    async def _run_parallel(
        self,
        run: WorkflowRunIndex,
        index: int,
        block: WorkflowStep,
        workspace: WorkspaceIndex,
        context: str | None,
    ) -> RunResult | None:
        """Run every step of *block* at once, each in a fresh session.

        All steps run to the end even if one fails.  Returns the failed
        ``RunResult`` when any step failed, else ``None``.
        """
        commands = [step.command or "" for step in block.parallel or []]
        logger.info("Executing parallel block %d: %s (run=%s)", index, block.label, run.run_id)
        results = await asyncio.gather(
            *(self._run_step(run, index, command, workspace, context, None) for command in commands),
            return_exceptions=True,
        )

        failures: list[tuple[str, _StepResult]] = []
        for command, result in zip(commands, results, strict=True):
            if isinstance(result, BaseException):
                error_class, message = format_failure(result)
                result = _StepResult(ok=False, error=message, error_class=error_class)
            if not result.ok:
                failures.append((command, result))
        if not failures:
            return None

        lines = "\n".join(f"- `{command}`: {result.error}" for command, result in failures)
        logger.warning("%d of %d parallel step(s) failed (run=%s)", len(failures), len(commands), run.run_id)
        return await self._fail_run(
            run,
            index,
            block.label,
            f"{len(failures)} parallel step(s) failed:\n{lines}",
            failures[0][1].error_class,
            text=f"❌ **Workflow failed** in parallel block:\n\n{lines}",
        )

    async def _execute_loop(
        self,
        run: WorkflowRunIndex,
        loop: LoopConfig,
        workspace: WorkspaceIndex,
        context: str | None,
    ) -> RunResult:
        session_handle: str | None = None
        for iteration in range(1, loop.max_iterations + 1):
            progress = {"iteration_count": iteration, "max_iterations": loop.max_iterations}
            try:
                await self._gateway.update_run_progress(run.run_id, iteration, metadata=progress)
            except Exception:
                logger.exception("Failed to record progress for run %s (iteration %d)", run.run_id, iteration)
            await self._notify(run.conversation_id, f"⏳ **Iteration {iteration}/{loop.max_iterations}**")

            step_name = f"iteration {iteration}"
            resume = None if loop.fresh_context or iteration == 1 else session_handle
            await self._log_event(run, RunEventType.STEP_START, step_index=iteration - 1, step_name=step_name)
            result = await self._run_prompt(run, iteration - 1, step_name, loop.prompt, workspace, context, resume)
            if not result.ok:
                error = result.error or ""
                return await self._fail_run(
                    run,
                    iteration - 1,
                    step_name,
                    f"Iteration {iteration}: {error}",
                    result.error_class,
                    text=f"❌ **Loop failed** at iteration {iteration}: {error}",
                )
            if result.session_handle:
                session_handle = result.session_handle

            if detect_completion_signal(result.output, loop.until):
                await self._gateway.update_run_status(
                    run.run_id, RunStatus.COMPLETED, metadata={"iteration_count": iteration}
                )
                await self._log_event(run, RunEventType.WORKFLOW_COMPLETE, payload={"iterations": iteration})
                await self._notify(
                    run.conversation_id, f"✅ **Loop complete**: `{run.workflow_name}` ({iteration} iterations)"
                )
                logger.info("Loop %s done after %d iteration(s) (run=%s)", run.workflow_name, iteration, run.run_id)
                return RunResult(status=StartStatus.COMPLETED, run_id=run.run_id)

        message = f'Max iterations ({loop.max_iterations}) reached without completion signal "{loop.until}"'
        logger.warning("Loop %s incomplete (run=%s): %s", run.workflow_name, run.run_id, message)
        return await self._fail_run(
            run,
            loop.max_iterations - 1,
            None,
            message,
            None,
            text=_loop_incomplete_message(run.workflow_name, loop),
        )

    async def _run_step(
        self,
        run: WorkflowRunIndex,
        index: int,
        command: str,
        workspace: WorkspaceIndex,
        context: str | None,
        session_handle: str | None,
    ) -> _StepResult:
        logger.info("Executing step %d: %s (run=%s)", index, command, run.run_id)
        await self._log_event(run, RunEventType.STEP_START, step_index=index, step_name=command)

        resolution = await self._prompts.resolve(command, workspace.path)
        if not resolution.ok or resolution.content is None:
            return _StepResult(ok=False, error=failure_guidance(resolution, command))
        return await self._run_prompt(run, index, command, resolution.content, workspace, context, session_handle)

    async def _run_prompt(
        self,
        run: WorkflowRunIndex,
        index: int,
        step_name: str,
        template: str,
        workspace: WorkspaceIndex,
        context: str | None,
        session_handle: str | None,
    ) -> _StepResult:
        prompt = render_step_prompt(
            template,
            workflow_id=run.run_id,
            user_message=run.user_message,
            context=context,
        )
        if session_handle is None:
            logger.debug("Starting fresh session for step %s", step_name)

        texts: list[str] = []
        new_handle: str | None = None
        try:
            async with asyncio.timeout(self._step_timeout):
                async for event in self._client.stream(prompt, cwd=workspace.path, session_handle=session_handle):
                    await self._touch(run)
                    if event.type == CompletionEventType.TEXT and event.text:
                        texts.append(event.text)
                        await self._log_event(
                            run, RunEventType.ASSISTANT, step_index=index, payload={"content": event.text}
                        )
                    elif event.type == CompletionEventType.TOOL and event.tool_name:
                        await self._log_event(
                            run,
                            RunEventType.TOOL,
                            step_index=index,
                            payload={"tool_name": event.tool_name, "tool_input": event.tool_args},
                        )
                    elif event.type == CompletionEventType.RESULT:
                        new_handle = event.session_handle
        except TimeoutError:
            error = TimeoutError(f"Step timed out after {self._step_timeout:g}s")
            error_class, message = format_failure(error)
            logger.warning("Step %s timed out (run=%s)", step_name, run.run_id)
            return _StepResult(ok=False, error=message, error_class=error_class)
        except Exception as exc:
            error_class, message = format_failure(exc)
            logger.warning("Step %s failed (run=%s, class=%s): %s", step_name, run.run_id, error_class, message)
            return _StepResult(ok=False, error=message, error_class=error_class)

        output = "\n\n".join(texts)
        if output:
            await self._notify(run.conversation_id, output)
        await self._log_event(run, RunEventType.STEP_COMPLETE, step_index=index, step_name=step_name)
        try:
            await self._gateway.touch_workspace(workspace.workspace_id)
        except Exception:
            logger.exception("Failed to touch workspace %s", workspace.workspace_id)
        return _StepResult(ok=True, session_handle=new_handle, output=output)

    async def _fail_run(
        self,
        run: WorkflowRunIndex,
        index: int | None,
        step_name: str | None,
        message: str,
        error_class: ErrorClass | None,
        *,
        text: str | None = None,
    ) -> RunResult:
        """Record the failure and notify the user with *text*, or a default message."""
        await self._log_event(
            run,
            RunEventType.WORKFLOW_ERROR,
            step_index=index,
            step_name=step_name,
            payload={"error": message, "error_class": str(error_class) if error_class else None},
        )
        failure: dict[str, Any] = {"error": message}
        if error_class is not None:
            failure["error_class"] = str(error_class)
        if step_name is not None:
            failure["failed_step"] = step_name
        try:
            await self._gateway.update_run_status(run.run_id, RunStatus.FAILED, metadata=failure)
        except Exception:
            logger.exception("Failed to record failure of run %s", run.run_id)

        if text is None and step_name is not None:
            text = f"❌ **Workflow failed** at step: `{step_name}`\n\nError: {message}"
        elif text is None:
            text = f"❌ **Workflow failed**: {message}"
        await self._notify(run.conversation_id, text)
        return RunResult(
            status=StartStatus.FAILED,
            run_id=run.run_id,
            failed_step=step_name,
            error=message,
            error_class=error_class,
        )

    # -- Best-effort side channels ---------------------------------------------

    async def _notify(self, conversation_id: str, text: str) -> EffectOutcome:
        return await self._notifier.send(conversation_id, text)

    async def _log_event(
        self,
        run: WorkflowRunIndex,
        event_type: RunEventType,
        *,
        step_index: int | None = None,
        step_name: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = RunEvent(
            run_id=run.run_id,
            event_type=event_type,
            step_index=step_index,
            step_name=step_name,
            payload=payload or {},
        )
        try:
            await self._gateway.append_run_event(event)
        except Exception:
            logger.exception("Failed to append %s event for run %s", event_type, run.run_id)

    async def _touch(self, run: WorkflowRunIndex) -> None:
        try:
            await self._gateway.touch_run(run.run_id)
        except Exception:
            logger.debug("Failed to touch run %s", run.run_id, exc_info=True)

    async def _commit_artifacts(self, run: WorkflowRunIndex, workspace: WorkspaceIndex) -> None:
        """Commit whatever the run left uncommitted in its workspace."""
        if self._provider is None:
            return
        message = f"chore: Auto-commit workflow artifacts ({run.workflow_name})"
        try:
            committed = await self._provider.commit_all(workspace.path, message)
        except Exception:
            logger.exception("Failed to auto-commit artifacts of run %s in %s", run.run_id, workspace.path)
            await self._notify(run.conversation_id, _ARTIFACT_COMMIT_WARNING)
            return
        if committed:
            await self._notify(run.conversation_id, "📦 Committed remaining workflow artifacts")
