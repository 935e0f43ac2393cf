"""Completion client -- the model that executes workflow steps.

The coordinator only depends on the ``CompletionClient`` protocol: a
``stream`` of text / tool / result events per step, where the final
``result`` event carries an opaque session handle.  Passing that handle to
the next step continues the same conversation history.

``PydanticAICompletionClient`` is the concrete client, backed by a
pydantic-ai ``Agent`` whose tools (``execution.tools``) operate inside the
step's workspace.  Each model response is yielded as soon as the agent
graph produces it.  Histories live in-process in a bounded LRU keyed by
session handle; an unknown handle simply starts a fresh history.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic_ai import Agent
from pydantic_ai.messages import TextPart, ToolCallPart

from dockyard.runtime.execution.tools import DEFAULT_COMMAND_TIMEOUT, WORKSPACE_TOOLS, WorkspaceDeps

if TYPE_CHECKING:
    from pydantic_ai.messages import ModelMessage
    from pydantic_ai.models import Model

logger = logging.getLogger(__name__)


class CompletionEventType(StrEnum):
    TEXT = "text"
    TOOL = "tool"
    RESULT = "result"


@dataclass
class CompletionEvent:
    type: CompletionEventType
    text: str | None = None
    tool_name: str | None = None
    tool_args: Any = None
    session_handle: str | None = None


class CompletionClient(Protocol):
    def stream(
        self,
        prompt: str,
        *,
        cwd: str | Path,
        session_handle: str | None = None,
    ) -> AsyncIterator[CompletionEvent]:
        """Run one step and yield its events; the last one is ``RESULT``."""
        ...


DEFAULT_SYSTEM_PROMPT = (
    "You are a software engineering assistant working inside an isolated git worktree. "
    "Follow the step instructions precisely and report what you did."
)


class PydanticAICompletionClient:
    """``CompletionClient`` backed by a pydantic-ai ``Agent``.

    Parameters
    ----------
    model:
        pydantic-ai model identifier (e.g. ``"anthropic:claude-sonnet-4-5"``) or model instance.
    system_prompt:
        Instructions for every step.  Defaults to ``DEFAULT_SYSTEM_PROMPT``.
    max_sessions:
        Number of message histories kept; least recently used are dropped.
    command_timeout:
        Upper bound in seconds for one ``run_command`` tool call.
    """

    def __init__(
        self,
        model: Model | str,
        *,
        system_prompt: str | None = None,
        max_sessions: int = 256,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._model = model
        self._system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._max_sessions = max_sessions
        self._command_timeout = command_timeout
        self._histories: OrderedDict[str, list[ModelMessage]] = OrderedDict()
        self._agent: Agent[WorkspaceDeps, str] | None = None

    @property
    def agent(self) -> Agent[WorkspaceDeps, str]:
        # Built on first use so the service starts without provider credentials.
        if self._agent is None:
            self._agent = Agent(
                self._model,
                deps_type=WorkspaceDeps,
                tools=WORKSPACE_TOOLS,
                system_prompt=self._system_prompt,
            )
        return self._agent

    async def stream(
        self,
        prompt: str,
        *,
        cwd: str | Path,
        session_handle: str | None = None,
    ) -> AsyncIterator[CompletionEvent]:
        history = self._histories.get(session_handle) if session_handle else None
        if history is None:
            if session_handle:
                logger.debug("Unknown session handle %s, starting a fresh history", session_handle)
            prompt = f"Working directory: {cwd}\n\n{prompt}"

        deps = WorkspaceDeps(root=Path(cwd), command_timeout=self._command_timeout)
        async with self.agent.iter(prompt, deps=deps, message_history=history) as run:
            async for node in run:
                if not Agent.is_call_tools_node(node):
                    continue
                for part in node.model_response.parts:
                    if isinstance(part, TextPart) and part.content:
                        yield CompletionEvent(type=CompletionEventType.TEXT, text=part.content)
                    elif isinstance(part, ToolCallPart):
                        logger.debug("Tool call %s in %s", part.tool_name, cwd)
                        yield CompletionEvent(
                            type=CompletionEventType.TOOL,
                            tool_name=part.tool_name,
                            tool_args=part.args_as_dict(),
                        )
            if run.result is None:
                msg = "Completion run ended without a result"
                raise RuntimeError(msg)
            messages = run.result.all_messages()

        handle = uuid.uuid4().hex
        self._remember(handle, messages)
        yield CompletionEvent(type=CompletionEventType.RESULT, session_handle=handle)

    def _remember(self, handle: str, messages: list[ModelMessage]) -> None:
        self._histories[handle] = messages
        self._histories.move_to_end(handle)
        while len(self._histories) > self._max_sessions:
            self._histories.popitem(last=False)
