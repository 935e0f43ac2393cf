"""Per-conversation mutual exclusion.

Tasks for the same conversation run one at a time, in arrival order.
Tasks for different conversations never wait on each other.  Ephemeral --
empty on process restart.

The lock is handed over explicitly: on release the next waiter's future is
resolved, so a late arrival can never overtake the queue.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, MutableMapping
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class LockEntry:
    """Lock state for one conversation."""

    holder: int
    acquired_at: float
    waiters: deque[tuple[int, asyncio.Future[None]]] = field(default_factory=deque)


@dataclass(frozen=True)
class LockStats:
    active: int
    """Conversations whose lock is currently held."""
    waiting: int
    """Tasks queued behind a held lock, across all conversations."""
    conversations: list[str]


class ConversationLock:
    """FIFO lock manager keyed by conversation ID.

    *table* holds the per-conversation state and may be injected (tests,
    inspection).  Construct one instance per process.
    """

    def __init__(self, table: MutableMapping[str, LockEntry] | None = None) -> None:
        self._table: MutableMapping[str, LockEntry] = table if table is not None else {}
        self._next_token = 0

    async def with_lock(self, conversation_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* while holding the lock for *conversation_id*.

        The lock is released whether *fn* returns, raises or is cancelled.
        """
        token = await self._acquire(conversation_id)
        try:
            return await fn()
        finally:
            self._release(conversation_id, token)

    # -- Query -----------------------------------------------------------------

    def is_locked(self, conversation_id: str) -> bool:
        return conversation_id in self._table

    def queue_length(self, conversation_id: str) -> int:
        entry = self._table.get(conversation_id)
        return len(entry.waiters) if entry else 0

    def stats(self) -> LockStats:
        return LockStats(
            active=len(self._table),
            waiting=sum(len(entry.waiters) for entry in self._table.values()),
            conversations=list(self._table),
        )

    # -- Internals -------------------------------------------------------------

    async def _acquire(self, conversation_id: str) -> int:
        self._next_token += 1
        token = self._next_token

        entry = self._table.get(conversation_id)
        if entry is None:
            self._table[conversation_id] = LockEntry(holder=token, acquired_at=time.monotonic())
            return token

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry.waiters.append((token, waiter))
        logger.debug(
            "Lock: conversation {} busy, queued at position {}",
            conversation_id,
            len(entry.waiters),
        )
        queued_at = time.monotonic()
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed over before the cancellation landed.
                self._release(conversation_id, token)
            else:
                self._discard_waiter(conversation_id, token)
            raise

        logger.info(
            "Lock: conversation {} acquired after waiting {:.2f}s",
            conversation_id,
            time.monotonic() - queued_at,
        )
        return token

    def _release(self, conversation_id: str, token: int) -> None:
        entry = self._table.get(conversation_id)
        if entry is None or entry.holder != token:
            return

        while entry.waiters:
            next_token, waiter = entry.waiters.popleft()
            if waiter.done():
                continue
            entry.holder = next_token
            entry.acquired_at = time.monotonic()
            waiter.set_result(None)
            return

        del self._table[conversation_id]

    def _discard_waiter(self, conversation_id: str, token: int) -> None:
        entry = self._table.get(conversation_id)
        if entry is None:
            return
        entry.waiters = deque((t, w) for t, w in entry.waiters if t != token)
        logger.debug("Lock: waiter for conversation {} cancelled and left the queue", conversation_id)
