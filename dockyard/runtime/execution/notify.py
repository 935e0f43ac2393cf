"""User notifications.

The ``NotificationSink`` is whatever delivers text to the conversation (a
chat platform adapter in production).  Sinks may raise; ``Notifier`` wraps
them so that a failed delivery is logged and reported as an
``EffectOutcome`` but never interrupts the caller.
"""

from __future__ import annotations

from typing import Protocol

from loguru import logger

from dockyard.runtime.classify import classify_error, redact_secrets
from dockyard.runtime.outcomes import EffectOutcome


class NotificationSink(Protocol):
    async def send_message(self, conversation_id: str, text: str) -> None: ...


class LogNotificationSink:
    """Default sink: writes notifications to the log."""

    async def send_message(self, conversation_id: str, text: str) -> None:
        logger.info("[notify {}] {}", conversation_id, text)


class Notifier:
    """Fire-and-log wrapper around a ``NotificationSink``."""

    def __init__(self, sink: NotificationSink) -> None:
        self._sink = sink

    async def send(self, conversation_id: str, text: str) -> EffectOutcome:
        if not text.strip():
            return EffectOutcome.success("nothing to send")
        try:
            await self._sink.send_message(conversation_id, text)
        except Exception as exc:
            logger.error(
                "Notification to {} failed ({}): {}",
                conversation_id,
                classify_error(exc),
                redact_secrets(str(exc)),
            )
            return EffectOutcome.failure(str(exc))
        return EffectOutcome.success()
