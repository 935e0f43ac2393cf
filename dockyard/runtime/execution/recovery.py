"""Startup reconciliation of workflow runs left ``running`` by a dead process."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from dockyard.runtime.store.base import PersistenceGateway

ABANDONED_REASON = "abandoned"


async def reconcile_abandoned_runs(
    gateway: PersistenceGateway,
    *,
    grace: timedelta,
    now: datetime | None = None,
) -> int:
    """Mark ``running`` runs with no activity within *grace* as failed.

    Called once at startup (and from ``dockyard runs reconcile``).  Runs
    still inside the grace window are left alone: another process may own
    them.  Returns the number of runs failed.
    """
    cutoff = (now or datetime.now(tz=UTC)) - grace
    count = await gateway.fail_stale_runs(cutoff, reason=ABANDONED_REASON)
    if count > 0:
        logger.warning("Startup recovery: marked {} abandoned workflow run(s) as failed", count)
    return count
