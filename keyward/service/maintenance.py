from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict

from keyward.logging import get_logger

if TYPE_CHECKING:
    from keyward.service.runtime import Runtime

logger = get_logger(__name__)


def purge_expired_records(runtime: "Runtime") -> Dict[str, int]:
    """Delete lapsed CSRF tokens, admin sessions, ephemeral and refresh tokens."""

    counts = {
        "csrf_tokens": runtime.csrf.purge_expired(),
        "admin_sessions": runtime.admin_sessions.purge_expired(),
        "ephemeral_tokens": runtime.account.reset_tokens.purge_expired(),
        "refresh_tokens": runtime.refresh_tokens.purge_expired(),
    }
    if any(counts.values()):
        logger.info("expired_records_purged", **counts)
    return counts


async def run_periodic_cleanup(runtime: "Runtime", interval_seconds: int) -> None:
    """Background loop purging expired rows until cancelled."""

    try:
        while True:
            try:
                await asyncio.to_thread(purge_expired_records, runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("maintenance_purge_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")
