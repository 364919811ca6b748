"""
Periodic sync worker.

Drives SyncCoordinator.run_periodic for one or more users against the
configured stores. Backoff and the stalled ceiling are enforced by the
coordinator, so a user whose remote keeps failing is skipped until its retry
window opens.
"""
from __future__ import annotations

import argparse
import asyncio
import json
from typing import Callable, Dict, List, Optional

from mentor.core.config import settings
from mentor.core.logging import configure_logging
from mentor.features.streaks.service import StreakService, build_default_service
from mentor.models.sync import SyncPhase, SyncStatus


def _tally(service: StreakService, user_id: str, results: Dict[str, int]) -> Callable[[SyncStatus], None]:
    """Count each pass's outcome; an unchanged status means the trigger was deferred."""
    last = {"status": service.sync_status(user_id)}

    def record(status: SyncStatus) -> None:
        if status.phase == SyncPhase.SYNCED:
            results["synced"] += 1
        elif status.phase == SyncPhase.STALLED:
            results["stalled"] += 1
        elif status == last["status"]:
            results["deferred"] += 1
        else:
            results["failed"] += 1
        last["status"] = status

    return record


async def run_worker(
    user_ids: List[str],
    *,
    interval: float,
    once: bool,
    service: Optional[StreakService] = None,
) -> Dict[str, int]:
    service = service or build_default_service()
    results = {"synced": 0, "failed": 0, "deferred": 0, "stalled": 0}
    await asyncio.gather(
        *(
            service.coordinator.run_periodic(
                uid,
                interval=interval,
                iterations=1 if once else None,
                on_status=_tally(service, uid, results),
            )
            for uid in user_ids
        )
    )
    return results


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile local streak ledgers with the remote store.")
    parser.add_argument("--user-id", dest="user_ids", action="append", required=True, help="User to sync; repeatable.")
    parser.add_argument("--interval", type=float, default=float(settings.SYNC_INTERVAL_SECONDS), help="Seconds between passes.")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    result = asyncio.run(run_worker(args.user_ids, interval=args.interval, once=args.once))
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
