"""
Session maintenance — run from cron.

Usage:
    python -m helpdesk.scripts.sweep_sessions [--retention-days N]

1. Stamps `EXPIRED` on sessions that timed out without a logout, so
   history and reports show why they ended.
2. Hard-deletes terminated sessions older than the retention period
   (SESSION_RETENTION_DAYS unless overridden).
"""

import argparse
import asyncio
import logging

from helpdesk.core.config import settings
from helpdesk.core.database import async_session_factory, engine
from helpdesk.services import session_registry

logger = logging.getLogger("helpdesk.scripts.sweep_sessions")


async def sweep(retention_days: int) -> tuple[int, int]:
    async with async_session_factory() as session:
        expired = await session_registry.sweep_expired(session)
        purged = await session_registry.purge_terminated(session, retention_days)
        await session.commit()
    await engine.dispose()
    return expired, purged


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire idle sessions and purge old history.")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.SESSION_RETENTION_DAYS,
        help="keep terminated sessions this many days (default: %(default)s)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    expired, purged = asyncio.run(sweep(args.retention_days))
    logger.info("Done: %d sessions expired, %d purged", expired, purged)


if __name__ == "__main__":
    main()
