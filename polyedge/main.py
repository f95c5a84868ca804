"""Entry point for the edge engine."""

from __future__ import annotations

import asyncio
import logging

from polyedge.config import setup_logging
from polyedge.context import EngineContext
from polyedge.scheduler import EdgeScheduler

logger = logging.getLogger(__name__)


async def _main() -> None:
    setup_logging()
    logger.info("engine_starting")

    ctx = EngineContext.from_config()
    scheduler = EdgeScheduler(ctx)
    await scheduler.start()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
