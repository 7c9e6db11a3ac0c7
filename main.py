"""
fetchguard entry point
Prints the resilience layer configuration and statistics (cache info).
"""

import asyncio
import json
import sys

from loguru import logger

from fetchguard.services import ResilientFetcher
from fetchguard.settings import Settings


async def main() -> None:
    settings = Settings.from_env()

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if settings.debug else "INFO")

    async with ResilientFetcher.from_settings(settings) as fetcher:
        logger.debug("Collecting cache info...")
        print(json.dumps(fetcher.get_health_status(), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
