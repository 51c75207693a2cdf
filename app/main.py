import asyncio

from database import init_models
from worker import worker
from logging_config import get_logger

logger = get_logger("main", "main.log")


async def main():
    await init_models()
    await worker()


if __name__=="__main__":
    logger.info("Tracker ingestion starting up...")
    asyncio.run(main())
