#!/usr/bin/env python3
import asyncio
import signal

from app.core.config import settings
from app.core.logging_config import configure_logging, get_logger
from app.core.runtime import build_runtime
from app.db import create_db_and_tables

logger = get_logger("ingest.worker")


async def main():
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    create_db_and_tables()

    runtime = build_runtime(settings)
    scheduler = runtime.scheduler

    if not await scheduler.initialize():
        logger.error("Scheduler did not initialize, exiting")
        return

    logger.info("Starting dedicated ingestion worker...")
    await scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        logger.info("Ingestion worker shutting down.")
        await scheduler.stop()
        if runtime.status_sink is not None and hasattr(runtime.status_sink, "aclose"):
            await runtime.status_sink.aclose()


if __name__ == "__main__":
    asyncio.run(main())
