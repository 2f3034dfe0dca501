#!/usr/bin/env python3
"""
Follow-up Worker — Polls the event queue and runs the follow-up handlers.

Usage:
    python scripts/run_worker.py                 # run until SIGINT/SIGTERM
    python scripts/run_worker.py --once          # drain one batch and exit
    python scripts/run_worker.py --config config/settings.yaml
"""
import asyncio
import argparse
import dataclasses
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

logger = structlog.get_logger()


async def run_worker(once: bool = False, config_path: str = None):
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    settings = load_settings(config_path)

    from backend.agent_client import create_agent_sender
    from core.orchestrator import FollowupOrchestrator
    from core.quota import DailyQuotaCounter
    from database.session import init_db, close_db
    from database.store_factory import create_store
    from job_queue.event_queue import create_event_queue
    from job_queue.processor import QueueProcessor

    uses_sql = "sql" in (settings.database.store_backend, settings.queue.backend)
    if uses_sql:
        await init_db()

    store = create_store(dataclasses.asdict(settings.database))
    queue = create_event_queue(dataclasses.asdict(settings.queue))
    sender = create_agent_sender(settings.agent)
    quota = DailyQuotaCounter(store, default_limit=settings.followup.default_daily_limit)

    orchestrator = FollowupOrchestrator(
        store=store,
        queue=queue,
        sender=sender,
        quota=quota,
        default_timezone=settings.followup.default_timezone,
    )
    processor = QueueProcessor(
        queue,
        poll_interval_s=settings.queue.poll_interval_seconds,
        batch_size=settings.queue.batch_size,
    )
    orchestrator.register(processor)

    try:
        if once:
            handled = await processor.process_batch()
            logger.info("worker_single_batch_done", handled=handled)
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await processor.init()
        logger.info("worker_started", app=settings.app_name, **processor.get_status())
        await stop_event.wait()
        logger.info("worker_stopping")
        await processor.stop()
    finally:
        await sender.close()
        if uses_sql:
            await close_db()


def main():
    parser = argparse.ArgumentParser(description="Follow-up queue worker")
    parser.add_argument("--once", action="store_true", help="Drain one batch and exit")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    asyncio.run(run_worker(once=args.once, config_path=args.config))


if __name__ == "__main__":
    main()
