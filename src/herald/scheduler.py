"""Scheduler daemon: fires task definitions and digests, sweeps the queue."""

import asyncio
import fcntl
import logging
import os
import signal
import time
from pathlib import Path

from . import db
from .channels import build_senders
from .config import Config, load_config
from .consumer import QueueConsumer, SweepStats
from .dispatcher import ChannelDispatcher
from .generator import ClaudeCliGenerator, StaticGenerator, TextGenerator
from .tasks import check_digests, process_due_tasks

logger = logging.getLogger("herald.scheduler")

_shutdown_requested = False


def _signal_handler(signum, frame):
    """Handle shutdown signals."""
    global _shutdown_requested
    logger.info("Received signal %d, shutting down gracefully...", signum)
    _shutdown_requested = True


def build_consumer(config: Config, generator: TextGenerator | None = None) -> QueueConsumer:
    dispatcher = ChannelDispatcher(config, build_senders(config))
    return QueueConsumer(config, generator or ClaudeCliGenerator(config.generator), dispatcher)


async def _sweep(config: Config, consumer: QueueConsumer) -> SweepStats:
    with db.get_db(config.db_path) as conn:
        return await consumer.run_sweep(conn)


def run_producers(config: Config) -> tuple[list[int], list[int]]:
    """Fire due task definitions and cron digests. Returns created item IDs for each."""
    with db.get_db(config.db_path) as conn:
        task_items = process_due_tasks(conn, config)
        digest_items = check_digests(conn, config)
    return task_items, digest_items


def run_once(config: Config, generator: TextGenerator | None = None) -> SweepStats:
    """
    Run one full cycle (for cron-style invocation): fire due tasks and
    digests, stamp expired items, then sweep the queue once.
    """
    db.init_db(config.db_path)

    task_items, digest_items = run_producers(config)
    if task_items:
        logger.info("Queued %d scheduled task notification(s)", len(task_items))
    if digest_items:
        logger.info("Queued %d digest(s)", len(digest_items))

    with db.get_db(config.db_path) as conn:
        db.mark_expired_items(conn, db.utcnow())

    return asyncio.run(_sweep(config, build_consumer(config, generator)))


def run_daemon(config: Config, generator: TextGenerator | None = None) -> None:
    """
    Run the scheduler as a daemon (continuous loop).
    Handles graceful shutdown via SIGTERM/SIGINT.
    """
    global _shutdown_requested

    # Acquire exclusive lock to prevent multiple daemon instances
    lock_file = open(config.lock_path, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another scheduler daemon is already running. Exiting.")
        lock_file.close()
        return

    lock_file.write(str(os.getpid()))
    lock_file.flush()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    engine = config.engine
    logger.info("STARTUP Scheduler daemon starting (pid: %d)", os.getpid())
    logger.info("STARTUP Database: %s", config.db_path)
    logger.info("STARTUP Queue poll interval: %ds", engine.poll_interval)
    logger.info("STARTUP Task check interval: %ds", engine.task_check_interval)
    logger.info("STARTUP Digest check interval: %ds", engine.digest_check_interval)
    logger.info("STARTUP Batch size: %d, concurrency: %d", engine.batch_size, engine.max_concurrency)
    logger.info("STARTUP Item timeout: %gs, channel timeout: %gs", engine.item_timeout, engine.channel_timeout)

    db.init_db(config.db_path)
    consumer = build_consumer(config, generator)
    logger.info(
        "STARTUP Channels configured: %s",
        ", ".join(c.value for c in consumer.dispatcher.senders) or "in-app only",
    )

    last_task_check = 0.0
    last_digest_check = 0.0
    last_sweep = 0.0
    tick = max(1, min(engine.poll_interval, engine.task_check_interval, engine.digest_check_interval))

    while not _shutdown_requested:
        now = time.time()

        if now - last_task_check >= engine.task_check_interval:
            try:
                with db.get_db(config.db_path) as conn:
                    items = process_due_tasks(conn, config)
                    if items:
                        logger.info("Queued %d scheduled task notification(s)", len(items))
            except Exception as e:
                logger.error("Error processing scheduled tasks: %s", e)
            last_task_check = now

        if now - last_digest_check >= engine.digest_check_interval:
            try:
                with db.get_db(config.db_path) as conn:
                    items = check_digests(conn, config)
                    if items:
                        logger.info("Queued %d digest(s)", len(items))
            except Exception as e:
                logger.error("Error checking digests: %s", e)
            last_digest_check = now

        if now - last_sweep >= engine.poll_interval:
            try:
                with db.get_db(config.db_path) as conn:
                    db.mark_expired_items(conn, db.utcnow())
            except Exception as e:
                logger.error("Error marking expired items: %s", e)
            try:
                asyncio.run(_sweep(config, consumer))
            except Exception as e:
                logger.error("Error sweeping notification queue: %s", e)
            last_sweep = now

        time.sleep(tick)

    # Release lock on shutdown
    fcntl.flock(lock_file, fcntl.LOCK_UN)
    lock_file.close()

    logger.info("Shutdown complete.")


def main():
    """Entry point for scheduler script."""
    import argparse

    from .logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="Herald notification scheduler")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("--daemon", "-d", action="store_true", help="Run as daemon (continuous loop)")
    parser.add_argument("--dry-run", action="store_true", help="Use fixed text instead of calling the generator")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)

    setup_logging(config, verbose=args.verbose, daemon_mode=args.daemon)

    generator = StaticGenerator() if args.dry_run else None

    if args.daemon:
        run_daemon(config, generator)
    else:
        stats = run_once(config, generator)
        logger.info(
            "Swept %d item(s): %d sent, %d skipped, %d deferred, %d failed",
            stats.fetched, stats.sent, stats.skipped, stats.deferred, stats.failed,
        )


if __name__ == "__main__":
    main()
