"""Queue sweeps: claim due items, gate them on preferences, generate and dispatch."""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from . import db
from .config import Config
from .dispatcher import ChannelDispatcher
from .events import EVENT_TEMPLATES, Channel, EventType, ProactiveLevel
from .generator import GenerationError, TextGenerator
from .quiet_hours import QuietHours, is_quiet_now

logger = logging.getLogger("herald.consumer")

# Per-item results of one sweep
SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"
DEFERRED = "deferred"
RETRY = "retry"
GENERATION_FAILED = "generation_failed"
TIMEOUT = "timeout"
LOST_CLAIM = "lost_claim"
ERROR = "error"


@dataclass
class SweepStats:
    fetched: int = 0
    processed: int = 0  # items that reached is_processed during this sweep
    sent: int = 0
    skipped: int = 0
    deferred: int = 0  # quiet hours, generation retry, or claimed elsewhere
    failed: int = 0  # dispatch with no successful channel, timeout, generation given up
    errors: int = 0

    def record(self, outcome: str) -> None:
        if outcome in (DEFERRED, RETRY, LOST_CLAIM):
            self.deferred += 1
            return
        self.processed += 1
        if outcome == SENT:
            self.sent += 1
        elif outcome == SKIPPED:
            self.skipped += 1
        elif outcome == ERROR:
            self.errors += 1
        else:
            self.failed += 1


class QueueConsumer:
    """
    Drain due notification queue items.

    Every item moves pending -> claimed -> processed. The only ways an item
    leaves a sweep unprocessed are a quiet-hours deferral, a generation retry,
    or a claim held by an overlapping sweep.
    """

    def __init__(self, config: Config, generator: TextGenerator, dispatcher: ChannelDispatcher):
        self.config = config
        self.engine = config.engine
        self.generator = generator
        self.dispatcher = dispatcher

    async def run_sweep(self, conn: sqlite3.Connection, now: datetime | None = None) -> SweepStats:
        now = now or db.utcnow()
        stats = SweepStats()
        items = db.fetch_due_items(
            conn, now, limit=self.engine.batch_size, claim_ttl_minutes=self.engine.claim_ttl_minutes,
        )
        stats.fetched = len(items)
        if not items:
            return stats

        semaphore = asyncio.Semaphore(max(1, self.engine.max_concurrency))

        async def run(item: db.QueueItem) -> None:
            async with semaphore:
                stats.record(await self._process_with_deadline(conn, item, now))

        await asyncio.gather(*(run(item) for item in items))

        logger.info(
            "Sweep: %d fetched, %d sent, %d skipped, %d deferred, %d failed, %d errors",
            stats.fetched, stats.sent, stats.skipped, stats.deferred, stats.failed, stats.errors,
        )
        return stats

    async def _process_with_deadline(self, conn: sqlite3.Connection, item: db.QueueItem, now: datetime) -> str:
        try:
            return await asyncio.wait_for(self.process_item(conn, item, now), timeout=self.engine.item_timeout)
        except asyncio.TimeoutError:
            logger.error("Item %d for %s timed out after %gs", item.id, item.user_id, self.engine.item_timeout)
            try:
                self._close_timed_out(conn, item, now)
            except Exception:
                logger.exception("Could not record timeout for item %d", item.id)
            return TIMEOUT
        except Exception as e:
            logger.exception("Error processing item %d for %s", item.id, item.user_id)
            try:
                db.mark_processed(conn, item.id, FAILED, now, error=str(e) or type(e).__name__)
            except Exception:
                logger.exception("Could not mark item %d processed", item.id)
            return ERROR

    def _skip_reason(self, item: db.QueueItem, prefs: db.UserPreferences) -> str | None:
        event_type = EventType(item.event_type)
        level = ProactiveLevel(prefs.proactive_level)
        if not prefs.proactive_enabled:
            return "proactive notifications disabled"
        if level == ProactiveLevel.OFF:
            return "proactive level is off"
        if not prefs.type_enabled(event_type.value):
            return f"{event_type.value} opted out"
        # Items fired by the user's own scheduled tasks are not level gated
        user_requested = "task_id" in item.context
        if not user_requested and item.priority < self.engine.urgent_priority and not level.allows(event_type):
            return f"{event_type.value} below proactive level {level.value}"
        return None

    async def process_item(self, conn: sqlite3.Connection, item: db.QueueItem, now: datetime) -> str:
        if not db.claim_item(conn, item.id, now, self.engine.claim_ttl_minutes):
            logger.debug("Item %d already claimed by another sweep", item.id)
            return LOST_CLAIM

        prefs = db.get_preferences(conn, item.user_id)
        if prefs is None:
            logger.debug("No preferences saved for %s, using defaults", item.user_id)
            prefs = db.default_preferences(item.user_id)

        reason = self._skip_reason(item, prefs)
        if reason:
            logger.info("Skipping item %d for %s: %s", item.id, item.user_id, reason)
            db.mark_processed(conn, item.id, SKIPPED, now)
            return SKIPPED

        urgent = item.priority >= self.engine.urgent_priority
        if not urgent and is_quiet_now(QuietHours.from_prefs(prefs), now):
            logger.debug("Deferring item %d for %s: quiet hours", item.id, item.user_id)
            db.release_claim(conn, item.id)
            return DEFERRED

        title, body = item.generated_title, item.generated_message
        if not body:
            try:
                generated = await self.generator.generate(item.event_type, item.context)
            except GenerationError as e:
                attempts = db.record_generation_failure(conn, item.id, str(e))
                if attempts >= self.engine.max_generation_attempts:
                    logger.error(
                        "Giving up on item %d for %s after %d generation attempts: %s",
                        item.id, item.user_id, attempts, e,
                    )
                    db.mark_processed(conn, item.id, GENERATION_FAILED, now)
                    return GENERATION_FAILED
                logger.warning("Generation failed for item %d (attempt %d), will retry: %s", item.id, attempts, e)
                return RETRY
            title, body = generated.title, generated.body
            # Persist before dispatch so a crashed sweep never regenerates
            db.save_generated_message(conn, item.id, title, body)

        title = title or EVENT_TEMPLATES[EventType(item.event_type)].title
        result = await self.dispatcher.dispatch(
            conn, item.user_id, item.event_type, title, body, prefs,
            queue_item_id=item.id,
            metadata={"priority": item.priority, "batch_id": item.batch_id},
        )
        outcome = SENT if result.sent else FAILED
        db.mark_processed(conn, item.id, outcome, now)
        return outcome

    def _close_timed_out(self, conn: sqlite3.Connection, item: db.QueueItem, now: datetime) -> None:
        """Fail what was in flight, record channels never reached, and finish the item."""
        reason = f"timeout after {self.engine.item_timeout:g}s"
        db.fail_open_attempts(conn, item.id, reason)

        attempted = {a.channel for a in db.get_delivery_attempts(conn, queue_item_id=item.id)}
        prefs = db.get_preferences(conn, item.user_id) or db.default_preferences(item.user_id)
        planned, _ = self.dispatcher.plan(item.user_id, prefs)
        unreached = [(send.channel, send.destination) for send in planned]
        unreached.append((Channel.IN_APP, item.user_id))
        for channel, destination in unreached:
            if channel.value not in attempted:
                db.create_delivery_attempt(
                    conn, item.user_id, channel, destination, item.id, status="failed", error=reason,
                )

        db.mark_processed(conn, item.id, TIMEOUT, now, error=reason)
