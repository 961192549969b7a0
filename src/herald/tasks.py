"""Scheduling producers: recurring task definitions and cron digests.

Both producers only ever insert notification queue items; delivery is the
consumer's job.
"""

import logging
import sqlite3
from datetime import datetime
from zoneinfo import ZoneInfo

from croniter import croniter

from . import db
from .config import Config
from .events import TASK_KIND_EVENTS, EventType, Frequency, TaskKind
from .schedule import ScheduleError, following_run, next_run, validate_schedule

logger = logging.getLogger("herald.tasks")


def create_task(
    conn: sqlite3.Connection,
    user_id: str,
    title: str,
    frequency: str,
    hour: int,
    minute: int = 0,
    day: int | None = None,
    timezone_name: str = "UTC",
    task_kind: str = "custom",
    prompt: str = "",
    description: str = "",
    max_runs: int | None = None,
    priority: int = 5,
    team_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Validate and store a task definition with its first next_run_at.

    Raises:
        ScheduleError: malformed schedule, task kind, or max_runs
    """
    validate_schedule(frequency, hour, minute, day, timezone_name)
    try:
        kind = TaskKind(task_kind)
    except ValueError:
        raise ScheduleError(f"Unknown task kind: {task_kind!r}") from None
    if max_runs is not None and max_runs < 1:
        raise ScheduleError(f"max_runs must be at least 1, got {max_runs}")
    if not title.strip():
        raise ScheduleError("Task title is required")

    first_run = next_run(frequency, hour, minute, day, timezone_name, now=now)
    task_id = db.create_scheduled_task(
        conn,
        user_id=user_id,
        title=title,
        frequency=frequency,
        schedule_hour=hour,
        schedule_minute=minute,
        timezone_name=timezone_name,
        next_run_at=first_run,
        schedule_day=day,
        task_kind=kind.value,
        prompt=prompt,
        description=description,
        max_runs=max_runs,
        priority=max(0, min(10, priority)),
        team_id=team_id,
    )
    logger.info("Created %s task %d for %s, first run %s", frequency, task_id, user_id, db.to_db_time(first_run))
    return task_id


def process_due_tasks(conn: sqlite3.Connection, config: Config, now: datetime | None = None) -> list[int]:
    """
    Fire every active task definition whose next_run_at has arrived.

    Each firing enqueues one notification item, bumps run_count, and either
    reschedules from the slot that fired, strictly after ``now``, or completes the definition. A
    malformed definition is logged and left untouched.

    Returns:
        IDs of the queue items created
    """
    now = now or db.utcnow()
    created = []

    for task in db.get_due_scheduled_tasks(conn, now):
        run_number = task.run_count + 1
        try:
            is_last = task.frequency == Frequency.ONCE.value or (
                task.max_runs is not None and run_number >= task.max_runs
            )
            following = None
            if not is_last:
                following = following_run(
                    task.frequency, task.schedule_hour, task.schedule_minute,
                    task.schedule_day, task.timezone, db.from_db_time(task.next_run_at), now,
                )
            else:
                validate_schedule(
                    task.frequency, task.schedule_hour, task.schedule_minute,
                    task.schedule_day, task.timezone,
                )
            event_type = TASK_KIND_EVENTS[TaskKind(task.task_kind)]
        except ValueError as e:
            logger.error("Scheduled task %d is malformed, leaving it untouched: %s", task.id, e)
            continue

        item_id = db.enqueue_notification(
            conn,
            task.user_id,
            event_type.value,
            priority=task.priority,
            context={
                "task_id": task.id,
                "task_title": task.title,
                "task_kind": task.task_kind,
                "description": task.description,
                "prompt": task.prompt,
                "run_number": run_number,
            },
            team_id=task.team_id,
            batch_id=f"task-{task.id}-{run_number}",
            now=now,
            expiry_hours=config.engine.default_expiry_hours,
        )
        db.record_task_run(conn, task.id, now, following, completed=is_last)
        created.append(item_id)

        if is_last:
            logger.info("Task %d fired (run %d) and is now complete", task.id, run_number)
        else:
            logger.info("Task %d fired (run %d), next run %s", task.id, run_number, db.to_db_time(following))

    return created


def check_digests(conn: sqlite3.Connection, config: Config, now: datetime | None = None) -> list[int]:
    """
    Enqueue config-defined cron digests that are due.

    Cron expressions are evaluated in the user's timezone; the last run per
    (user, digest) is tracked in the database.

    Returns:
        IDs of the queue items created
    """
    now = now or db.utcnow()
    created = []

    for user_id, user_config in config.users.items():
        if not user_config.digests:
            continue

        try:
            user_tz = ZoneInfo(user_config.timezone)
        except Exception:
            user_tz = ZoneInfo("UTC")

        local_now = now.astimezone(user_tz)

        for digest in user_config.digests:
            if not digest.cron or not digest.name:
                continue
            try:
                event_type = EventType(digest.event_type)
            except ValueError:
                logger.error("Digest %s for %s has unknown event type %r", digest.name, user_id, digest.event_type)
                continue

            last_run_at = db.from_db_time(db.get_digest_last_run(conn, user_id, digest.name))
            try:
                if last_run_at:
                    cron = croniter(digest.cron, last_run_at.astimezone(user_tz))
                else:
                    # Never run before - check if we're past the first scheduled time today
                    today_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
                    cron = croniter(digest.cron, today_start)
                next_fire = cron.get_next(datetime)
            except (ValueError, KeyError) as e:
                logger.error("Digest %s for %s has invalid cron %r: %s", digest.name, user_id, digest.cron, e)
                continue

            if local_now < next_fire:
                continue

            item_id = db.enqueue_notification(
                conn,
                user_id,
                event_type.value,
                priority=digest.priority,
                context={"digest": digest.name, **digest.context},
                team_id=user_config.team_id or None,
                now=now,
                expiry_hours=config.engine.default_expiry_hours,
            )
            db.set_digest_last_run(conn, user_id, digest.name, now)
            created.append(item_id)
            logger.info("Queued digest %s for %s as item %d", digest.name, user_id, item_id)

    return created
