"""Database operations for the herald notification queue."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

from .events import Channel, EventType, ProactiveLevel, TaskStatus

logger = logging.getLogger("herald.db")

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: datetime) -> str:
    """Format an instant as UTC text. Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(DB_TIME_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value[:19], DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class QueueItem:
    id: int
    user_id: str
    event_type: str
    priority: int
    context: dict
    scheduled_for: str
    process_after: str
    expires_at: str
    team_id: str | None = None
    batch_id: str | None = None
    generated_title: str | None = None
    generated_message: str | None = None
    generation_attempts: int = 0
    is_processed: bool = False
    processing_started_at: str | None = None
    processed_at: str | None = None
    outcome: str | None = None
    last_error: str | None = None
    expired_at: str | None = None
    was_helpful: bool | None = None
    user_rating: int | None = None
    user_feedback: str | None = None
    was_dismissed: bool | None = None
    first_viewed_at: str | None = None
    created_at: str | None = None


@dataclass
class UserPreferences:
    user_id: str
    proactive_enabled: bool = False
    proactive_level: ProactiveLevel = ProactiveLevel.MEDIUM
    email_enabled: bool = True
    email_address: str | None = None
    sms_enabled: bool = False
    sms_phone_number: str | None = None
    whatsapp_enabled: bool = False
    whatsapp_number: str | None = None
    telegram_enabled: bool = False
    telegram_chat_id: str | None = None
    notification_types: dict[str, bool] = field(default_factory=dict)
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    quiet_hours_timezone: str = "America/New_York"
    updated_at: str | None = None

    def type_enabled(self, event_type: str) -> bool:
        """Event types are opted in unless explicitly set to false."""
        return self.notification_types.get(event_type, True) is not False

    def channel_enabled(self, channel: Channel) -> bool:
        return {
            Channel.EMAIL: self.email_enabled,
            Channel.SMS: self.sms_enabled,
            Channel.WHATSAPP: self.whatsapp_enabled,
            Channel.TELEGRAM: self.telegram_enabled,
            Channel.IN_APP: True,
        }[channel]

    def destination(self, channel: Channel) -> str | None:
        return {
            Channel.EMAIL: self.email_address,
            Channel.SMS: self.sms_phone_number,
            Channel.WHATSAPP: self.whatsapp_number,
            Channel.TELEGRAM: self.telegram_chat_id,
            Channel.IN_APP: self.user_id,
        }[channel]


def default_preferences(user_id: str) -> UserPreferences:
    """Preferences used when a user has never saved any (proactive off)."""
    return UserPreferences(user_id=user_id)


@dataclass
class DeliveryAttempt:
    id: int
    queue_item_id: int | None
    user_id: str
    channel: str
    destination: str | None
    status: str
    error: str | None
    attempted_at: str
    completed_at: str | None


@dataclass
class InAppNotification:
    id: int
    user_id: str
    queue_item_id: int | None
    type: str
    title: str
    message: str
    metadata: dict
    is_read: bool
    created_at: str


@dataclass
class AgentMessage:
    id: int
    user_id: str
    team_id: str | None
    role: str
    message: str
    metadata: dict
    created_at: str


@dataclass
class ScheduledTask:
    id: int
    user_id: str
    title: str
    task_kind: str
    frequency: str
    schedule_hour: int
    schedule_minute: int
    timezone: str
    status: str
    run_count: int
    priority: int = 5
    team_id: str | None = None
    description: str = ""
    prompt: str = ""
    schedule_day: int | None = None
    next_run_at: str | None = None
    last_run_at: str | None = None
    max_runs: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Notification queue
# =============================================================================


def _optional_bool(value) -> bool | None:
    return None if value is None else bool(value)


def _row_to_queue_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        user_id=row["user_id"],
        event_type=row["event_type"],
        priority=row["priority"],
        context=json.loads(row["context"]) if row["context"] else {},
        scheduled_for=row["scheduled_for"],
        process_after=row["process_after"],
        expires_at=row["expires_at"],
        team_id=row["team_id"],
        batch_id=row["batch_id"],
        generated_title=row["generated_title"],
        generated_message=row["generated_message"],
        generation_attempts=row["generation_attempts"],
        is_processed=bool(row["is_processed"]),
        processing_started_at=row["processing_started_at"],
        processed_at=row["processed_at"],
        outcome=row["outcome"],
        last_error=row["last_error"],
        expired_at=row["expired_at"],
        was_helpful=_optional_bool(row["was_helpful"]),
        user_rating=row["user_rating"],
        user_feedback=row["user_feedback"],
        was_dismissed=_optional_bool(row["was_dismissed"]),
        first_viewed_at=row["first_viewed_at"],
        created_at=row["created_at"],
    )


def enqueue_notification(
    conn: sqlite3.Connection,
    user_id: str,
    event_type: str,
    priority: int = 5,
    context: dict | None = None,
    scheduled_for: datetime | None = None,
    process_after: datetime | None = None,
    expires_at: datetime | None = None,
    team_id: str | None = None,
    batch_id: str | None = None,
    now: datetime | None = None,
    expiry_hours: int = 24,
) -> int:
    """Create a pending queue item and return its ID.

    Raises ValueError for an unknown event type. Priority is clamped to 0-10.
    """
    event = EventType(event_type)
    now = now or utcnow()
    scheduled_for = scheduled_for or now
    process_after = process_after or scheduled_for
    expires_at = expires_at or (scheduled_for + timedelta(hours=expiry_hours))
    priority = max(0, min(10, int(priority)))

    cursor = conn.execute(
        """
        INSERT INTO notification_queue (
            user_id, team_id, event_type, priority, context, batch_id,
            scheduled_for, process_after, expires_at, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            user_id,
            team_id,
            event.value,
            priority,
            json.dumps(context or {}),
            batch_id,
            to_db_time(scheduled_for),
            to_db_time(process_after),
            to_db_time(expires_at),
            to_db_time(now),
        ),
    )
    item_id = cursor.fetchone()[0]
    logger.debug("Enqueued item %d for user %s (%s, priority %d)", item_id, user_id, event.value, priority)
    return item_id


def get_queue_item(conn: sqlite3.Connection, item_id: int) -> QueueItem | None:
    cursor = conn.execute("SELECT * FROM notification_queue WHERE id = ?", (item_id,))
    row = cursor.fetchone()
    return _row_to_queue_item(row) if row else None


def fetch_due_items(
    conn: sqlite3.Connection,
    now: datetime,
    limit: int = 50,
    claim_ttl_minutes: int = 10,
) -> list[QueueItem]:
    """Unprocessed, due, unexpired items not currently claimed by another sweep."""
    now_str = to_db_time(now)
    cutoff = to_db_time(now - timedelta(minutes=claim_ttl_minutes))
    cursor = conn.execute(
        """
        SELECT * FROM notification_queue
        WHERE is_processed = 0
          AND scheduled_for <= ?
          AND process_after <= ?
          AND expires_at > ?
          AND (processing_started_at IS NULL OR processing_started_at < ?)
        ORDER BY priority DESC, scheduled_for ASC, id ASC
        LIMIT ?
        """,
        (now_str, now_str, now_str, cutoff, limit),
    )
    return [_row_to_queue_item(row) for row in cursor.fetchall()]


def claim_item(
    conn: sqlite3.Connection,
    item_id: int,
    now: datetime,
    claim_ttl_minutes: int = 10,
) -> bool:
    """Atomically claim an item. Returns False if another sweep holds a fresh claim."""
    cursor = conn.execute(
        """
        UPDATE notification_queue
        SET processing_started_at = ?
        WHERE id = ?
          AND is_processed = 0
          AND (processing_started_at IS NULL OR processing_started_at < ?)
        """,
        (to_db_time(now), item_id, to_db_time(now - timedelta(minutes=claim_ttl_minutes))),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_claim(conn: sqlite3.Connection, item_id: int) -> None:
    """Drop the claim so a later sweep can pick the item up again."""
    conn.execute(
        "UPDATE notification_queue SET processing_started_at = NULL WHERE id = ? AND is_processed = 0",
        (item_id,),
    )
    conn.commit()


def save_generated_message(conn: sqlite3.Connection, item_id: int, title: str, body: str) -> None:
    conn.execute(
        "UPDATE notification_queue SET generated_title = ?, generated_message = ? WHERE id = ?",
        (title, body, item_id),
    )
    conn.commit()


def record_generation_failure(conn: sqlite3.Connection, item_id: int, error: str) -> int:
    """Count a failed generation attempt and release the claim. Returns attempts so far."""
    cursor = conn.execute(
        """
        UPDATE notification_queue
        SET generation_attempts = generation_attempts + 1,
            last_error = ?,
            processing_started_at = NULL
        WHERE id = ?
        RETURNING generation_attempts
        """,
        (error, item_id),
    )
    row = cursor.fetchone()
    conn.commit()
    return row[0] if row else 0


def mark_processed(
    conn: sqlite3.Connection,
    item_id: int,
    outcome: str,
    now: datetime | None = None,
    error: str | None = None,
) -> bool:
    """Terminal transition. Returns False if the item was already processed."""
    cursor = conn.execute(
        """
        UPDATE notification_queue
        SET is_processed = 1, processed_at = ?, outcome = ?,
            last_error = COALESCE(?, last_error)
        WHERE id = ? AND is_processed = 0
        """,
        (to_db_time(now or utcnow()), outcome, error, item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_expired_items(conn: sqlite3.Connection, now: datetime) -> int:
    """Stamp expired_at on items that aged out unprocessed. Returns count stamped."""
    now_str = to_db_time(now)
    cursor = conn.execute(
        """
        UPDATE notification_queue SET expired_at = ?
        WHERE is_processed = 0 AND expired_at IS NULL AND expires_at <= ?
        """,
        (now_str, now_str),
    )
    if cursor.rowcount:
        logger.info("Marked %d queue item(s) expired", cursor.rowcount)
    return cursor.rowcount


def list_queue_items(
    conn: sqlite3.Connection,
    user_id: str | None = None,
    include_processed: bool = False,
    limit: int = 50,
) -> list[QueueItem]:
    query = "SELECT * FROM notification_queue WHERE 1 = 1"
    params: list = []
    if user_id:
        query += " AND user_id = ?"
        params.append(user_id)
    if not include_processed:
        query += " AND is_processed = 0"
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    cursor = conn.execute(query, params)
    return [_row_to_queue_item(row) for row in cursor.fetchall()]


# =============================================================================
# User preferences
# =============================================================================


def _row_to_preferences(row: sqlite3.Row) -> UserPreferences:
    return UserPreferences(
        user_id=row["user_id"],
        proactive_enabled=bool(row["proactive_enabled"]),
        proactive_level=ProactiveLevel(row["proactive_level"]),
        email_enabled=bool(row["email_enabled"]),
        email_address=row["email_address"],
        sms_enabled=bool(row["sms_enabled"]),
        sms_phone_number=row["sms_phone_number"],
        whatsapp_enabled=bool(row["whatsapp_enabled"]),
        whatsapp_number=row["whatsapp_number"],
        telegram_enabled=bool(row["telegram_enabled"]),
        telegram_chat_id=row["telegram_chat_id"],
        notification_types=json.loads(row["notification_types"]) if row["notification_types"] else {},
        quiet_hours_enabled=bool(row["quiet_hours_enabled"]),
        quiet_hours_start=row["quiet_hours_start"],
        quiet_hours_end=row["quiet_hours_end"],
        quiet_hours_timezone=row["quiet_hours_timezone"],
        updated_at=row["updated_at"],
    )


def get_preferences(conn: sqlite3.Connection, user_id: str) -> UserPreferences | None:
    """Saved preferences for a user, or None if the user never saved any."""
    cursor = conn.execute("SELECT * FROM user_preferences WHERE user_id = ?", (user_id,))
    row = cursor.fetchone()
    return _row_to_preferences(row) if row else None


def upsert_preferences(conn: sqlite3.Connection, prefs: UserPreferences) -> None:
    conn.execute(
        """
        INSERT INTO user_preferences (
            user_id, proactive_enabled, proactive_level, email_enabled, email_address,
            sms_enabled, sms_phone_number, whatsapp_enabled, whatsapp_number,
            telegram_enabled, telegram_chat_id, notification_types,
            quiet_hours_enabled, quiet_hours_start, quiet_hours_end, quiet_hours_timezone,
            updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
        ON CONFLICT (user_id) DO UPDATE SET
            proactive_enabled = excluded.proactive_enabled,
            proactive_level = excluded.proactive_level,
            email_enabled = excluded.email_enabled,
            email_address = excluded.email_address,
            sms_enabled = excluded.sms_enabled,
            sms_phone_number = excluded.sms_phone_number,
            whatsapp_enabled = excluded.whatsapp_enabled,
            whatsapp_number = excluded.whatsapp_number,
            telegram_enabled = excluded.telegram_enabled,
            telegram_chat_id = excluded.telegram_chat_id,
            notification_types = excluded.notification_types,
            quiet_hours_enabled = excluded.quiet_hours_enabled,
            quiet_hours_start = excluded.quiet_hours_start,
            quiet_hours_end = excluded.quiet_hours_end,
            quiet_hours_timezone = excluded.quiet_hours_timezone,
            updated_at = excluded.updated_at
        """,
        (
            prefs.user_id,
            1 if prefs.proactive_enabled else 0,
            ProactiveLevel(prefs.proactive_level).value,
            1 if prefs.email_enabled else 0,
            prefs.email_address,
            1 if prefs.sms_enabled else 0,
            prefs.sms_phone_number,
            1 if prefs.whatsapp_enabled else 0,
            prefs.whatsapp_number,
            1 if prefs.telegram_enabled else 0,
            prefs.telegram_chat_id,
            json.dumps(prefs.notification_types),
            1 if prefs.quiet_hours_enabled else 0,
            prefs.quiet_hours_start,
            prefs.quiet_hours_end,
            prefs.quiet_hours_timezone,
        ),
    )


def set_proactive_level(conn: sqlite3.Connection, user_id: str, level: ProactiveLevel) -> None:
    conn.execute(
        "UPDATE user_preferences SET proactive_level = ?, updated_at = datetime('now') WHERE user_id = ?",
        (ProactiveLevel(level).value, user_id),
    )


# =============================================================================
# Delivery attempts and the in-app feed
# =============================================================================


def _row_to_attempt(row: sqlite3.Row) -> DeliveryAttempt:
    return DeliveryAttempt(
        id=row["id"],
        queue_item_id=row["queue_item_id"],
        user_id=row["user_id"],
        channel=row["channel"],
        destination=row["destination"],
        status=row["status"],
        error=row["error"],
        attempted_at=row["attempted_at"],
        completed_at=row["completed_at"],
    )


def create_delivery_attempt(
    conn: sqlite3.Connection,
    user_id: str,
    channel: str,
    destination: str | None,
    queue_item_id: int | None = None,
    status: str = "sending",
    error: str | None = None,
) -> int:
    completed = "datetime('now')" if status != "sending" else "NULL"
    cursor = conn.execute(
        f"""
        INSERT INTO delivery_attempts (queue_item_id, user_id, channel, destination, status, error, completed_at)
        VALUES (?, ?, ?, ?, ?, ?, {completed})
        RETURNING id
        """,
        (queue_item_id, user_id, Channel(channel).value, destination, status, error),
    )
    attempt_id = cursor.fetchone()[0]
    conn.commit()
    return attempt_id


def finish_delivery_attempt(
    conn: sqlite3.Connection,
    attempt_id: int,
    status: str,
    error: str | None = None,
) -> None:
    """Settle an open attempt. Rows already settled are left alone."""
    conn.execute(
        """
        UPDATE delivery_attempts
        SET status = ?, error = ?, completed_at = datetime('now')
        WHERE id = ? AND status = 'sending'
        """,
        (status, error, attempt_id),
    )
    conn.commit()


def fail_open_attempts(conn: sqlite3.Connection, queue_item_id: int, error: str) -> list[str]:
    """Fail every still-sending attempt of an item. Returns the affected channels."""
    cursor = conn.execute(
        """
        UPDATE delivery_attempts
        SET status = 'failed', error = ?, completed_at = datetime('now')
        WHERE queue_item_id = ? AND status = 'sending'
        RETURNING channel
        """,
        (error, queue_item_id),
    )
    channels = [row[0] for row in cursor.fetchall()]
    conn.commit()
    return channels


def get_delivery_attempts(
    conn: sqlite3.Connection,
    queue_item_id: int | None = None,
    user_id: str | None = None,
    limit: int = 100,
) -> list[DeliveryAttempt]:
    query = "SELECT * FROM delivery_attempts WHERE 1 = 1"
    params: list = []
    if queue_item_id is not None:
        query += " AND queue_item_id = ?"
        params.append(queue_item_id)
    if user_id:
        query += " AND user_id = ?"
        params.append(user_id)
    query += " ORDER BY id ASC LIMIT ?"
    params.append(limit)
    cursor = conn.execute(query, params)
    return [_row_to_attempt(row) for row in cursor.fetchall()]


def create_in_app_notification(
    conn: sqlite3.Connection,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    queue_item_id: int | None = None,
    metadata: dict | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO in_app_notifications (user_id, queue_item_id, type, title, message, metadata)
        VALUES (?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (user_id, queue_item_id, notification_type, title, message, json.dumps(metadata or {})),
    )
    notification_id = cursor.fetchone()[0]
    conn.commit()
    return notification_id


def get_in_app_notifications(
    conn: sqlite3.Connection,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[InAppNotification]:
    query = "SELECT * FROM in_app_notifications WHERE user_id = ?"
    if unread_only:
        query += " AND is_read = 0"
    query += " ORDER BY id DESC LIMIT ?"
    cursor = conn.execute(query, (user_id, limit))
    return [
        InAppNotification(
            id=row["id"],
            user_id=row["user_id"],
            queue_item_id=row["queue_item_id"],
            type=row["type"],
            title=row["title"],
            message=row["message"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )
        for row in cursor.fetchall()
    ]


def mark_in_app_read(conn: sqlite3.Connection, user_id: str, notification_id: int | None = None) -> int:
    """Mark one notification (or all of a user's) read. Returns rows changed."""
    if notification_id is None:
        cursor = conn.execute(
            "UPDATE in_app_notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
            (user_id,),
        )
    else:
        cursor = conn.execute(
            "UPDATE in_app_notifications SET is_read = 1 WHERE user_id = ? AND id = ?",
            (user_id, notification_id),
        )
    return cursor.rowcount


# =============================================================================
# Feedback
# =============================================================================


def apply_feedback_to_items(
    conn: sqlite3.Connection,
    user_id: str,
    item_id: int | None = None,
    batch_id: str | None = None,
    was_helpful: bool | None = None,
    rating: int | None = None,
    comment: str | None = None,
    was_dismissed: bool | None = None,
    now: datetime | None = None,
) -> list[int]:
    """Write feedback fields onto the user's item (or batch). Returns updated IDs.

    Fields passed as None keep their stored value. An item reference wins over
    a batch reference.
    """
    if item_id is not None:
        where, key = "id = ?", item_id
    elif batch_id:
        where, key = "batch_id = ?", batch_id
    else:
        return []

    cursor = conn.execute(
        f"""
        UPDATE notification_queue
        SET was_helpful = COALESCE(?, was_helpful),
            user_rating = COALESCE(?, user_rating),
            user_feedback = COALESCE(?, user_feedback),
            was_dismissed = COALESCE(?, was_dismissed),
            first_viewed_at = COALESCE(first_viewed_at, ?)
        WHERE {where} AND user_id = ?
        RETURNING id
        """,
        (
            None if was_helpful is None else int(was_helpful),
            rating,
            comment,
            None if was_dismissed is None else int(was_dismissed),
            to_db_time(now or utcnow()),
            key,
            user_id,
        ),
    )
    return sorted(row[0] for row in cursor.fetchall())


def create_feedback_signal(
    conn: sqlite3.Connection,
    user_id: str,
    session_type: str,
    feedback_content: str,
    items_referenced: list[int],
    queue_item_id: int | None = None,
    batch_id: str | None = None,
    was_helpful: bool | None = None,
    rating: int | None = None,
    comment: str | None = None,
    was_dismissed: bool | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO feedback_signals (
            user_id, queue_item_id, batch_id, session_type, was_helpful, user_rating,
            user_feedback, was_dismissed, feedback_content, items_referenced
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            user_id,
            queue_item_id,
            batch_id,
            session_type,
            None if was_helpful is None else int(was_helpful),
            rating,
            comment,
            None if was_dismissed is None else int(was_dismissed),
            feedback_content,
            json.dumps(items_referenced),
        ),
    )
    return cursor.fetchone()[0]


def get_feedback_signals(conn: sqlite3.Connection, user_id: str, limit: int = 50) -> list[dict]:
    cursor = conn.execute(
        "SELECT * FROM feedback_signals WHERE user_id = ? ORDER BY id DESC LIMIT ?",
        (user_id, limit),
    )
    signals = []
    for row in cursor.fetchall():
        signal = dict(row)
        signal["items_referenced"] = json.loads(signal["items_referenced"] or "[]")
        signals.append(signal)
    return signals


def get_recent_rated_items(conn: sqlite3.Connection, user_id: str, limit: int = 20) -> list[QueueItem]:
    """Most recent items the user rated helpful/not helpful, newest first."""
    cursor = conn.execute(
        """
        SELECT * FROM notification_queue
        WHERE user_id = ? AND was_helpful IS NOT NULL
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (user_id, limit),
    )
    return [_row_to_queue_item(row) for row in cursor.fetchall()]


def create_agent_message(
    conn: sqlite3.Connection,
    user_id: str,
    message: str,
    metadata: dict | None = None,
    team_id: str | None = None,
    role: str = "agent",
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO agent_messages (user_id, team_id, role, message, metadata)
        VALUES (?, ?, ?, ?, ?)
        RETURNING id
        """,
        (user_id, team_id, role, message, json.dumps(metadata or {})),
    )
    return cursor.fetchone()[0]


def get_agent_messages(conn: sqlite3.Connection, user_id: str, limit: int = 50) -> list[AgentMessage]:
    cursor = conn.execute(
        "SELECT * FROM agent_messages WHERE user_id = ? ORDER BY id DESC LIMIT ?",
        (user_id, limit),
    )
    return [
        AgentMessage(
            id=row["id"],
            user_id=row["user_id"],
            team_id=row["team_id"],
            role=row["role"],
            message=row["message"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
        )
        for row in cursor.fetchall()
    ]


# =============================================================================
# Scheduled task definitions
# =============================================================================


def _row_to_scheduled_task(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        task_kind=row["task_kind"],
        frequency=row["frequency"],
        schedule_hour=row["schedule_hour"],
        schedule_minute=row["schedule_minute"],
        timezone=row["timezone"],
        status=row["status"],
        run_count=row["run_count"],
        priority=row["priority"],
        team_id=row["team_id"],
        description=row["description"],
        prompt=row["prompt"],
        schedule_day=row["schedule_day"],
        next_run_at=row["next_run_at"],
        last_run_at=row["last_run_at"],
        max_runs=row["max_runs"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_scheduled_task(
    conn: sqlite3.Connection,
    user_id: str,
    title: str,
    frequency: str,
    schedule_hour: int,
    schedule_minute: int,
    timezone_name: str,
    next_run_at: datetime,
    schedule_day: int | None = None,
    task_kind: str = "custom",
    prompt: str = "",
    description: str = "",
    max_runs: int | None = None,
    priority: int = 5,
    team_id: str | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO scheduled_tasks (
            user_id, team_id, task_kind, title, description, prompt, frequency,
            schedule_day, schedule_hour, schedule_minute, timezone, next_run_at,
            max_runs, priority
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            user_id,
            team_id,
            task_kind,
            title,
            description,
            prompt,
            frequency,
            schedule_day,
            schedule_hour,
            schedule_minute,
            timezone_name,
            to_db_time(next_run_at),
            max_runs,
            priority,
        ),
    )
    task_id = cursor.fetchone()[0]
    logger.debug("Created scheduled task %d for user %s (%s)", task_id, user_id, frequency)
    return task_id


def get_scheduled_task(conn: sqlite3.Connection, task_id: int) -> ScheduledTask | None:
    cursor = conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
    row = cursor.fetchone()
    return _row_to_scheduled_task(row) if row else None


def get_due_scheduled_tasks(conn: sqlite3.Connection, now: datetime) -> list[ScheduledTask]:
    cursor = conn.execute(
        """
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run_at IS NOT NULL AND next_run_at <= ?
        ORDER BY next_run_at ASC, id ASC
        """,
        (to_db_time(now),),
    )
    return [_row_to_scheduled_task(row) for row in cursor.fetchall()]


def record_task_run(
    conn: sqlite3.Connection,
    task_id: int,
    ran_at: datetime,
    next_run_at: datetime | None,
    completed: bool = False,
) -> None:
    """Bump run_count and either reschedule or complete the definition."""
    conn.execute(
        """
        UPDATE scheduled_tasks
        SET run_count = run_count + 1,
            last_run_at = ?,
            next_run_at = ?,
            status = ?,
            updated_at = datetime('now')
        WHERE id = ?
        """,
        (
            to_db_time(ran_at),
            None if completed or next_run_at is None else to_db_time(next_run_at),
            TaskStatus.COMPLETED.value if completed else TaskStatus.ACTIVE.value,
            task_id,
        ),
    )


def set_task_status(conn: sqlite3.Connection, task_id: int, status: str) -> None:
    conn.execute(
        "UPDATE scheduled_tasks SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (TaskStatus(status).value, task_id),
    )


def list_scheduled_tasks(conn: sqlite3.Connection, user_id: str | None = None) -> list[ScheduledTask]:
    if user_id:
        cursor = conn.execute("SELECT * FROM scheduled_tasks WHERE user_id = ? ORDER BY id", (user_id,))
    else:
        cursor = conn.execute("SELECT * FROM scheduled_tasks ORDER BY id")
    return [_row_to_scheduled_task(row) for row in cursor.fetchall()]


def delete_scheduled_task(conn: sqlite3.Connection, task_id: int) -> bool:
    cursor = conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    return cursor.rowcount > 0


# =============================================================================
# Digest state
# =============================================================================


def get_digest_last_run(conn: sqlite3.Connection, user_id: str, digest_name: str) -> str | None:
    """Get the last run timestamp for a config-based digest."""
    cursor = conn.execute(
        "SELECT last_run_at FROM digest_state WHERE user_id = ? AND digest_name = ?",
        (user_id, digest_name),
    )
    row = cursor.fetchone()
    return row[0] if row else None


def set_digest_last_run(conn: sqlite3.Connection, user_id: str, digest_name: str, ran_at: datetime) -> None:
    conn.execute(
        """
        INSERT INTO digest_state (user_id, digest_name, last_run_at)
        VALUES (?, ?, ?)
        ON CONFLICT (user_id, digest_name) DO UPDATE SET
            last_run_at = excluded.last_run_at
        """,
        (user_id, digest_name, to_db_time(ran_at)),
    )
