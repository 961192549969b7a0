"""Tests for herald.db module."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from herald import db
from herald.events import ProactiveLevel


def _enqueue(conn, now, **kwargs):
    kwargs.setdefault("user_id", "alice")
    kwargs.setdefault("event_type", "action_item_due")
    return db.enqueue_notification(conn, now=now, **kwargs)


class TestInitDb:
    def test_creates_tables(self, db_path):
        with db.get_db(db_path) as conn:
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        for name in (
            "scheduled_tasks", "notification_queue", "user_preferences", "delivery_attempts",
            "in_app_notifications", "feedback_signals", "agent_messages", "digest_state",
        ):
            assert name in tables

    def test_idempotent(self, db_path):
        db.init_db(db_path)
        db.init_db(db_path)

    def test_schema_declares_processing_columns(self, db_path):
        with db.get_db(db_path) as conn:
            queue_cols = {row["name"] for row in conn.execute("PRAGMA table_info(notification_queue)")}
            prefs_cols = {row["name"] for row in conn.execute("PRAGMA table_info(user_preferences)")}
        assert {"generation_attempts", "outcome", "last_error", "expired_at"} <= queue_cols
        assert {"whatsapp_enabled", "whatsapp_number"} <= prefs_cols

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "herald.db"
        db.init_db(path)
        assert path.exists()


class TestTimeHelpers:
    def test_to_db_time_converts_to_utc(self):
        dt = datetime(2025, 1, 15, 10, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert db.to_db_time(dt) == "2025-01-15 15:00:00"

    def test_naive_taken_as_utc(self):
        assert db.to_db_time(datetime(2025, 1, 15, 15, 0)) == "2025-01-15 15:00:00"

    def test_from_db_time(self):
        assert db.from_db_time("2025-01-15 15:00:00") == datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)
        assert db.from_db_time(None) is None


class TestEnqueueNotification:
    def test_defaults(self, db_conn, now):
        item_id = _enqueue(db_conn, now, context={"summary": "Pay rent"})
        item = db.get_queue_item(db_conn, item_id)
        assert item.user_id == "alice"
        assert item.priority == 5
        assert item.context == {"summary": "Pay rent"}
        assert item.scheduled_for == "2025-01-15 15:00:00"
        assert item.process_after == "2025-01-15 15:00:00"
        assert item.expires_at == "2025-01-16 15:00:00"
        assert item.is_processed is False
        assert item.generation_attempts == 0
        assert item.was_helpful is None

    def test_unknown_event_type(self, db_conn, now):
        with pytest.raises(ValueError):
            _enqueue(db_conn, now, event_type="birthday_party")

    @pytest.mark.parametrize("given,stored", [(-3, 0), (42, 10), (8, 8)])
    def test_priority_clamped(self, db_conn, now, given, stored):
        item_id = _enqueue(db_conn, now, priority=given)
        assert db.get_queue_item(db_conn, item_id).priority == stored

    def test_expiry_hours(self, db_conn, now):
        item_id = _enqueue(db_conn, now, expiry_hours=2)
        assert db.get_queue_item(db_conn, item_id).expires_at == "2025-01-15 17:00:00"

    def test_priority_check_constraint(self, db_conn):
        with pytest.raises(sqlite3.IntegrityError):
            db_conn.execute(
                "INSERT INTO notification_queue (user_id, event_type, priority, scheduled_for, "
                "process_after, expires_at) VALUES ('a', 'action_item_due', 11, 'x', 'x', 'x')"
            )


class TestFetchDueItems:
    def test_orders_by_priority_then_schedule(self, db_conn, now):
        low = _enqueue(db_conn, now, priority=2, scheduled_for=now - timedelta(hours=2))
        high = _enqueue(db_conn, now, priority=9)
        mid_late = _enqueue(db_conn, now, priority=5, scheduled_for=now - timedelta(minutes=5))
        mid_early = _enqueue(db_conn, now, priority=5, scheduled_for=now - timedelta(hours=1))
        ids = [item.id for item in db.fetch_due_items(db_conn, now)]
        assert ids == [high, mid_early, mid_late, low]

    def test_excludes_future_deferred_expired_processed(self, db_conn, now):
        _enqueue(db_conn, now, scheduled_for=now + timedelta(hours=1))
        _enqueue(db_conn, now, process_after=now + timedelta(minutes=15))
        _enqueue(db_conn, now, scheduled_for=now - timedelta(hours=3), expires_at=now - timedelta(hours=1))
        done = _enqueue(db_conn, now)
        db.mark_processed(db_conn, done, "sent", now=now)
        due = _enqueue(db_conn, now)
        assert [item.id for item in db.fetch_due_items(db_conn, now)] == [due]

    def test_excludes_freshly_claimed(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        assert db.claim_item(db_conn, item_id, now)
        assert db.fetch_due_items(db_conn, now + timedelta(minutes=5)) == []
        assert [i.id for i in db.fetch_due_items(db_conn, now + timedelta(minutes=11))] == [item_id]

    def test_limit(self, db_conn, now):
        for _ in range(5):
            _enqueue(db_conn, now)
        assert len(db.fetch_due_items(db_conn, now, limit=3)) == 3


class TestClaimItem:
    def test_second_claim_fails(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        assert db.claim_item(db_conn, item_id, now) is True
        assert db.claim_item(db_conn, item_id, now) is False

    def test_two_connections_only_one_wins(self, db_path, now):
        with db.get_db(db_path) as conn:
            item_id = _enqueue(conn, now)
        with db.get_db(db_path) as first, db.get_db(db_path) as second:
            results = [db.claim_item(first, item_id, now), db.claim_item(second, item_id, now)]
        assert sorted(results) == [False, True]

    def test_stale_claim_can_be_retaken(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.claim_item(db_conn, item_id, now)
        assert db.claim_item(db_conn, item_id, now + timedelta(minutes=11)) is True

    def test_processed_item_cannot_be_claimed(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.mark_processed(db_conn, item_id, "sent", now=now)
        assert db.claim_item(db_conn, item_id, now) is False

    def test_release_claim(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.claim_item(db_conn, item_id, now)
        db.release_claim(db_conn, item_id)
        assert db.get_queue_item(db_conn, item_id).processing_started_at is None
        assert db.claim_item(db_conn, item_id, now) is True


class TestProcessingState:
    def test_mark_processed_once(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        assert db.mark_processed(db_conn, item_id, "sent", now=now) is True
        assert db.mark_processed(db_conn, item_id, "failed", now=now, error="late") is False
        item = db.get_queue_item(db_conn, item_id)
        assert item.is_processed is True
        assert item.outcome == "sent"
        assert item.processed_at == "2025-01-15 15:00:00"
        assert item.last_error is None

    def test_generation_failure_counts_and_releases(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.claim_item(db_conn, item_id, now)
        assert db.record_generation_failure(db_conn, item_id, "boom") == 1
        assert db.record_generation_failure(db_conn, item_id, "boom again") == 2
        item = db.get_queue_item(db_conn, item_id)
        assert item.processing_started_at is None
        assert item.last_error == "boom again"

    def test_save_generated_message(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.save_generated_message(db_conn, item_id, "Title", "Body")
        item = db.get_queue_item(db_conn, item_id)
        assert (item.generated_title, item.generated_message) == ("Title", "Body")

    def test_mark_expired_items(self, db_conn, now):
        stale = _enqueue(db_conn, now, scheduled_for=now - timedelta(hours=30))
        fresh = _enqueue(db_conn, now)
        assert db.mark_expired_items(db_conn, now) == 1
        assert db.mark_expired_items(db_conn, now) == 0
        assert db.get_queue_item(db_conn, stale).expired_at == "2025-01-15 15:00:00"
        assert db.get_queue_item(db_conn, stale).is_processed is False
        assert db.get_queue_item(db_conn, fresh).expired_at is None

    def test_list_queue_items(self, db_conn, now):
        a = _enqueue(db_conn, now)
        b = _enqueue(db_conn, now, user_id="bob")
        db.mark_processed(db_conn, a, "sent", now=now)
        assert [i.id for i in db.list_queue_items(db_conn)] == [b]
        assert [i.id for i in db.list_queue_items(db_conn, include_processed=True)] == [b, a]
        assert db.list_queue_items(db_conn, user_id="carol") == []


class TestPreferences:
    def test_missing_row_is_none(self, db_conn):
        assert db.get_preferences(db_conn, "nobody") is None

    def test_default_preferences_are_opted_out(self):
        prefs = db.default_preferences("nobody")
        assert prefs.proactive_enabled is False
        assert prefs.proactive_level == ProactiveLevel.MEDIUM

    def test_upsert_round_trip(self, db_conn, make_prefs):
        prefs = make_prefs(
            sms_enabled=True,
            sms_phone_number="+15550001111",
            notification_types={"insight_discovered": False},
            quiet_hours_enabled=True,
        )
        db.upsert_preferences(db_conn, prefs)
        stored = db.get_preferences(db_conn, "alice")
        assert stored.proactive_level == ProactiveLevel.HIGH
        assert stored.sms_phone_number == "+15550001111"
        assert stored.notification_types == {"insight_discovered": False}
        assert stored.quiet_hours_enabled is True
        assert stored.updated_at is not None

    def test_upsert_overwrites(self, db_conn, make_prefs):
        db.upsert_preferences(db_conn, make_prefs())
        db.upsert_preferences(db_conn, make_prefs(proactive_level=ProactiveLevel.LOW, email_enabled=False))
        stored = db.get_preferences(db_conn, "alice")
        assert stored.proactive_level == ProactiveLevel.LOW
        assert stored.email_enabled is False

    def test_set_proactive_level(self, db_conn, make_prefs):
        db.upsert_preferences(db_conn, make_prefs())
        db.set_proactive_level(db_conn, "alice", ProactiveLevel.MEDIUM)
        assert db.get_preferences(db_conn, "alice").proactive_level == ProactiveLevel.MEDIUM

    def test_type_enabled_defaults_true(self, make_prefs):
        prefs = make_prefs(notification_types={"insight_discovered": False, "goal_milestone": True})
        assert prefs.type_enabled("insight_discovered") is False
        assert prefs.type_enabled("goal_milestone") is True
        assert prefs.type_enabled("action_item_due") is True


class TestDeliveryAttempts:
    def test_create_and_finish(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        attempt_id = db.create_delivery_attempt(db_conn, "alice", "email", "a@example.com", queue_item_id=item_id)
        db.finish_delivery_attempt(db_conn, attempt_id, "failed", error="smtp down")
        db.finish_delivery_attempt(db_conn, attempt_id, "sent")
        [attempt] = db.get_delivery_attempts(db_conn, queue_item_id=item_id)
        assert attempt.status == "failed"
        assert attempt.error == "smtp down"
        assert attempt.completed_at is not None

    def test_unknown_channel_rejected(self, db_conn):
        with pytest.raises(ValueError):
            db.create_delivery_attempt(db_conn, "alice", "pager", "123")

    def test_fail_open_attempts(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.create_delivery_attempt(db_conn, "alice", "sms", "+1555", queue_item_id=item_id)
        db.create_delivery_attempt(db_conn, "alice", "in_app", "alice", queue_item_id=item_id, status="sent")
        assert db.fail_open_attempts(db_conn, item_id, "timeout") == ["sms"]
        statuses = {a.channel: a.status for a in db.get_delivery_attempts(db_conn, queue_item_id=item_id)}
        assert statuses == {"sms": "failed", "in_app": "sent"}


class TestInAppFeed:
    def test_feed_and_mark_read(self, db_conn):
        first = db.create_in_app_notification(db_conn, "alice", "system", "One", "Body one")
        second = db.create_in_app_notification(db_conn, "alice", "report", "Two", "Body two", metadata={"k": 1})
        db.create_in_app_notification(db_conn, "bob", "system", "Other", "Body")

        feed = db.get_in_app_notifications(db_conn, "alice")
        assert [n.id for n in feed] == [second, first]
        assert feed[0].metadata == {"k": 1}

        assert db.mark_in_app_read(db_conn, "alice", first) == 1
        assert [n.id for n in db.get_in_app_notifications(db_conn, "alice", unread_only=True)] == [second]
        assert db.mark_in_app_read(db_conn, "alice") == 1
        assert db.get_in_app_notifications(db_conn, "alice", unread_only=True) == []


class TestFeedbackStorage:
    def test_apply_to_item(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        assert db.apply_feedback_to_items(db_conn, "alice", item_id=item_id, was_helpful=True, now=now) == [item_id]
        item = db.get_queue_item(db_conn, item_id)
        assert item.was_helpful is True
        assert item.first_viewed_at == "2025-01-15 15:00:00"

    def test_none_fields_keep_stored_values(self, db_conn, now):
        item_id = _enqueue(db_conn, now)
        db.apply_feedback_to_items(db_conn, "alice", item_id=item_id, was_helpful=False, rating=2, now=now)
        db.apply_feedback_to_items(db_conn, "alice", item_id=item_id, comment="meh", now=now)
        item = db.get_queue_item(db_conn, item_id)
        assert (item.was_helpful, item.user_rating, item.user_feedback) == (False, 2, "meh")

    def test_batch_scoped_to_user(self, db_conn, now):
        a = _enqueue(db_conn, now, batch_id="b1")
        b = _enqueue(db_conn, now, batch_id="b1")
        _enqueue(db_conn, now, batch_id="b1", user_id="bob")
        assert db.apply_feedback_to_items(db_conn, "alice", batch_id="b1", was_dismissed=True) == [a, b]

    def test_item_wins_over_batch(self, db_conn, now):
        a = _enqueue(db_conn, now, batch_id="b1")
        _enqueue(db_conn, now, batch_id="b1")
        assert db.apply_feedback_to_items(db_conn, "alice", item_id=a, batch_id="b1", was_helpful=True) == [a]

    def test_other_users_item_untouched(self, db_conn, now):
        item_id = _enqueue(db_conn, now, user_id="bob")
        assert db.apply_feedback_to_items(db_conn, "alice", item_id=item_id, was_helpful=True) == []

    def test_recent_rated_items_newest_first(self, db_conn, now):
        older = _enqueue(db_conn, now - timedelta(days=1))
        newer = _enqueue(db_conn, now)
        _enqueue(db_conn, now)  # unrated
        for item_id in (older, newer):
            db.apply_feedback_to_items(db_conn, "alice", item_id=item_id, was_helpful=True)
        assert [i.id for i in db.get_recent_rated_items(db_conn, "alice")] == [newer, older]

    def test_feedback_signal(self, db_conn):
        signal_id = db.create_feedback_signal(
            db_conn, "alice", "quick_rating", "Helpful", [3, 4], batch_id="b1", was_helpful=True,
        )
        [signal] = db.get_feedback_signals(db_conn, "alice")
        assert signal["id"] == signal_id
        assert signal["items_referenced"] == [3, 4]
        assert signal["was_helpful"] == 1

    def test_agent_messages(self, db_conn):
        db.create_agent_message(db_conn, "alice", "Hello", metadata={"source": "test"})
        [message] = db.get_agent_messages(db_conn, "alice")
        assert message.role == "agent"
        assert message.metadata == {"source": "test"}


class TestScheduledTasks:
    def _create(self, conn, now, **kwargs):
        return db.create_scheduled_task(
            conn, "alice", kwargs.pop("title", "Standup"), "daily", 9, 0, "UTC",
            next_run_at=kwargs.pop("next_run_at", now), **kwargs,
        )

    def test_due_tasks(self, db_conn, now):
        due = self._create(db_conn, now)
        self._create(db_conn, now, next_run_at=now + timedelta(hours=1))
        paused = self._create(db_conn, now)
        db.set_task_status(db_conn, paused, "paused")
        assert [t.id for t in db.get_due_scheduled_tasks(db_conn, now)] == [due]

    def test_record_run_reschedules(self, db_conn, now):
        task_id = self._create(db_conn, now)
        db.record_task_run(db_conn, task_id, now, now + timedelta(days=1))
        task = db.get_scheduled_task(db_conn, task_id)
        assert task.run_count == 1
        assert task.next_run_at == "2025-01-16 15:00:00"
        assert task.status == "active"

    def test_record_run_completes(self, db_conn, now):
        task_id = self._create(db_conn, now)
        db.record_task_run(db_conn, task_id, now, None, completed=True)
        task = db.get_scheduled_task(db_conn, task_id)
        assert task.status == "completed"
        assert task.next_run_at is None

    def test_invalid_status_rejected(self, db_conn, now):
        task_id = self._create(db_conn, now)
        with pytest.raises(ValueError):
            db.set_task_status(db_conn, task_id, "sleeping")

    def test_list_and_delete(self, db_conn, now):
        task_id = self._create(db_conn, now)
        assert [t.id for t in db.list_scheduled_tasks(db_conn, "alice")] == [task_id]
        assert db.delete_scheduled_task(db_conn, task_id) is True
        assert db.delete_scheduled_task(db_conn, task_id) is False


class TestDigestState:
    def test_round_trip(self, db_conn, now):
        assert db.get_digest_last_run(db_conn, "alice", "morning") is None
        db.set_digest_last_run(db_conn, "alice", "morning", now)
        db.set_digest_last_run(db_conn, "alice", "morning", now + timedelta(days=1))
        assert db.get_digest_last_run(db_conn, "alice", "morning") == "2025-01-16 15:00:00"
