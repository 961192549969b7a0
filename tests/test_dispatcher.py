"""Tests for herald.dispatcher module."""

import pytest

from herald import db
from herald.channels import ChannelError, ChannelSender
from herald.config import EngineConfig, UserConfig
from herald.dispatcher import ChannelDispatcher
from herald.events import Channel


def _attempts(conn, item_id=None):
    return {a.channel: a for a in db.get_delivery_attempts(conn, queue_item_id=item_id)}


class TestPlan:
    def test_only_enabled_channels_with_destinations(self, make_config, make_prefs, fake_senders):
        dispatcher = ChannelDispatcher(make_config(), fake_senders)
        prefs = make_prefs(sms_enabled=True, sms_phone_number="+15550001111", telegram_enabled=True)
        planned, skipped = dispatcher.plan("alice", prefs)
        assert [(p.channel, p.destination) for p in planned] == [
            (Channel.EMAIL, "alice@example.com"),
            (Channel.SMS, "+15550001111"),
        ]
        assert skipped == ["telegram"]

    def test_email_falls_back_to_user_config(self, make_config, make_prefs, fake_senders):
        config = make_config(users={"alice": UserConfig(email_addresses=["alice@corp.example"])})
        dispatcher = ChannelDispatcher(config, fake_senders)
        planned, skipped = dispatcher.plan("alice", make_prefs(email_address=None))
        assert [(p.channel, p.destination) for p in planned] == [(Channel.EMAIL, "alice@corp.example")]
        assert skipped == []

    def test_channel_without_transport_is_skipped(self, make_config, make_prefs):
        dispatcher = ChannelDispatcher(make_config(), {})
        planned, skipped = dispatcher.plan("alice", make_prefs())
        assert planned == []
        assert skipped == ["email"]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_partial_failure_still_sent(self, db_conn, now, make_config, make_prefs, fake_senders, make_sender):
        item_id = db.enqueue_notification(db_conn, "alice", "action_item_due", now=now)
        fake_senders[Channel.EMAIL] = make_sender(Channel.EMAIL, fail_with="mailbox full")
        dispatcher = ChannelDispatcher(make_config(), fake_senders)
        prefs = make_prefs(sms_enabled=True, sms_phone_number="+15550001111")

        result = await dispatcher.dispatch(
            db_conn, "alice", "action_item_due", "Reminder", "Pay **rent**", prefs, queue_item_id=item_id,
        )

        assert result.sent is True
        assert sorted(result.channels_sent) == ["in_app", "sms"]
        assert result.channels_failed == {"email": "mailbox full"}

        attempts = _attempts(db_conn, item_id)
        assert set(attempts) == {"in_app", "email", "sms"}
        assert attempts["email"].status == "failed"
        assert attempts["email"].error == "mailbox full"
        assert attempts["sms"].status == "sent"
        assert attempts["in_app"].status == "sent"
        assert all(a.completed_at for a in attempts.values())

    @pytest.mark.asyncio
    async def test_renders_per_channel(self, db_conn, make_config, make_prefs, fake_senders):
        dispatcher = ChannelDispatcher(make_config(), fake_senders)
        prefs = make_prefs(telegram_enabled=True, telegram_chat_id="42")
        await dispatcher.dispatch(db_conn, "alice", "custom", "Heads up", "Pay **rent**", prefs)

        [(email_to, email_msg)] = fake_senders[Channel.EMAIL].sent
        assert email_to == "alice@example.com"
        assert email_msg.subject == "Heads up"
        assert email_msg.text == "Pay rent"
        [(chat_id, tg_msg)] = fake_senders[Channel.TELEGRAM].sent
        assert chat_id == "42"
        assert tg_msg.text == "<b>Heads up</b>\n\nPay <b>rent</b>"

    @pytest.mark.asyncio
    async def test_missing_destination_writes_no_attempt(self, db_conn, make_config, make_prefs, fake_senders):
        dispatcher = ChannelDispatcher(make_config(), fake_senders)
        prefs = make_prefs(sms_enabled=True, sms_phone_number=None)
        result = await dispatcher.dispatch(db_conn, "alice", "custom", "T", "B", prefs)
        assert result.skipped == ["sms"]
        assert "sms" not in _attempts(db_conn)
        assert fake_senders[Channel.SMS].sent == []

    @pytest.mark.asyncio
    async def test_raised_exception_is_isolated(self, db_conn, make_config, make_prefs, fake_senders, make_sender):
        fake_senders[Channel.SMS] = make_sender(Channel.SMS, raise_exc=RuntimeError("socket closed"))
        dispatcher = ChannelDispatcher(make_config(), fake_senders)
        prefs = make_prefs(sms_enabled=True, sms_phone_number="+15550001111")

        result = await dispatcher.dispatch(db_conn, "alice", "custom", "T", "B", prefs)

        assert result.channels_failed == {"sms": "socket closed"}
        assert "email" in result.channels_sent
        assert _attempts(db_conn)["sms"].status == "failed"

    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self, db_conn, make_config, make_prefs, fake_senders, make_sender):
        fake_senders[Channel.EMAIL] = make_sender(Channel.EMAIL, delay=5)
        config = make_config(engine=EngineConfig(channel_timeout=0.05))
        dispatcher = ChannelDispatcher(config, fake_senders)

        result = await dispatcher.dispatch(db_conn, "alice", "custom", "T", "B", make_prefs())

        assert result.channels_failed == {"email": "timeout after 0.05s"}
        assert result.channels_sent == ["in_app"]
        assert _attempts(db_conn)["email"].error == "timeout after 0.05s"

    @pytest.mark.asyncio
    async def test_in_app_record_written(self, db_conn, now, make_config, make_prefs):
        item_id = db.enqueue_notification(db_conn, "alice", "report_ready", now=now)
        dispatcher = ChannelDispatcher(make_config(), {})
        result = await dispatcher.dispatch(
            db_conn, "alice", "report_ready", "Report", "Ready", make_prefs(email_enabled=False),
            queue_item_id=item_id, metadata={"priority": 5},
        )
        [notification] = db.get_in_app_notifications(db_conn, "alice")
        assert result.in_app_id == notification.id
        assert notification.type == "report"
        assert notification.queue_item_id == item_id
        assert notification.metadata == {"event_type": "report_ready", "priority": 5}
        assert result.sent is True

    @pytest.mark.asyncio
    async def test_sender_channel_error_message_recorded(self, db_conn, make_config, make_prefs):
        class RejectingSender(ChannelSender):
            channel = Channel.EMAIL

            async def _deliver(self, destination, message):
                raise ChannelError("unverified number")

        dispatcher = ChannelDispatcher(make_config(), {Channel.EMAIL: RejectingSender()})
        result = await dispatcher.dispatch(db_conn, "alice", "custom", "T", "B", make_prefs())
        assert result.channels_failed == {"email": "unverified number"}
