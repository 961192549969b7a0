"""Fan a rendered notification out to a user's channels."""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field

from . import db
from .channels import ChannelSender, SendResult, format_for_channel
from .config import Config
from .events import EVENT_TEMPLATES, EXTERNAL_CHANNELS, Channel, EventType

logger = logging.getLogger("herald.dispatcher")


@dataclass
class DispatchResult:
    sent: bool = False
    channels_sent: list[str] = field(default_factory=list)
    channels_failed: dict[str, str] = field(default_factory=dict)  # channel -> reason
    skipped: list[str] = field(default_factory=list)
    in_app_id: int | None = None


@dataclass
class PlannedSend:
    channel: Channel
    destination: str


class ChannelDispatcher:
    """
    Deliver one notification to every channel the user has enabled.

    Each external channel gets its own attempt row and error boundary and is
    bounded by ``engine.channel_timeout``; channels run concurrently. One
    in-app record is always written as well.
    """

    def __init__(self, config: Config, senders: dict[Channel, ChannelSender] | None = None):
        self.config = config
        self.senders = senders or {}
        self.channel_timeout = config.engine.channel_timeout

    def plan(self, user_id: str, prefs: db.UserPreferences) -> tuple[list[PlannedSend], list[str]]:
        """External channels to attempt, and the enabled ones skipped for missing setup."""
        planned = []
        skipped = []
        for channel in EXTERNAL_CHANNELS:
            if not prefs.channel_enabled(channel):
                continue
            destination = prefs.destination(channel)
            if not destination and channel == Channel.EMAIL:
                destination = self.config.user_email(user_id)
            if not destination:
                logger.warning("No %s destination for user %s, skipping channel", channel.value, user_id)
                skipped.append(channel.value)
                continue
            if channel not in self.senders:
                logger.warning("%s enabled for user %s but no transport is configured", channel.value, user_id)
                skipped.append(channel.value)
                continue
            planned.append(PlannedSend(channel=channel, destination=destination))
        return planned, skipped

    async def dispatch(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        event_type: str,
        title: str,
        body: str,
        prefs: db.UserPreferences,
        queue_item_id: int | None = None,
        metadata: dict | None = None,
    ) -> DispatchResult:
        result = DispatchResult()
        planned, result.skipped = self.plan(user_id, prefs)

        self._write_in_app(conn, user_id, event_type, title, body, queue_item_id, metadata, result)

        outcomes = await asyncio.gather(*(
            self._send_one(conn, user_id, send, title, body, queue_item_id) for send in planned
        ))
        for send, outcome in zip(planned, outcomes):
            if outcome.ok:
                result.channels_sent.append(send.channel.value)
            else:
                result.channels_failed[send.channel.value] = outcome.error or "unknown error"

        result.sent = bool(result.channels_sent)
        logger.info(
            "Dispatched %s to %s: sent=%s failed=%s skipped=%s",
            event_type, user_id,
            ",".join(result.channels_sent) or "-",
            ",".join(result.channels_failed) or "-",
            ",".join(result.skipped) or "-",
        )
        return result

    def _write_in_app(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        event_type: str,
        title: str,
        body: str,
        queue_item_id: int | None,
        metadata: dict | None,
        result: DispatchResult,
    ) -> None:
        try:
            notification_type = EVENT_TEMPLATES[EventType(event_type)].in_app_type
            payload = {"event_type": event_type, **(metadata or {})}
            result.in_app_id = db.create_in_app_notification(
                conn, user_id, notification_type, title, body,
                queue_item_id=queue_item_id, metadata=payload,
            )
        except Exception as e:
            logger.error("In-app record failed for user %s: %s", user_id, e)
            db.create_delivery_attempt(
                conn, user_id, Channel.IN_APP, user_id, queue_item_id,
                status="failed", error=str(e) or type(e).__name__,
            )
            result.channels_failed[Channel.IN_APP.value] = str(e) or type(e).__name__
            return
        db.create_delivery_attempt(conn, user_id, Channel.IN_APP, user_id, queue_item_id, status="sent")
        result.channels_sent.append(Channel.IN_APP.value)

    async def _send_one(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        send: PlannedSend,
        title: str,
        body: str,
        queue_item_id: int | None,
    ) -> SendResult:
        attempt_id = db.create_delivery_attempt(conn, user_id, send.channel, send.destination, queue_item_id)
        message = format_for_channel(send.channel, title, body)
        try:
            outcome = await asyncio.wait_for(
                self.senders[send.channel].send(send.destination, message),
                timeout=self.channel_timeout,
            )
        except asyncio.TimeoutError:
            outcome = SendResult(ok=False, error=f"timeout after {self.channel_timeout:g}s")
        except Exception as e:
            logger.exception("Unexpected %s transport error for user %s", send.channel.value, user_id)
            outcome = SendResult(ok=False, error=str(e) or type(e).__name__)

        db.finish_delivery_attempt(
            conn, attempt_id, "sent" if outcome.ok else "failed", outcome.error,
        )
        return outcome
