"""Feedback collection and the adaptive proactive-level throttle."""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field

import httpx

from . import db
from .config import Config, IdentityConfig
from .events import ProactiveLevel

logger = logging.getLogger("herald.feedback")


class FeedbackError(ValueError):
    """A feedback request that cannot be applied."""


@dataclass
class FeedbackResult:
    updated_items: list[int] = field(default_factory=list)
    signal_id: int | None = None
    helpful_ratio: float | None = None  # None until enough rated items exist
    downgraded_from: ProactiveLevel | None = None
    downgraded_to: ProactiveLevel | None = None


class IdentitySignalSink:
    """Best-effort forwarder of feedback signals to the identity learning webhook.

    Posts happen on daemon threads and never hold up the feedback write.
    Short-lived callers such as the CLI call ``flush`` before exiting so the
    post is not cut off. Errors are logged and dropped.
    """

    def __init__(self, config: IdentityConfig):
        self.config = config
        self._threads: list[threading.Thread] = []

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.url)

    def post(self, payload: dict) -> bool:
        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        try:
            response = httpx.post(self.config.url, json=payload, headers=headers, timeout=self.config.timeout)
            response.raise_for_status()
            return True
        except Exception as e:
            logger.warning("Identity signal for %s not delivered: %s", payload.get("user_id"), e)
            return False

    def submit(self, payload: dict) -> None:
        if not self.enabled:
            return
        thread = threading.Thread(target=self.post, args=(payload,), daemon=True, name="identity-signal")
        thread.start()
        self._threads.append(thread)

    def flush(self, timeout: float | None = None) -> None:
        """Wait for in-flight posts, up to ``timeout`` seconds in total (default: the post timeout)."""
        deadline = time.monotonic() + (self.config.timeout if timeout is None else timeout)
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        self._threads = [t for t in self._threads if t.is_alive()]


def _signal_details(
    was_helpful: bool | None,
    rating: int | None,
    comment: str | None,
    was_dismissed: bool | None,
) -> list[str]:
    details = []
    if was_helpful is not None:
        details.append(f"rated {'helpful' if was_helpful else 'not helpful'}")
    if rating:
        details.append(f"gave {rating}/5 stars")
    if comment:
        details.append(f'feedback: "{comment}"')
    if was_dismissed:
        details.append("dismissed notification without reading")
    return details


def _feedback_content(was_helpful: bool | None, comment: str | None) -> str:
    if comment:
        return comment
    if was_helpful is True:
        return "Thumbs up"
    if was_helpful is False:
        return "Thumbs down"
    return "Dismissed"


def _disclosure(bot_name: str, old: ProactiveLevel, new: ProactiveLevel) -> str:
    return (
        "I noticed my recent notifications haven't been as helpful as I'd like them to be. "
        f'I\'ve adjusted my proactive level from "{old.value}" to "{new.value}" to focus on '
        "fewer, more relevant updates. You can always change this in your notification settings.\n\n"
        f"- {bot_name}"
    )


def apply_throttle(conn: sqlite3.Connection, config: Config, user_id: str, result: FeedbackResult) -> None:
    """Step the user's proactive level down once if recent ratings are poor."""
    throttle = config.throttle
    rated = db.get_recent_rated_items(conn, user_id, limit=throttle.window)
    if len(rated) < throttle.min_samples:
        return

    helpful = sum(1 for item in rated if item.was_helpful)
    result.helpful_ratio = helpful / len(rated)
    if result.helpful_ratio >= throttle.helpful_threshold:
        return

    prefs = db.get_preferences(conn, user_id)
    if prefs is None:
        logger.debug("Poor feedback ratio for %s but no saved preferences to adjust", user_id)
        return

    current = ProactiveLevel(prefs.proactive_level)
    new_level = current.downgrade()
    if new_level is None:
        return

    db.set_proactive_level(conn, user_id, new_level)
    db.create_agent_message(
        conn,
        user_id,
        _disclosure(config.bot_name, current, new_level),
        metadata={
            "source": "feedback_auto_adjust",
            "previous_level": current.value,
            "new_level": new_level.value,
            "helpful_ratio": result.helpful_ratio,
        },
    )
    result.downgraded_from, result.downgraded_to = current, new_level
    logger.info(
        "Lowered proactive level for %s from %s to %s (helpful ratio %.2f over %d items)",
        user_id, current.value, new_level.value, result.helpful_ratio, len(rated),
    )


def record_feedback(
    conn: sqlite3.Connection,
    config: Config,
    user_id: str,
    item_id: int | None = None,
    batch_id: str | None = None,
    was_helpful: bool | None = None,
    rating: int | None = None,
    comment: str | None = None,
    was_dismissed: bool | None = None,
    identity_sink: IdentitySignalSink | None = None,
) -> FeedbackResult:
    """
    Record a user's reaction to a notification (or a batch of them).

    The item update, the feedback signal row, and any throttle downgrade with
    its disclosure message commit together. The identity signal is forwarded
    after the commit and never affects the result.

    Raises:
        FeedbackError: neither item_id nor batch_id was given
    """
    if item_id is None and not batch_id:
        raise FeedbackError("Must provide either item_id or batch_id")
    if rating is not None:
        rating = max(1, min(5, int(rating)))

    result = FeedbackResult()
    with conn:
        result.updated_items = db.apply_feedback_to_items(
            conn, user_id,
            item_id=item_id, batch_id=batch_id,
            was_helpful=was_helpful, rating=rating, comment=comment, was_dismissed=was_dismissed,
        )
        result.signal_id = db.create_feedback_signal(
            conn, user_id,
            session_type="detailed_feedback" if comment else "quick_rating",
            feedback_content=_feedback_content(was_helpful, comment),
            items_referenced=result.updated_items,
            queue_item_id=item_id,
            batch_id=batch_id,
            was_helpful=was_helpful,
            rating=rating,
            comment=comment,
            was_dismissed=was_dismissed,
        )
        if config.throttle.enabled:
            apply_throttle(conn, config, user_id, result)

    if not result.updated_items:
        logger.warning("Feedback from %s matched no notifications (item=%s batch=%s)", user_id, item_id, batch_id)

    details = _signal_details(was_helpful, rating, comment, was_dismissed)
    if details and identity_sink is not None:
        identity_sink.submit({
            "user_id": user_id,
            "signal_type": "notification_feedback",
            "signal_details": f"User {', '.join(details)} for {len(result.updated_items)} notification(s)",
            "user_feedback": comment,
        })

    return result
