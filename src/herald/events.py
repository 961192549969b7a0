"""Closed vocabularies for the notification engine.

Every event type has exactly one template entry; adding an ``EventType``
member without a matching ``EVENT_TEMPLATES`` row fails at import time.
"""

from dataclasses import dataclass
from enum import Enum


class EventType(str, Enum):
    DAILY_SUMMARY = "daily_summary"
    REPORT_READY = "report_ready"
    GOAL_MILESTONE = "goal_milestone"
    MEETING_REMINDER = "meeting_reminder"
    ACTION_ITEM_DUE = "action_item_due"
    TEAM_MENTION = "team_mention"
    INSIGHT_DISCOVERED = "insight_discovered"
    SYNC_COMPLETE = "sync_complete"
    WEEKLY_RECAP = "weekly_recap"
    CUSTOM = "custom"


class Frequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class TaskKind(str, Enum):
    REMINDER = "reminder"
    RESEARCH = "research"
    REPORT = "report"
    CHECK_IN = "check_in"
    CUSTOM = "custom"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    IN_APP = "in_app"


EXTERNAL_CHANNELS = (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP, Channel.TELEGRAM)


class ProactiveLevel(str, Enum):
    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def downgrade(self) -> "ProactiveLevel | None":
        """One step down, or None when there is nothing lower to move to."""
        return _DOWNGRADE.get(self)

    def allows(self, event_type: "EventType") -> bool:
        """Whether this level admits a (non-urgent) notification of event_type."""
        if self is ProactiveLevel.OFF:
            return False
        return self.rank >= EVENT_TEMPLATES[event_type].min_level.rank


_LEVEL_RANK = {
    ProactiveLevel.OFF: 0,
    ProactiveLevel.LOW: 1,
    ProactiveLevel.MEDIUM: 2,
    ProactiveLevel.HIGH: 3,
}

# Feedback never moves below low; "off" is only ever set by the user
_DOWNGRADE = {
    ProactiveLevel.HIGH: ProactiveLevel.MEDIUM,
    ProactiveLevel.MEDIUM: ProactiveLevel.LOW,
}


@dataclass(frozen=True)
class EventTemplate:
    title: str
    prompt_template: str
    min_level: ProactiveLevel
    in_app_type: str  # mention, report, or system


EVENT_TEMPLATES: dict[EventType, EventTemplate] = {
    EventType.DAILY_SUMMARY: EventTemplate(
        title="Your Daily Briefing",
        prompt_template=(
            "Generate a brief, friendly daily summary for a team member. Include:\n"
            "- A warm greeting appropriate for the time of day\n"
            "- Key highlights from team activity (if provided)\n"
            "- Any important upcoming items\n"
            "- An encouraging closing\n\n"
            "Context: {context}\n\n"
            "Keep it conversational, brief (2-3 short paragraphs), and actionable."
        ),
        min_level=ProactiveLevel.HIGH,
        in_app_type="system",
    ),
    EventType.REPORT_READY: EventTemplate(
        title="Your Report is Ready",
        prompt_template=(
            "Generate a brief notification message that a report has been generated. Include:\n"
            "- The report name/type\n"
            "- A brief summary of what the report contains\n"
            "- Encouragement to review it\n\n"
            "Context: {context}\n\n"
            "Keep it to 1-2 short paragraphs."
        ),
        min_level=ProactiveLevel.LOW,
        in_app_type="report",
    ),
    EventType.GOAL_MILESTONE: EventTemplate(
        title="Goal Progress Update",
        prompt_template=(
            "Generate an encouraging message about goal progress. Include:\n"
            "- The specific milestone or progress achieved\n"
            "- Recognition of the accomplishment\n"
            "- Motivation to continue\n\n"
            "Context: {context}\n\n"
            "Keep it celebratory but brief (1-2 paragraphs)."
        ),
        min_level=ProactiveLevel.MEDIUM,
        in_app_type="system",
    ),
    EventType.MEETING_REMINDER: EventTemplate(
        title="Meeting Reminder",
        prompt_template=(
            "Generate a helpful meeting reminder message. Include:\n"
            "- The meeting details (name, time if provided)\n"
            "- Any relevant preparation suggestions\n\n"
            "Context: {context}\n\n"
            "Keep it concise (1 paragraph) and practical."
        ),
        min_level=ProactiveLevel.MEDIUM,
        in_app_type="system",
    ),
    EventType.ACTION_ITEM_DUE: EventTemplate(
        title="Action Item Reminder",
        prompt_template=(
            "Generate a friendly reminder about an upcoming deadline or action item. Include:\n"
            "- What's due and when\n"
            "- A gentle nudge to complete it\n\n"
            "Context: {context}\n\n"
            "Keep it brief and non-pressuring but clear about the deadline."
        ),
        min_level=ProactiveLevel.LOW,
        in_app_type="system",
    ),
    EventType.TEAM_MENTION: EventTemplate(
        title="You Were Mentioned",
        prompt_template=(
            "Generate a brief notification that someone mentioned this user in team chat. Include:\n"
            "- Who mentioned them (if provided)\n"
            "- A brief context of what was discussed\n\n"
            "Context: {context}\n\n"
            "Keep it very brief (1 short paragraph)."
        ),
        min_level=ProactiveLevel.LOW,
        in_app_type="mention",
    ),
    EventType.INSIGHT_DISCOVERED: EventTemplate(
        title="New Insight Discovered",
        prompt_template=(
            "Generate an intriguing message about a newly discovered insight. Include:\n"
            "- A teaser about what was found\n"
            "- Why it might be valuable\n\n"
            "Context: {context}\n\n"
            "Keep it engaging (1-2 paragraphs)."
        ),
        min_level=ProactiveLevel.HIGH,
        in_app_type="system",
    ),
    EventType.SYNC_COMPLETE: EventTemplate(
        title="Document Sync Complete",
        prompt_template=(
            "Generate a brief notification that document sync has completed. Include:\n"
            "- Summary of what was synced (number of files if provided)\n"
            "- Brief next steps\n\n"
            "Context: {context}\n\n"
            "Keep it informative but brief (1 paragraph)."
        ),
        min_level=ProactiveLevel.MEDIUM,
        in_app_type="system",
    ),
    EventType.WEEKLY_RECAP: EventTemplate(
        title="Your Weekly Recap",
        prompt_template=(
            "Generate a concise weekly summary. Include:\n"
            "- Key accomplishments and highlights\n"
            "- Upcoming priorities for next week\n\n"
            "Context: {context}\n\n"
            "Keep it structured and scannable (3-4 short paragraphs or bullet points)."
        ),
        min_level=ProactiveLevel.MEDIUM,
        in_app_type="system",
    ),
    EventType.CUSTOM: EventTemplate(
        title="Message from your assistant",
        prompt_template=(
            "Generate a helpful message based on the following context:\n\n"
            "Context: {context}\n\n"
            "Be clear, friendly, and appropriately brief."
        ),
        min_level=ProactiveLevel.LOW,
        in_app_type="system",
    ),
}

_missing = set(EventType) - set(EVENT_TEMPLATES)
if _missing:
    raise RuntimeError(f"EVENT_TEMPLATES missing entries for: {sorted(m.value for m in _missing)}")


TASK_KIND_EVENTS: dict[TaskKind, EventType] = {
    TaskKind.REMINDER: EventType.ACTION_ITEM_DUE,
    TaskKind.RESEARCH: EventType.INSIGHT_DISCOVERED,
    TaskKind.REPORT: EventType.REPORT_READY,
    TaskKind.CHECK_IN: EventType.CUSTOM,
    TaskKind.CUSTOM: EventType.CUSTOM,
}
