"""Tests for herald.events module."""

import pytest

from herald.events import EVENT_TEMPLATES, TASK_KIND_EVENTS, EventType, ProactiveLevel, TaskKind


class TestProactiveLevel:
    def test_downgrade_chain(self):
        assert ProactiveLevel.HIGH.downgrade() == ProactiveLevel.MEDIUM
        assert ProactiveLevel.MEDIUM.downgrade() == ProactiveLevel.LOW
        assert ProactiveLevel.LOW.downgrade() is None
        assert ProactiveLevel.OFF.downgrade() is None

    @pytest.mark.parametrize("level,event_type,allowed", [
        (ProactiveLevel.LOW, EventType.ACTION_ITEM_DUE, True),
        (ProactiveLevel.LOW, EventType.MEETING_REMINDER, False),
        (ProactiveLevel.MEDIUM, EventType.WEEKLY_RECAP, True),
        (ProactiveLevel.MEDIUM, EventType.DAILY_SUMMARY, False),
        (ProactiveLevel.HIGH, EventType.INSIGHT_DISCOVERED, True),
        (ProactiveLevel.OFF, EventType.CUSTOM, False),
    ])
    def test_allows(self, level, event_type, allowed):
        assert level.allows(event_type) is allowed


class TestTemplates:
    def test_every_event_type_has_template(self):
        assert set(EVENT_TEMPLATES) == set(EventType)

    def test_prompts_take_context(self):
        for template in EVENT_TEMPLATES.values():
            assert "{context}" in template.prompt_template
            assert template.in_app_type in ("mention", "report", "system")

    def test_every_task_kind_maps_to_event(self):
        assert set(TASK_KIND_EVENTS) == set(TaskKind)
