"""
Unit tests for the automation rule engine
"""

import asyncio
import logging

import pytest

from engine.services.automation_engine import AutomationEngine, evaluate_conditions
from shared.errors import (
    ActionExecutionError,
    AdapterUnavailableError,
    UnknownActionError,
    ValidationError,
)
from shared.models.automation import Action, AutomationRule
from shared.models.event import StreamEvent


def raid(viewers, **extra) -> StreamEvent:
    return StreamEvent(
        type="raid", platform="twitch", data={"username": "raider", "viewers": viewers, **extra}
    )


@pytest.fixture
def engine(bus, surface):
    eng = AutomationEngine(bus, surface)
    yield eng
    eng.cleanup()


class TestConditions:
    """evaluate_conditions is pure and monotonic"""

    EVENTS = [
        raid(10),
        raid(100),
        raid(100, is_vip=True),
        StreamEvent(type="raid", platform="youtube", data={"username": "yt", "viewers": 60}),
        StreamEvent(type="raid", platform="twitch", data={"username": "noviewers"}),
    ]

    def test_empty_matches_everything(self):
        for event in self.EVENTS:
            assert evaluate_conditions({}, event) is True
            assert evaluate_conditions(None, event) is True

    @pytest.mark.parametrize(
        "conditions,expected",
        [
            ({"minViewers": 50}, [False, True, True, True, False]),
            ({"min_viewers": 50}, [False, True, True, True, False]),
            ({"max_viewers": 50}, [True, False, False, False, False]),
            ({"platform": "twitch"}, [True, True, True, False, True]),
            ({"platform": ["twitch", "youtube"]}, [True, True, True, True, True]),
            ({"users": ["yt"]}, [False, False, False, True, False]),
            ({"fields": {"is_vip": True}}, [False, False, True, False, False]),
        ],
    )
    def test_clauses(self, conditions, expected):
        assert [evaluate_conditions(conditions, e) for e in self.EVENTS] == expected

    def test_adding_a_clause_only_narrows(self):
        base = {"platform": "twitch"}
        extra_clauses = [
            {"min_viewers": 50},
            {"users": "raider"},
            {"fields": {"is_vip": True}},
            {"max_viewers": 10},
            {"bogus": 1},
        ]
        for clause in extra_clauses:
            narrowed = {**base, **clause}
            for event in self.EVENTS:
                if evaluate_conditions(narrowed, event):
                    assert evaluate_conditions(base, event)

    @pytest.mark.parametrize(
        "conditions",
        [
            {"min_viewers": "lots"},
            {"fields": "not-a-mapping"},
            {"unknown_clause": True},
            {"min_viewers": 1, "mystery": 2},
        ],
    )
    def test_malformed_never_matches(self, conditions):
        assert evaluate_conditions(conditions, raid(100)) is False


class TestRegistration:
    def test_register_subscribes_and_unregister_disposes(self, engine, bus):
        rule_id = engine.register_rule({"event_type": "raid", "actions": []})

        assert rule_id.startswith("rule_")
        assert bus.handler_count("raid") == 1
        assert engine.get_rule(rule_id).enabled is True

        assert engine.unregister_rule(rule_id) is True
        assert bus.handler_count("raid") == 0
        assert engine.unregister_rule(rule_id) is False

    def test_reregister_replaces(self, engine, bus):
        engine.register_rule({"id": "r1", "event_type": "raid", "actions": []})
        engine.register_rule(
            {"id": "r1", "event_type": "raid", "actions": [{"type": "log", "message": "x"}]}
        )

        assert bus.handler_count("raid") == 1
        assert len(engine.get_rule("r1").actions) == 1

    @pytest.mark.parametrize(
        "data",
        [
            {"actions": []},
            {"event_type": "", "actions": []},
            {"event_type": "raid"},
            {"event_type": "raid", "actions": "log"},
            {"event_type": "raid", "actions": [{"message": "no type"}]},
            {"event_type": "raid", "actions": [], "conditions": ["min_viewers"]},
        ],
    )
    def test_register_validation(self, engine, data):
        with pytest.raises(ValidationError):
            engine.register_rule(data)

    def test_rule_instances_are_validated(self, engine, bus):
        with pytest.raises(ValidationError):
            engine.register_rule(AutomationRule(event_type="", actions=[]))
        assert bus.event_types == []

        rule = AutomationRule(event_type="raid", actions=[Action(type="log")], stop_on_error=True)
        assert engine.register_rule(rule) == rule.id
        assert engine.get_rule(rule.id).stop_on_error is True

    def test_set_enabled_and_cleanup(self, engine, bus):
        rule_id = engine.register_rule({"event_type": "follow", "actions": []})

        assert engine.set_rule_enabled(rule_id, False) is True
        assert engine.get_rule(rule_id).enabled is False
        assert engine.set_rule_enabled("rule_missing", True) is False

        engine.cleanup()
        assert engine.list_rules() == []
        assert bus.handler_count("follow") == 0


class TestExecution:
    @pytest.mark.asyncio
    async def test_raid_threshold_scenario(self, engine, control_client):
        rule_id = engine.register_rule(
            {
                "eventType": "raid",
                "conditions": {"minViewers": 50},
                "actions": [
                    {"type": "switch_scene", "scene_name": "Raid"},
                    {"type": "show_source", "source": "Confetti"},
                    {"type": "play_media", "source": "Horn"},
                ],
            }
        )

        quiet = await engine.execute_rule(rule_id, raid(10))
        assert quiet.matched is False
        assert control_client.calls == []

        loud = await engine.execute_rule(rule_id, raid(100))
        assert loud.matched is True
        assert loud.executed == [0, 1, 2]
        assert control_client.calls == [
            ("switch_scene", "Raid"),
            ("set_source_visibility", "Raid", "Confetti", True),
            ("play_media", "Horn"),
        ]

    @pytest.mark.asyncio
    async def test_runs_through_the_bus(self, engine, bus, control_client):
        engine.register_rule(
            {"event_type": "raid", "actions": [{"type": "start_recording"}]}
        )
        tasks = await bus.emit("raid", {"platform": "twitch", "viewers": 3})
        await asyncio.gather(*tasks)

        assert control_client.names == ["start_recording"]

    @pytest.mark.asyncio
    async def test_disabled_rule_is_a_no_op(self, engine, control_client):
        rule_id = engine.register_rule({"event_type": "raid", "actions": [{"type": "stop_streaming"}]})
        engine.set_rule_enabled(rule_id, False)

        run = await engine.execute_rule(rule_id, raid(100))
        assert run.matched is False
        assert control_client.calls == []

    @pytest.mark.asyncio
    async def test_failure_continues_by_default(self, engine, control_client):
        rule_id = engine.register_rule(
            {
                "event_type": "raid",
                "actions": [
                    {"type": "hide_source"},
                    {"type": "start_streaming"},
                    {"type": "stop_recording"},
                ],
            }
        )
        run = await engine.execute_rule(rule_id, raid(1))

        assert run.failed == [0]
        assert run.executed == [1, 2]
        assert run.skipped == []
        assert control_client.names == ["start_streaming", "stop_recording"]

    @pytest.mark.asyncio
    async def test_stop_on_error_skips_the_rest(self, engine, control_client, caplog):
        control_client.fail_on["start_streaming"] = ConnectionError("socket closed")
        rule_id = engine.register_rule(
            {
                "event_type": "raid",
                "stop_on_error": True,
                "actions": [
                    {"type": "switch_scene", "scene_name": "A"},
                    {"type": "start_streaming"},
                    {"type": "switch_scene", "scene_name": "B"},
                    {"type": "switch_scene", "scene_name": "C"},
                ],
            }
        )
        with caplog.at_level(logging.ERROR, logger="Automation"):
            run = await engine.execute_rule(rule_id, raid(1))

        assert run.executed == [0]
        assert run.failed == [1]
        assert run.skipped == [2, 3]
        assert control_client.calls == [("switch_scene", "A")]
        errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert rule_id in errors[0] and "#1" in errors[0] and "start_streaming" in errors[0]
        assert "ConnectionError" in errors[0]
        (error,) = run.errors
        assert error.action_index == 1
        assert isinstance(error.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, engine, control_client, caplog):
        rule_id = engine.register_rule(
            {"event_type": "raid", "actions": [{"type": "launch_rockets"}, {"type": "start_recording"}]}
        )
        with caplog.at_level(logging.ERROR, logger="Automation"):
            run = await engine.execute_rule(rule_id, raid(1))

        assert run.failed == [0]
        assert run.executed == [1]
        assert "launch_rockets" in caplog.text
        assert engine.get_rule(rule_id) is not None
        assert isinstance(run.errors[0], UnknownActionError)
        assert run.errors[0].rule_id == rule_id

    @pytest.mark.asyncio
    async def test_execute_action_unknown_lists_available(self, engine):
        with pytest.raises(UnknownActionError) as exc:
            await engine.execute_action(Action(type="teleport"), raid(1))
        assert "switch_scene" in str(exc.value)
        assert exc.value.action_type == "teleport"

    @pytest.mark.asyncio
    async def test_adapter_unavailable_is_contained(self, bus):
        from engine.services.control_surface import ClientControlSurface

        engine = AutomationEngine(bus, ClientControlSurface(None))
        rule_id = engine.register_rule(
            {"event_type": "raid", "actions": [{"type": "switch_scene", "scene_name": "X"}]}
        )
        run = await engine.execute_rule(rule_id, raid(1))

        assert run.matched is True
        assert run.failed == [0]
        (error,) = run.errors
        assert isinstance(error, ActionExecutionError)
        assert isinstance(error.__cause__, AdapterUnavailableError)
        assert (error.rule_id, error.action_index, error.action_type) == (rule_id, 0, "switch_scene")
        engine.cleanup()

    @pytest.mark.asyncio
    async def test_unregister_mid_flight(self, engine, bus, control_client):
        rule_id = engine.register_rule({"event_type": "raid", "actions": [{"type": "start_recording"}]})
        tasks = await bus.emit("raid", {"viewers": 100})
        engine.unregister_rule(rule_id)

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert not any(isinstance(r, BaseException) for r in results)
        assert control_client.calls == []

    @pytest.mark.asyncio
    async def test_actions_run_in_declared_order(self, engine, control_client):
        rule_id = engine.register_rule(
            {
                "event_type": "raid",
                "actions": [
                    {"type": "toggle_source", "source": "Cam"},
                    {"type": "wait", "duration": 0},
                    {"type": "flash_filter", "source": "Cam", "filter": "Glow", "duration": 0},
                    {"type": "pause_media", "source": "Music"},
                    {"type": "restart_media", "source": "Music"},
                    {"type": "set_filter_enabled", "source": "Cam", "filter": "Blur", "enabled": False},
                ],
            }
        )
        run = await engine.execute_rule(rule_id, raid(1))

        assert run.executed == [0, 1, 2, 3, 4, 5]
        assert control_client.calls == [
            ("set_source_visibility", "Main", "Cam", False),
            ("set_filter_enabled", "Cam", "Glow", True),
            ("set_filter_enabled", "Cam", "Glow", False),
            ("pause_media", "Music"),
            ("restart_media", "Music"),
            ("set_filter_enabled", "Cam", "Blur", False),
        ]

    @pytest.mark.asyncio
    async def test_emit_event_carries_original(self, engine, bus):
        received = []

        async def on_celebrate(event):
            received.append(event)

        bus.subscribe("celebrate", on_celebrate)
        rule_id = engine.register_rule(
            {
                "event_type": "raid",
                "actions": [{"type": "emit_event", "event_name": "celebrate", "data": {"level": 3}}],
            }
        )
        source = raid(100)
        await engine.execute_rule(rule_id, source)
        await bus.drain()

        assert len(received) == 1
        assert received[0].platform == "twitch"
        assert received[0].data["level"] == 3
        assert received[0].data["original_event"]["id"] == source.id

    @pytest.mark.asyncio
    async def test_camel_case_action_params(self, engine, bus, control_client):
        received = []

        async def on_hype(event):
            received.append(event)

        bus.subscribe("hype", on_hype)
        rule_id = engine.register_rule(
            {
                "eventType": "raid",
                "actions": [
                    {"type": "switch_scene", "sceneName": "Raid"},
                    {"type": "emit_event", "params": {"eventName": "hype"}},
                ],
            }
        )
        run = await engine.execute_rule(rule_id, raid(1))
        await bus.drain()

        assert run.executed == [0, 1]
        assert control_client.calls == [("switch_scene", "Raid")]
        assert len(received) == 1
