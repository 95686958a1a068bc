from __future__ import annotations

from workhub.core.events import DomainEvent, InProcessEventBus


def test_prefix_subscription_receives_every_matching_event() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def on_definition(event: DomainEvent) -> None:
        seen.append(event.name)

    bus.subscribe("custom_fields.definition.*", on_definition)
    bus.publish("custom_fields.definition.created", {"definition_id": "points"})
    bus.publish("custom_fields.definition.deleted", {"definition_id": "points"})
    bus.publish("system.started", {})

    assert seen == ["custom_fields.definition.created", "custom_fields.definition.deleted"]


def test_handler_runs_once_when_matched_twice() -> None:
    bus = InProcessEventBus()
    calls: list[dict] = []

    bus.subscribe("custom_fields.definition.created", calls.append)
    bus.subscribe("custom_fields.definition.created", calls.append)
    bus.subscribe("custom_fields.definition.*", calls.append)

    bus.publish("custom_fields.definition.created", {"definition_id": "points"})

    assert len(calls) == 1
    assert calls[0].payload == {"definition_id": "points"}
