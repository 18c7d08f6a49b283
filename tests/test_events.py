"""
Unit tests for the notification fabric and the events the engine emits.
"""

from __future__ import annotations

import logging

import pytest

from agent_monitor import AgentMonitor, NotificationFabric, agent_topic
from agent_monitor.errors import NotFoundError
from conftest import wait_until


# ============================================================
#  Subscriptions
# ============================================================


@pytest.mark.asyncio
async def test_observer_only_sees_its_topics() -> None:
    """An event on one topic never reaches observers of another."""
    fabric = NotificationFabric()
    tasks = fabric.observer()
    agents = fabric.observer()
    fabric.subscribe(tasks, ["tasks"])
    fabric.subscribe(agents, ["agents"])

    assert fabric.publish("tasks", "task.updated", {"id": "t1"}) == 1

    assert [e.type for e in tasks.drain()] == ["task.updated"]
    assert agents.drain() == []


@pytest.mark.asyncio
async def test_publish_without_subscribers() -> None:
    fabric = NotificationFabric()
    assert fabric.publish("system", "system.log", {"message": "hi"}) == 0


@pytest.mark.asyncio
async def test_subscribe_is_idempotent() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["tasks"])
    fabric.subscribe(observer, ["tasks", "tasks"])

    fabric.publish("tasks", "task.updated", {})
    assert len(observer.drain()) == 1
    assert fabric.subscribers("tasks") == [observer]


@pytest.mark.asyncio
async def test_unsubscribe_all_topics_stops_delivery() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["agents", "tasks"])
    fabric.unsubscribe(observer, ["agents", "tasks"])

    fabric.publish("agents", "agent.status", {})
    fabric.publish("tasks", "task.updated", {})

    assert observer.drain() == []
    assert fabric.subscriptions(observer) == set()
    assert fabric.topics() == []


@pytest.mark.asyncio
async def test_unsubscribe_unknown_topic_is_noop() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["tasks"])

    fabric.unsubscribe(observer, ["never-joined"])
    fabric.unsubscribe(fabric.observer(), ["tasks"])

    assert fabric.subscriptions(observer) == {"tasks"}
    assert fabric.publish("tasks", "task.updated", {}) == 1


@pytest.mark.asyncio
async def test_disconnect_drops_every_membership() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["agents", "tasks", agent_topic("main")])

    fabric.disconnect(observer)

    assert observer.closed
    assert fabric.topics() == []
    assert fabric.publish("agents", "agent.status", {}) == 0


@pytest.mark.asyncio
async def test_closed_observer_cannot_resubscribe() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.disconnect(observer)

    fabric.subscribe(observer, ["tasks"])

    assert fabric.topics() == []
    assert fabric.publish("tasks", "task.updated", {}) == 0


# ============================================================
#  Delivery
# ============================================================


@pytest.mark.asyncio
async def test_events_arrive_in_publish_order() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["tasks"])

    for i in range(5):
        fabric.publish("tasks", "task.updated", {"seq": i})

    assert [e.data["seq"] for e in observer.drain()] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_payload_is_snapshotted_at_publish() -> None:
    """Mutating the payload after publish does not change the event."""
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["tasks"])

    payload = {"id": "t1", "logs": ["started"]}
    fabric.publish("tasks", "task.updated", payload)
    payload["logs"].append("late")

    event = observer.get_nowait()
    assert event.topic == "tasks"
    assert event.data == {"id": "t1", "logs": ["started"]}


@pytest.mark.asyncio
async def test_overflow_drops_oldest() -> None:
    fabric = NotificationFabric(max_queue=2)
    observer = fabric.observer()
    fabric.subscribe(observer, ["tasks"])

    for i in range(3):
        fabric.publish("tasks", "task.updated", {"seq": i})

    assert [e.data["seq"] for e in observer.drain()] == [1, 2]
    assert observer.dropped == 1
    assert not observer.closed


@pytest.mark.asyncio
async def test_overflow_can_disconnect() -> None:
    """With the disconnect policy a full observer is dropped entirely."""
    fabric = NotificationFabric(max_queue=2, overflow_policy="disconnect")
    slow = fabric.observer()
    fast = fabric.observer()
    fabric.subscribe(slow, ["tasks"])
    fabric.subscribe(fast, ["tasks"])

    fabric.publish("tasks", "task.updated", {"seq": 0})
    fabric.publish("tasks", "task.updated", {"seq": 1})
    fast.drain()

    assert fabric.publish("tasks", "task.updated", {"seq": 2}) == 1
    assert slow.closed
    assert fabric.subscribers("tasks") == [fast]


@pytest.mark.asyncio
async def test_observer_async_get() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["system"])
    fabric.publish("system", "system.alert", {"level": "warning"})

    event = await observer.get()
    assert event.type == "system.alert"
    assert observer.pending() == 0


# ============================================================
#  Commands
# ============================================================


@pytest.mark.asyncio
async def test_route_command_reaches_agent_topic_only() -> None:
    fabric = NotificationFabric()
    main = fabric.observer()
    other = fabric.observer()
    fabric.subscribe(main, [agent_topic("main")])
    fabric.subscribe(other, [agent_topic("other"), "agents"])

    assert fabric.route_command("main", "restart", {"force": True}) == 1

    event = main.get_nowait()
    assert event.type == "command"
    assert event.topic == "agent:main"
    assert event.data == {"agentId": "main", "command": "restart", "payload": {"force": True}}
    assert other.drain() == []


@pytest.mark.asyncio
async def test_send_command_requires_known_agent(monitor: AgentMonitor) -> None:
    with pytest.raises(NotFoundError):
        monitor.send_command("ghost", "restart")

    await monitor.agents.register(id="main")
    observer = monitor.fabric.observer()
    monitor.fabric.subscribe(observer, [agent_topic("main")])

    assert monitor.send_command("main", "pause") == 1
    assert observer.get_nowait().data == {"agentId": "main", "command": "pause"}


# ============================================================
#  Callback observers
# ============================================================


@pytest.mark.asyncio
async def test_attach_dispatches_to_handler() -> None:
    fabric = NotificationFabric()
    received = []

    async def on_event(event) -> None:
        received.append(event.data["seq"])

    fabric.attach(on_event, ["tasks"])
    fabric.publish("tasks", "task.updated", {"seq": 1})
    fabric.publish("tasks", "task.updated", {"seq": 2})

    await wait_until(lambda: len(received) == 2)
    assert received == [1, 2]
    await fabric.close()


@pytest.mark.asyncio
async def test_handler_errors_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    """A failing handler does not stop later events from being dispatched."""
    fabric = NotificationFabric()
    received = []

    def on_event(event) -> None:
        if event.data["seq"] == 1:
            raise RuntimeError("handler broke")
        received.append(event.data["seq"])

    fabric.attach(on_event, ["tasks"])
    with caplog.at_level(logging.ERROR, logger="agent_monitor.events"):
        fabric.publish("tasks", "task.updated", {"seq": 1})
        fabric.publish("tasks", "task.updated", {"seq": 2})
        await wait_until(lambda: received == [2])

    assert "Error in event handler" in caplog.text
    await fabric.close()


@pytest.mark.asyncio
async def test_close_disconnects_everyone() -> None:
    fabric = NotificationFabric()
    observer = fabric.observer()
    fabric.subscribe(observer, ["agents"])
    attached = fabric.attach(lambda event: None, ["tasks"])

    await fabric.close()

    assert observer.closed and attached.closed
    assert fabric.topics() == []


# ============================================================
#  Engine integration
# ============================================================


@pytest.mark.asyncio
async def test_task_flow_events(monitor: AgentMonitor) -> None:
    """A task observer sees each transition; agent events stay on their topic."""
    observer = monitor.fabric.observer()
    monitor.fabric.subscribe(observer, ["tasks"])

    await monitor.agents.register(id="main")
    task = await monitor.tasks.create(agent_id="main", name="x", type="test")
    await monitor.tasks.start(task.id)
    await monitor.tasks.update_progress(task.id, 50, "halfway")
    await monitor.tasks.complete(task.id, {"ok": True})

    events = observer.drain()
    assert [e.type for e in events] == ["task.updated"] * 4
    assert [e.data["status"] for e in events] == ["pending", "running", "running", "completed"]
    assert events[-1].data["agentId"] == "main"
    assert events[-1].data["result"] == {"ok": True}
    assert "completedAt" in events[-1].data


@pytest.mark.asyncio
async def test_agent_events_carry_agent_id(monitor: AgentMonitor) -> None:
    observer = monitor.fabric.observer()
    monitor.fabric.subscribe(observer, ["agents"])

    await monitor.agents.register(id="main")
    await monitor.agents.start("main")
    await monitor.agents.heartbeat("main", {"cpu": 40})

    events = observer.drain()
    assert [e.type for e in events] == ["agent.status"] * 3
    assert all(e.data["agentId"] == "main" for e in events)
    assert events[1].data["status"] == "online"
    assert events[2].data["resources"]["cpu"] == 40
    assert "todayStats" not in events[2].data


@pytest.mark.asyncio
async def test_message_and_system_events(monitor: AgentMonitor) -> None:
    messages = monitor.fabric.observer()
    system = monitor.fabric.observer()
    monitor.fabric.subscribe(messages, ["messages"])
    monitor.fabric.subscribe(system, ["system"])

    message = await monitor.messages.accept(agent_id="main", channel="telegram", direction="incoming", content="hi")
    await monitor.messages.complete_processing(message.id)
    await monitor.system.log("info", "Gateway started", source="gateway")
    await monitor.system.alert("warning", "High CPU usage")

    assert [e.type for e in messages.drain()] == ["message.new", "message.updated"]
    assert [e.type for e in system.drain()] == ["system.log", "system.alert"]


@pytest.mark.asyncio
async def test_unserializable_result_still_commits(
    monitor: AgentMonitor, caplog: pytest.LogCaptureFixture
) -> None:
    """A publish failure is logged; the task stays completed."""
    await monitor.agents.register(id="main")
    task = await monitor.tasks.create(agent_id="main", name="x")
    await monitor.tasks.start(task.id)
    observer = monitor.fabric.observer()
    monitor.fabric.subscribe(observer, ["tasks"])

    with caplog.at_level(logging.ERROR, logger="agent_monitor.lifecycle"):
        done = await monitor.tasks.complete(task.id, object())

    assert done.status == "completed"
    assert monitor.tasks.get(task.id).status == "completed"
    assert "Failed to publish task.updated" in caplog.text
    assert observer.drain() == []
