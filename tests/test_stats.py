"""
Unit tests for the statistics aggregator.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from agent_monitor import AgentMonitor
from agent_monitor.stats import response_times
from conftest import START, ManualClock


async def _message(monitor: AgentMonitor, direction: str, seconds: float, agent_id: str = "main", **fields):
    return await monitor.messages.accept(
        agent_id=agent_id,
        channel=fields.pop("channel", "telegram"),
        direction=direction,
        content=fields.pop("content", "..."),
        timestamp=START + timedelta(seconds=seconds),
        **fields,
    )


# ============================================================
#  Response time
# ============================================================


@pytest.mark.asyncio
async def test_response_time_pairs_next_reply(monitor: AgentMonitor) -> None:
    """An incoming message pairs with the same agent's reply."""
    await _message(monitor, "incoming", 0)
    await _message(monitor, "outgoing", 1, agent_id="other")
    await _message(monitor, "outgoing", 2)

    assert response_times(monitor.messages.list()) == [2000]
    assert monitor.stats.message_stats()["avgResponseTime"] == 2000


@pytest.mark.asyncio
async def test_response_time_uses_store_order(monitor: AgentMonitor) -> None:
    """The first qualifying reply in store order wins, not the closest one."""
    await _message(monitor, "incoming", 0)
    await _message(monitor, "outgoing", 10)
    await _message(monitor, "outgoing", 3)

    assert response_times(monitor.messages.list()) == [10000]


@pytest.mark.asyncio
async def test_response_time_window(monitor: AgentMonitor) -> None:
    """Replies outside (0, 60s] are not counted."""
    await _message(monitor, "outgoing", 0)
    await _message(monitor, "incoming", 0)
    await _message(monitor, "outgoing", 61)

    assert response_times(monitor.messages.list()) == []
    assert monitor.stats.message_stats()["avgResponseTime"] is None


@pytest.mark.asyncio
async def test_response_window_is_configurable(clock: ManualClock) -> None:
    monitor = AgentMonitor(clock=clock, response_window_ms=120000)
    await _message(monitor, "incoming", 0)
    await _message(monitor, "outgoing", 90)

    assert monitor.stats.message_stats()["avgResponseTime"] == 90000


# ============================================================
#  Messages
# ============================================================


@pytest.mark.asyncio
async def test_message_stats(monitor: AgentMonitor, clock: ManualClock) -> None:
    first = await monitor.messages.accept(agent_id="main", channel="telegram", direction="incoming", content="hi")
    second = await monitor.messages.accept(
        agent_id="main", channel="slack", direction="outgoing", content="/status", contentType="command"
    )
    await monitor.messages.accept(agent_id="other", channel="telegram", direction="system", content="boot")

    clock.advance(seconds=1)
    await monitor.messages.complete_processing(first.id)
    clock.advance(seconds=2)
    await monitor.messages.fail_processing(second.id)

    stats = monitor.stats.message_stats()
    assert stats["total"] == 3
    assert stats["byChannel"] == {"telegram": 2, "slack": 1}
    assert stats["byDirection"] == {"incoming": 1, "outgoing": 1, "system": 1}
    assert stats["byContentType"] == {"text": 2, "command": 1}
    assert stats["byProcessingStatus"] == {"completed": 1, "failed": 1, "pending": 1}
    assert stats["avgProcessingTime"] == 2000

    assert monitor.stats.message_stats(agent_id="other")["total"] == 1


def test_empty_stats(monitor: AgentMonitor) -> None:
    overview = monitor.stats.overview()

    assert overview["agents"]["total"] == 0
    assert overview["tasks"]["successRate"] == 0.0
    assert overview["messages"]["avgProcessingTime"] is None
    assert overview["skills"]["topSkills"] == []
    assert overview["alerts"]["unacknowledged"] == 0


# ============================================================
#  Tasks / agents
# ============================================================


@pytest.mark.asyncio
async def test_task_stats(monitor: AgentMonitor) -> None:
    await monitor.agents.register(id="main")
    for name, outcome in [("a", "complete"), ("b", "complete"), ("c", "fail")]:
        task = await monitor.tasks.create(agent_id="main", name=name, type="deploy")
        await monitor.tasks.start(task.id)
        await getattr(monitor.tasks, outcome)(task.id)
    await monitor.tasks.create(agent_id="main", name="d", type="test")

    stats = monitor.stats.task_stats()
    assert stats["total"] == 4
    assert stats["byStatus"] == {"completed": 2, "failed": 1, "pending": 1}
    assert stats["byType"] == {"deploy": 3, "test": 1}
    assert stats["successRate"] == 66.7


@pytest.mark.asyncio
async def test_agent_stats(monitor: AgentMonitor) -> None:
    await monitor.agents.register(id="main")
    await monitor.agents.register(id="backup")
    await monitor.agents.register(id="broken")
    await monitor.agents.start("main")
    await monitor.agents.set_status("broken", "error")
    await monitor.messages.accept(agent_id="main", channel="telegram", direction="incoming", content="hi")
    await monitor.messages.accept(agent_id="backup", channel="telegram", direction="incoming", content="hi")

    stats = monitor.stats.agent_stats()
    assert stats["total"] == 3
    assert stats["byStatus"] == {"online": 1, "offline": 1, "error": 1}
    assert stats["online"] == 1
    assert stats["todayStats"]["messagesReceived"] == 2
    assert stats["todayStats"]["tasksCompleted"] == 0


# ============================================================
#  Skills
# ============================================================


@pytest.mark.asyncio
async def test_skill_stats(monitor: AgentMonitor) -> None:
    await monitor.skills.register(name="browser", category="automation")
    await monitor.skills.register(name="github", category="dev")
    await monitor.skills.register(name="notion", category="dev")
    for success in (True, True, False):
        await monitor.skills.record_call("browser", success=success, execution_time=100)
    await monitor.skills.record_call("github", success=True, execution_time=50)

    stats = monitor.stats.skill_stats(top=2)
    assert stats["totalSkills"] == 3
    assert stats["totalCalls"] == 4
    assert stats["successRate"] == 75.0
    assert stats["byCategory"] == {"automation": 1, "dev": 2}
    assert [s["name"] for s in stats["topSkills"]] == ["browser", "github"]
    assert stats["topSkills"][0]["totalCalls"] == 3


# ============================================================
#  Logs / alerts
# ============================================================


@pytest.mark.asyncio
async def test_log_and_alert_stats(monitor: AgentMonitor) -> None:
    await monitor.system.log("INFO", "Gateway started", source="gateway")
    await monitor.system.log("WARN", "Browser needs pairing", source="browser")
    await monitor.system.log("INFO", "Telegram connected", source="telegram")
    first = await monitor.system.alert("warning", "High CPU usage")
    await monitor.system.alert("critical", "Disk full")
    await monitor.system.acknowledge(first.id)

    logs = monitor.stats.log_stats()
    assert logs["total"] == 3
    assert logs["byLevel"] == {"INFO": 2, "WARN": 1}

    alerts = monitor.stats.alert_stats()
    assert alerts == {"total": 2, "unacknowledged": 1, "byLevel": {"warning": 1, "critical": 1}}
