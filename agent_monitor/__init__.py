"""
Agent monitor.

Tracks the operational state of a fleet of autonomous agents (their
lifecycle, tasks, channel messages and skill calls) and streams every
state change to subscribed observers in real time.

Example::

    from agent_monitor import AgentMonitor

    async with AgentMonitor() as monitor:
        await monitor.agents.register(id="main", model="MiniMax-M2.5")
        await monitor.agents.start("main")
        await monitor.agents.heartbeat("main", {"cpu": 12.5})

        task = await monitor.tasks.create(agent_id="main", name="Upload logs")
        await monitor.tasks.start(task.id)
        await monitor.tasks.update_progress(task.id, 50, "halfway")
        await monitor.tasks.complete(task.id, {"ok": True})

        print(monitor.stats.task_stats())
"""

from agent_monitor.monitor import AgentMonitor
from agent_monitor.errors import (
    MonitorError,
    NotFoundError,
    InvalidTransitionError,
    ValidationError,
    ConflictError,
)
from agent_monitor.events import NotificationFabric, Observer, agent_topic
from agent_monitor.lifecycle import LifecycleEngine
from agent_monitor.scheduling import CancellationToken, Scheduler
from agent_monitor.stats import StatisticsAggregator
from agent_monitor.store import EntityStore
from agent_monitor.bridges import WebSocketBridge, WebhookForwarder
from agent_monitor.types import (
    MonitorConfig,
    MonitorEvent,
    Agent,
    AgentCreate,
    AgentUpdate,
    AgentConfig,
    ResourceGauges,
    ResourceUpdate,
    TodayStats,
    Task,
    TaskCreate,
    TaskLog,
    Message,
    MessageCreate,
    Skill,
    SkillCall,
    SkillCreate,
    SkillStats,
    LogEntry,
    Alert,
)

__all__ = [
    "AgentMonitor",
    "MonitorError",
    "NotFoundError",
    "InvalidTransitionError",
    "ValidationError",
    "ConflictError",
    "NotificationFabric",
    "Observer",
    "agent_topic",
    "LifecycleEngine",
    "CancellationToken",
    "Scheduler",
    "StatisticsAggregator",
    "EntityStore",
    "WebSocketBridge",
    "WebhookForwarder",
    "MonitorConfig",
    "MonitorEvent",
    "Agent",
    "AgentCreate",
    "AgentUpdate",
    "AgentConfig",
    "ResourceGauges",
    "ResourceUpdate",
    "TodayStats",
    "Task",
    "TaskCreate",
    "TaskLog",
    "Message",
    "MessageCreate",
    "Skill",
    "SkillCall",
    "SkillCreate",
    "SkillStats",
    "LogEntry",
    "Alert",
]

__version__ = "0.1.0"
