"""
Pydantic models for the agent monitor.

Python attributes are snake_case; every field carries the camelCase alias
used on the wire (``createdAt``, ``lastHeartbeat``...). Models accept either
spelling and dump with ``by_alias=True`` when an event is published.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


AgentStatus = Literal["online", "offline", "busy", "error", "idle"]
TaskStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
TaskLogLevel = Literal["info", "warn", "error", "debug"]
MessageDirection = Literal["incoming", "outgoing", "system"]
ContentType = Literal["text", "image", "file", "command"]
ProcessingStatus = Literal["pending", "processing", "completed", "failed"]
LogLevel = Literal["INFO", "WARN", "ERROR", "DEBUG"]
AlertLevel = Literal["info", "warning", "error", "critical"]
OverflowPolicy = Literal["drop_oldest", "disconnect"]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
TERMINAL_PROCESSING_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


# ============================================================
#  Configuration
# ============================================================


class MonitorConfig(BaseModel):
    """Tunables for a monitor instance."""

    observer_queue_size: int = Field(256, gt=0)
    overflow_policy: OverflowPolicy = "drop_oldest"
    log_capacity: int = Field(10000, gt=0)
    recent_calls_limit: int = Field(100, gt=0)
    response_window_ms: int = Field(60000, gt=0)
    heartbeat_grace: float = Field(3.0, gt=0)
    cancel_tasks_on_stop: bool = True


# ============================================================
#  Agents
# ============================================================


class ResourceGauges(BaseModel):
    """Point-in-time resource usage reported by an agent."""

    cpu: float = Field(0.0, ge=0, le=100)
    memory: float = Field(0.0, ge=0)
    disk: float = Field(0.0, ge=0)


class ResourceUpdate(BaseModel):
    """Partial resource report carried by a heartbeat."""

    cpu: float | None = Field(None, ge=0, le=100)
    memory: float | None = Field(None, ge=0)
    disk: float | None = Field(None, ge=0)

    model_config = {"extra": "forbid"}


class TodayStats(BaseModel):
    """Per-day counters. Only ever incremented here."""

    tasks_completed: int = Field(0, alias="tasksCompleted")
    tasks_failed: int = Field(0, alias="tasksFailed")
    messages_received: int = Field(0, alias="messagesReceived")
    messages_sent: int = Field(0, alias="messagesSent")
    skills_called: int = Field(0, alias="skillsCalled")

    model_config = {"populate_by_name": True}


class AgentConfig(BaseModel):
    """Operator-set agent configuration."""

    soul_md: str | None = Field(None, alias="soulMd")
    heartbeat_interval: int = Field(30, gt=0, alias="heartbeatInterval")
    auto_approve: bool = Field(False, alias="autoApprove")

    model_config = {"populate_by_name": True}


class Agent(BaseModel):
    """A tracked agent."""

    id: str
    name: str | None = None
    status: AgentStatus = "offline"
    model: str | None = None
    model_provider: str | None = Field(None, alias="modelProvider")
    channels: list[str] = []
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    last_heartbeat: datetime | None = Field(None, alias="lastHeartbeat")
    uptime: float = 0.0
    resources: ResourceGauges = Field(default_factory=ResourceGauges)
    today_stats: TodayStats = Field(default_factory=TodayStats, alias="todayStats")
    current_task: str | None = Field(None, alias="currentTask")
    config: AgentConfig = Field(default_factory=AgentConfig)

    model_config = {"populate_by_name": True}


class AgentCreate(BaseModel):
    """Fields accepted when registering an agent."""

    id: str | None = Field(None, min_length=1)
    name: str | None = None
    model: str | None = None
    model_provider: str | None = Field(None, alias="modelProvider")
    channels: list[str] = []
    resources: ResourceGauges | None = None
    config: AgentConfig | None = None

    model_config = {"populate_by_name": True, "extra": "forbid"}


class AgentUpdate(BaseModel):
    """Fields an operator may change on an existing agent."""

    name: str | None = None
    model: str | None = None
    model_provider: str | None = Field(None, alias="modelProvider")
    channels: list[str] | None = None
    config: AgentConfig | None = None

    model_config = {"populate_by_name": True, "extra": "forbid"}


# ============================================================
#  Tasks
# ============================================================


class TaskLog(BaseModel):
    """A single task log line."""

    timestamp: datetime
    level: TaskLogLevel
    message: str


class Task(BaseModel):
    """A unit of work owned by one agent."""

    id: str
    agent_id: str = Field(alias="agentId")
    name: str
    type: str = "task"
    description: str | None = None
    estimated_duration: int | None = Field(None, alias="estimatedDuration")
    status: TaskStatus = "pending"
    progress: int = Field(0, ge=0, le=100)
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    started_at: datetime | None = Field(None, alias="startedAt")
    completed_at: datetime | None = Field(None, alias="completedAt")
    result: Any = None
    error: str | None = None
    logs: list[TaskLog] = []

    model_config = {"populate_by_name": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class TaskCreate(BaseModel):
    """Fields accepted when creating a task."""

    id: str | None = Field(None, min_length=1)
    agent_id: str = Field(alias="agentId", min_length=1)
    name: str = Field(min_length=1)
    type: str = "task"
    description: str | None = None
    estimated_duration: int | None = Field(None, ge=0, alias="estimatedDuration")

    model_config = {"populate_by_name": True, "extra": "forbid"}


# ============================================================
#  Messages
# ============================================================


class Message(BaseModel):
    """A message seen on one of an agent's channels."""

    id: str
    agent_id: str = Field(alias="agentId")
    channel: str
    direction: MessageDirection
    content: str
    content_type: ContentType = Field("text", alias="contentType")
    sender: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    processing_status: ProcessingStatus = Field("pending", alias="processingStatus")
    processing_time: float | None = Field(None, alias="processingTime")
    related_task_id: str | None = Field(None, alias="relatedTaskId")

    model_config = {"populate_by_name": True}


class MessageCreate(BaseModel):
    """Fields accepted when a message is recorded."""

    id: str | None = Field(None, min_length=1)
    agent_id: str = Field(alias="agentId", min_length=1)
    channel: str = Field(min_length=1)
    direction: MessageDirection
    content: str
    content_type: ContentType = Field("text", alias="contentType")
    sender: str | None = None
    timestamp: datetime | None = None
    related_task_id: str | None = Field(None, alias="relatedTaskId")

    model_config = {"populate_by_name": True, "extra": "forbid"}

    @field_validator("timestamp")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are taken to be UTC."""
        if v is None:
            return v
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


# ============================================================
#  Skills
# ============================================================


class SkillStats(BaseModel):
    """Cumulative invocation statistics of a skill."""

    total_calls: int = Field(0, alias="totalCalls")
    success_calls: int = Field(0, alias="successCalls")
    failed_calls: int = Field(0, alias="failedCalls")
    avg_execution_time: float = Field(0.0, alias="avgExecutionTime")

    model_config = {"populate_by_name": True}


class SkillCall(BaseModel):
    """One recorded skill invocation."""

    id: str
    skill_id: str = Field(alias="skillId")
    agent_id: str | None = Field(None, alias="agentId")
    success: bool
    execution_time: float = Field(alias="executionTime")
    timestamp: datetime = Field(default_factory=_utcnow)
    params: dict[str, Any] = {}
    result: Any = None
    error: str | None = None

    model_config = {"populate_by_name": True}


class Skill(BaseModel):
    """A named capability whose calls are tracked."""

    id: str
    name: str
    description: str = ""
    category: str = "tool"
    stats: SkillStats = Field(default_factory=SkillStats)
    recent_calls: list[SkillCall] = Field(default_factory=list, alias="recentCalls")

    model_config = {"populate_by_name": True}


class SkillCreate(BaseModel):
    """Fields accepted when registering a skill."""

    id: str | None = Field(None, min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    category: str = "tool"

    model_config = {"populate_by_name": True, "extra": "forbid"}


# ============================================================
#  System
# ============================================================


class LogEntry(BaseModel):
    """A system log line."""

    id: str
    level: LogLevel
    message: str
    source: str
    timestamp: datetime = Field(default_factory=_utcnow)
    agent_id: str | None = Field(None, alias="agentId")

    model_config = {"populate_by_name": True}


class Alert(BaseModel):
    """An operator-facing alert."""

    id: str
    level: AlertLevel
    message: str
    source: str = "system"
    agent_id: str | None = Field(None, alias="agentId")
    timestamp: datetime = Field(default_factory=_utcnow)
    acknowledged: bool = False
    acknowledged_by: str | None = Field(None, alias="acknowledgedBy")
    acknowledged_at: datetime | None = Field(None, alias="acknowledgedAt")

    model_config = {"populate_by_name": True}


# ============================================================
#  Events
# ============================================================


class MonitorEvent(BaseModel):
    """An event delivered to observers.

    Event types:
    - agent.status: agent lifecycle change or heartbeat delta
    - task.updated: any task transition
    - message.new, message.updated: message recorded / processed
    - agent.deleted, task.deleted, message.deleted: entity removed
    - system.log, system.alert: log lines and alerts
    - command: point-to-point command on ``agent:<id>``
    """

    type: str
    topic: str
    data: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)
