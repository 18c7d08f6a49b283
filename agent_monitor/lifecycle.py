"""
Lifecycle engine for agents, tasks, messages, skills and system records.

The engine is the only writer of agent status, task status and logs, and
message processing status. Each operation is a coroutine that serializes on
a per-entity ``asyncio.Lock`` (agent locks are always taken before task or
skill locks), mutates the :class:`~agent_monitor.store.EntityStore`, then
publishes the result through the
:class:`~agent_monitor.events.NotificationFabric`. A publish failure is
logged and never undoes a committed mutation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar, get_args

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agent_monitor.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from agent_monitor.events import (
    TOPIC_AGENTS,
    TOPIC_MESSAGES,
    TOPIC_SYSTEM,
    TOPIC_TASKS,
    NotificationFabric,
)
from agent_monitor.scheduling import CancellationToken, Clock, Scheduler, utcnow
from agent_monitor.store import EntityStore
from agent_monitor.types import (
    TERMINAL_PROCESSING_STATUSES,
    Agent,
    AgentCreate,
    AgentStatus,
    AgentUpdate,
    Alert,
    AlertLevel,
    LogEntry,
    LogLevel,
    Message,
    MessageCreate,
    MonitorConfig,
    ResourceUpdate,
    Skill,
    SkillCall,
    SkillCreate,
    Task,
    TaskCreate,
    TaskLog,
    TaskLogLevel,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Executes a skill: receives the call params, returns the call result
SkillExecutor = Callable[[dict[str, Any]], Awaitable[Any] | Any]

_AGENT_STATUSES = frozenset(get_args(AgentStatus))
_TASK_LOG_LEVELS = frozenset(get_args(TaskLogLevel))
_LOG_LEVELS = frozenset(get_args(LogLevel))
_ALERT_LEVELS = frozenset(get_args(AlertLevel))


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _parse(model: type[M], data: M | dict[str, Any]) -> M:
    """Coerce caller input into ``model``, mapping pydantic failures."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__}: {exc}") from exc


class _EngineCore:
    """State shared by the sub-managers."""

    def __init__(
        self,
        store: EntityStore,
        fabric: NotificationFabric,
        scheduler: Scheduler,
        config: MonitorConfig,
        clock: Clock,
    ) -> None:
        self.store = store
        self.fabric = fabric
        self.scheduler = scheduler
        self.config = config
        self.clock = clock
        # Only keys with a holder or waiter have an entry
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Counter[tuple[str, str]] = Counter()

    def now(self) -> datetime:
        return self.clock()

    def stamp_after(self, earlier: datetime | None) -> datetime:
        """Current time, nudged so it lands strictly after ``earlier``."""
        now = self.clock()
        if earlier is not None and now <= earlier:
            now = earlier + timedelta(microseconds=1)
        return now

    @contextlib.asynccontextmanager
    async def locked(self, *keys: tuple[str, str]) -> AsyncIterator[None]:
        """Hold the locks for ``keys`` in the order given.

        A lock is dropped as soon as its last user releases it.
        """
        for key in keys:
            self._lock_users[key] += 1
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
        try:
            async with contextlib.AsyncExitStack() as stack:
                for key in keys:
                    await stack.enter_async_context(self._locks[key])
                yield
        finally:
            for key in keys:
                self._lock_users[key] -= 1
                if self._lock_users[key] <= 0:
                    del self._lock_users[key]
                    del self._locks[key]

    def lock_count(self) -> int:
        return len(self._locks)

    def emit(self, topic: str, event_name: str, payload: Any) -> None:
        try:
            self.fabric.publish(topic, event_name, payload)
        except Exception:
            logger.exception("Failed to publish %s on %s", event_name, topic)

    def emit_agent(self, agent: Agent) -> None:
        payload = {"agentId": agent.id, **agent.model_dump(mode="json", by_alias=True)}
        self.emit(TOPIC_AGENTS, "agent.status", payload)


# ============================================================
#  Sub-managers
# ============================================================


class _AgentManager:
    """Agent registration, lifecycle and heartbeats."""

    def __init__(self, core: _EngineCore) -> None:
        self._core = core
        self._store = core.store
        # Set by LifecycleEngine after construction
        self._tasks: _TaskManager | None = None
        self._system: _SystemManager | None = None

    def get(self, agent_id: str) -> Agent:
        return self._store.get("agents", agent_id)

    def list(self, status: str | None = None) -> list[Agent]:
        return list(self._store.list("agents", lambda a: status is None or a.status == status))

    async def register(self, data: AgentCreate | dict[str, Any] | None = None, **fields: Any) -> Agent:
        """Register a new agent. It starts out ``offline``."""
        body = _parse(AgentCreate, data if data is not None else fields)
        now = self._core.now()
        agent = Agent(
            id=body.id or _new_id("agent"),
            name=body.name,
            model=body.model,
            model_provider=body.model_provider,
            channels=list(dict.fromkeys(body.channels)),
            created_at=now,
            last_heartbeat=now,
            resources=body.resources or {},
            config=body.config or {},
        )
        agent = self._store.insert("agents", agent)
        logger.info("Registered agent %s", agent.id)
        self._core.emit_agent(agent)
        return agent

    async def update(self, agent_id: str, data: AgentUpdate | dict[str, Any] | None = None, **fields: Any) -> Agent:
        """Change descriptive fields or config. Omitted fields stay as they are."""
        changes = _parse(AgentUpdate, data if data is not None else fields)

        def patch(agent: Agent) -> Agent:
            values = changes.model_dump(exclude_unset=True, exclude={"config"})
            if values.get("channels") is not None:
                values["channels"] = list(dict.fromkeys(values["channels"]))
            if "config" in changes.model_fields_set and changes.config is not None:
                values["config"] = agent.config.model_copy(
                    update=changes.config.model_dump(exclude_unset=True)
                )
            return agent.model_copy(update=values)

        async with self._core.locked(("agents", agent_id)):
            agent = self._store.update("agents", agent_id, patch)
        self._core.emit_agent(agent)
        return agent

    async def delete(self, agent_id: str) -> Agent:
        """Remove an agent together with the tasks it owns."""
        assert self._tasks is not None
        async with self._core.locked(("agents", agent_id)):
            agent = self._store.delete("agents", agent_id)
            removed = [task.id for task in self._store.list("tasks", lambda t: t.agent_id == agent_id)]
            for task_id in removed:
                self._tasks._discard(task_id)
        logger.info("Deleted agent %s with %d task(s)", agent_id, len(removed))
        for task_id in removed:
            self._core.emit(TOPIC_TASKS, "task.deleted", {"id": task_id, "agentId": agent_id})
        self._core.emit(TOPIC_AGENTS, "agent.deleted", {"agentId": agent_id})
        return agent

    async def start(self, agent_id: str) -> Agent:
        """Bring an agent online. Uptime restarts when it was offline."""

        def patch(agent: Agent) -> Agent:
            uptime = 0.0 if agent.status == "offline" else agent.uptime
            return agent.model_copy(
                update={"status": "online", "last_heartbeat": self._core.now(), "uptime": uptime}
            )

        async with self._core.locked(("agents", agent_id)):
            agent = self._store.update("agents", agent_id, patch)
        logger.info("Agent %s started", agent_id)
        self._core.emit_agent(agent)
        return agent

    async def stop(self, agent_id: str) -> Agent:
        """Take an agent offline and clear its current task.

        With ``cancel_tasks_on_stop`` the in-flight task is cancelled;
        otherwise it keeps its status and is only unlinked from the agent.
        """
        assert self._tasks is not None
        cancelled: Task | None = None
        async with self._core.locked(("agents", agent_id)):
            current = self.get(agent_id).current_task
            if current and self._core.config.cancel_tasks_on_stop:
                async with self._core.locked(("tasks", current)):
                    task = self._store.find("tasks", current)
                    if task is not None and not task.is_terminal:
                        cancelled = self._tasks._cancel(task, "agent stopped")
            agent = self._store.update(
                "agents",
                agent_id,
                lambda a: a.model_copy(update={"status": "offline", "current_task": None}),
            )
        logger.info("Agent %s stopped", agent_id)
        if cancelled is not None:
            self._core.emit(TOPIC_TASKS, "task.updated", cancelled)
        self._core.emit_agent(agent)
        return agent

    async def restart(self, agent_id: str) -> Agent:
        """Mark an agent busy while it restarts; uptime starts over."""

        def patch(agent: Agent) -> Agent:
            return agent.model_copy(
                update={"status": "busy", "uptime": 0.0, "last_heartbeat": self._core.now()}
            )

        async with self._core.locked(("agents", agent_id)):
            agent = self._store.update("agents", agent_id, patch)
        logger.info("Agent %s restarting", agent_id)
        self._core.emit_agent(agent)
        return agent

    async def set_status(self, agent_id: str, status: str) -> Agent:
        if status not in _AGENT_STATUSES:
            raise ValidationError(f"Unknown agent status: {status}")
        async with self._core.locked(("agents", agent_id)):
            agent = self._store.update(
                "agents", agent_id, lambda a: a.model_copy(update={"status": status})
            )
        self._core.emit_agent(agent)
        return agent

    async def heartbeat(
        self,
        agent_id: str,
        resources: ResourceUpdate | dict[str, Any] | None = None,
    ) -> Agent:
        """Refresh liveness and merge any reported resource gauges.

        Gauges left out of ``resources`` keep their previous values. While
        the agent is running, the time since its last heartbeat is added to
        its uptime.
        """
        gauges = _parse(ResourceUpdate, resources) if resources is not None else None

        def patch(agent: Agent) -> Agent:
            now = self._core.now()
            uptime = agent.uptime
            if agent.status not in ("offline", "error") and agent.last_heartbeat is not None:
                uptime += max((now - agent.last_heartbeat).total_seconds(), 0.0)
            values: dict[str, Any] = {"last_heartbeat": now, "uptime": uptime}
            if gauges is not None:
                values["resources"] = agent.resources.model_copy(
                    update=gauges.model_dump(exclude_none=True)
                )
            return agent.model_copy(update=values)

        async with self._core.locked(("agents", agent_id)):
            agent = self._store.update("agents", agent_id, patch)
        self._core.emit(
            TOPIC_AGENTS,
            "agent.status",
            {
                "agentId": agent.id,
                "status": agent.status,
                "lastHeartbeat": agent.last_heartbeat,
                "uptime": agent.uptime,
                "resources": agent.resources,
            },
        )
        return agent

    def is_fresh(self, agent: Agent, now: datetime | None = None) -> bool:
        """Whether the agent heartbeated within its grace window."""
        if agent.last_heartbeat is None:
            return False
        now = now or self._core.now()
        window = agent.config.heartbeat_interval * self._core.config.heartbeat_grace
        return (now - agent.last_heartbeat).total_seconds() <= window

    async def sweep_stale(self, now: datetime | None = None) -> list[Agent]:
        """Move running agents with overdue heartbeats to ``error``.

        A ``warning`` alert is raised for every agent moved.
        """
        assert self._system is not None
        now = now or self._core.now()
        stale = []
        for candidate in self.list():
            if candidate.status in ("offline", "error") or self.is_fresh(candidate, now):
                continue
            async with self._core.locked(("agents", candidate.id)):
                current = self._store.find("agents", candidate.id)
                if current is None or current.status in ("offline", "error") or self.is_fresh(current, now):
                    continue
                agent = self._store.update(
                    "agents", candidate.id, lambda a: a.model_copy(update={"status": "error"})
                )
            logger.warning("Agent %s missed heartbeats since %s", agent.id, agent.last_heartbeat)
            self._core.emit_agent(agent)
            await self._system.alert(
                "warning",
                f"Agent {agent.id} missed heartbeats since {agent.last_heartbeat.isoformat()}",
                source=agent.id,
                agent_id=agent.id,
            )
            stale.append(agent)
        return stale

    def _count(self, agent_id: str | None, counter: str) -> None:
        """Bump a todayStats counter. Caller holds the agent lock."""
        if agent_id is None or not self._store.contains("agents", agent_id):
            return

        def patch(agent: Agent) -> Agent:
            stats = agent.today_stats.model_copy(
                update={counter: getattr(agent.today_stats, counter) + 1}
            )
            return agent.model_copy(update={"today_stats": stats})

        self._store.update("agents", agent_id, patch)


class _TaskManager:
    """Task state machine: pending → running → completed/failed/cancelled."""

    def __init__(self, core: _EngineCore, agents: _AgentManager) -> None:
        self._core = core
        self._store = core.store
        self._agents = agents
        self._tokens: dict[str, CancellationToken] = {}

    def get(self, task_id: str) -> Task:
        return self._store.get("tasks", task_id)

    def list(self, agent_id: str | None = None, status: str | None = None) -> list[Task]:
        def matches(task: Task) -> bool:
            if agent_id is not None and task.agent_id != agent_id:
                return False
            return status is None or task.status == status

        return list(self._store.list("tasks", matches))

    def token(self, task_id: str) -> CancellationToken:
        """Cancellation token for whatever runs the task."""
        task = self.get(task_id)
        token = self._tokens.get(task_id)
        if token is None:
            token = self._tokens[task_id] = CancellationToken()
            if task.status == "cancelled":
                token.cancel(task.logs[-1].message if task.logs else None)
        return token

    @contextlib.asynccontextmanager
    async def _locked(self, task_id: str) -> AsyncIterator[None]:
        """Lock the owning agent, then the task."""
        agent_id = self.get(task_id).agent_id
        async with self._core.locked(("agents", agent_id), ("tasks", task_id)):
            yield

    def _log(self, task: Task, level: str, message: str, at: datetime | None = None) -> list[TaskLog]:
        return [*task.logs, TaskLog(timestamp=at or self._core.now(), level=level, message=message)]

    def _release_agent(self, task: Task, counter: str | None = None) -> Agent | None:
        """Unlink a finished task from its agent. Caller holds the agent lock."""
        if not self._store.contains("agents", task.agent_id):
            return None
        if counter is not None:
            self._agents._count(task.agent_id, counter)

        def patch(agent: Agent) -> Agent:
            if agent.current_task != task.id:
                return agent
            return agent.model_copy(update={"current_task": None})

        return self._store.update("agents", task.agent_id, patch)

    async def create(self, data: TaskCreate | dict[str, Any] | None = None, **fields: Any) -> Task:
        """Create a ``pending`` task for an existing agent."""
        body = _parse(TaskCreate, data if data is not None else fields)
        if not self._store.contains("agents", body.agent_id):
            raise NotFoundError("Agent", body.agent_id)
        task = Task(
            id=body.id or _new_id("task"),
            agent_id=body.agent_id,
            name=body.name,
            type=body.type,
            description=body.description,
            estimated_duration=body.estimated_duration,
            created_at=self._core.now(),
        )
        task = self._store.insert("tasks", task)
        logger.info("Created task %s for agent %s", task.id, task.agent_id)
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        return task

    async def start(self, task_id: str) -> Task:
        """pending → running. The agent must not be busy with another task."""
        async with self._locked(task_id):
            task = self.get(task_id)
            if task.status != "pending":
                raise InvalidTransitionError("Task", task_id, task.status, "running")
            agent = self._store.find("agents", task.agent_id)
            if agent is not None and agent.current_task and agent.current_task != task_id:
                other = self._store.find("tasks", agent.current_task)
                if other is not None and not other.is_terminal:
                    raise InvalidTransitionError(
                        "Task",
                        task_id,
                        task.status,
                        "running",
                        detail=f"agent {agent.id} is busy with {other.id}",
                    )

            def patch(current: Task) -> Task:
                started = self._core.stamp_after(current.created_at)
                return current.model_copy(
                    update={
                        "status": "running",
                        "started_at": started,
                        "progress": 0,
                        "logs": self._log(current, "info", "task started", started),
                    }
                )

            task = self._store.update("tasks", task_id, patch)
            agent = None
            if self._store.contains("agents", task.agent_id):
                agent = self._store.update(
                    "agents", task.agent_id, lambda a: a.model_copy(update={"current_task": task_id})
                )
        logger.info("Task %s started", task_id)
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        if agent is not None:
            self._core.emit_agent(agent)
        return task

    async def update_progress(self, task_id: str, progress: int | float, message: str | None = None) -> Task:
        """Record progress on a running task, clamped into [0, 100].

        Infinities clamp to the nearest bound; NaN and non-numbers are
        rejected with :class:`~agent_monitor.errors.ValidationError`.
        """
        if isinstance(progress, bool) or not isinstance(progress, (int, float)) or math.isnan(progress):
            raise ValidationError(f"Invalid progress for task {task_id}: {progress!r}")
        clamped = int(max(0, min(100, progress)))
        async with self._core.locked(("tasks", task_id)):
            task = self.get(task_id)
            if task.status != "running":
                raise InvalidTransitionError("Task", task_id, task.status, "running", detail="progress update")

            def patch(current: Task) -> Task:
                values: dict[str, Any] = {"progress": clamped}
                if message:
                    values["logs"] = self._log(current, "info", message)
                return current.model_copy(update=values)

            task = self._store.update("tasks", task_id, patch)
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        return task

    async def append_log(self, task_id: str, level: str, message: str) -> Task:
        """Append a log line. Finished tasks reject further lines."""
        if level not in _TASK_LOG_LEVELS:
            raise ValidationError(f"Unknown task log level: {level}")
        async with self._core.locked(("tasks", task_id)):
            task = self.get(task_id)
            if task.is_terminal:
                raise InvalidTransitionError("Task", task_id, task.status, task.status, detail="log append")
            task = self._store.update(
                "tasks", task_id, lambda t: t.model_copy(update={"logs": self._log(t, level, message)})
            )
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        return task

    async def complete(self, task_id: str, result: Any = None) -> Task:
        """running → completed."""
        async with self._locked(task_id):
            task = self.get(task_id)
            if task.status != "running":
                raise InvalidTransitionError("Task", task_id, task.status, "completed")

            def patch(current: Task) -> Task:
                finished = self._core.stamp_after(current.started_at)
                return current.model_copy(
                    update={
                        "status": "completed",
                        "progress": 100,
                        "completed_at": finished,
                        "result": result,
                        "logs": self._log(current, "info", "task completed", finished),
                    }
                )

            task = self._store.update("tasks", task_id, patch)
            agent = self._release_agent(task, "tasks_completed")
        logger.info("Task %s completed", task_id)
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        if agent is not None:
            self._core.emit_agent(agent)
        return task

    async def fail(self, task_id: str, error: str | None = None) -> Task:
        """running → failed."""
        reason = error or "Unknown error"
        async with self._locked(task_id):
            task = self.get(task_id)
            if task.status != "running":
                raise InvalidTransitionError("Task", task_id, task.status, "failed")

            def patch(current: Task) -> Task:
                finished = self._core.stamp_after(current.started_at)
                return current.model_copy(
                    update={
                        "status": "failed",
                        "completed_at": finished,
                        "error": reason,
                        "logs": self._log(current, "error", f"task failed: {reason}", finished),
                    }
                )

            task = self._store.update("tasks", task_id, patch)
            agent = self._release_agent(task, "tasks_failed")
        logger.info("Task %s failed: %s", task_id, reason)
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        if agent is not None:
            self._core.emit_agent(agent)
        return task

    async def cancel(self, task_id: str, reason: str | None = None) -> Task:
        """pending/running → cancelled."""
        async with self._locked(task_id):
            task = self._cancel(self.get(task_id), reason)
            agent = self._store.find("agents", task.agent_id)
        self._core.emit(TOPIC_TASKS, "task.updated", task)
        if agent is not None:
            self._core.emit_agent(agent)
        return task

    def _cancel(self, task: Task, reason: str | None) -> Task:
        """Cancel under locks already held by the caller."""
        if task.is_terminal:
            raise InvalidTransitionError("Task", task.id, task.status, "cancelled")
        message = reason or "task cancelled"

        def patch(current: Task) -> Task:
            finished = self._core.stamp_after(current.started_at or current.created_at)
            return current.model_copy(
                update={
                    "status": "cancelled",
                    "completed_at": finished,
                    "logs": self._log(current, "warn", message, finished),
                }
            )

        task = self._store.update("tasks", task.id, patch)
        self._release_agent(task)
        token = self._tokens.get(task.id)
        if token is not None:
            token.cancel(message)
        logger.info("Task %s cancelled (%s)", task.id, message)
        return task

    async def delete(self, task_id: str) -> Task:
        async with self._locked(task_id):
            task = self.get(task_id)
            self._discard(task_id)
            self._release_agent(task)
        self._core.emit(TOPIC_TASKS, "task.deleted", {"id": task_id, "agentId": task.agent_id})
        return task

    def _discard(self, task_id: str) -> None:
        self._store.delete("tasks", task_id)
        token = self._tokens.pop(task_id, None)
        if token is not None:
            token.cancel("task deleted")


class _MessageManager:
    """Message intake and processing status: pending → processing → completed/failed."""

    def __init__(self, core: _EngineCore, agents: _AgentManager) -> None:
        self._core = core
        self._store = core.store
        self._agents = agents

    def get(self, message_id: str) -> Message:
        return self._store.get("messages", message_id)

    def list(
        self,
        agent_id: str | None = None,
        channel: str | None = None,
        direction: str | None = None,
    ) -> list[Message]:
        def matches(message: Message) -> bool:
            if agent_id is not None and message.agent_id != agent_id:
                return False
            if channel is not None and message.channel != channel:
                return False
            return direction is None or message.direction == direction

        return list(self._store.list("messages", matches))

    async def accept(
        self,
        data: MessageCreate | dict[str, Any] | None = None,
        complete_after: float | None = None,
        **fields: Any,
    ) -> Message:
        """Record a message as ``pending``.

        With ``complete_after`` (seconds) a tracked deferred job completes
        its processing; it is cancelled if the message is deleted first.
        """
        body = _parse(MessageCreate, data if data is not None else fields)
        message = Message(
            id=body.id or _new_id("msg"),
            agent_id=body.agent_id,
            channel=body.channel,
            direction=body.direction,
            content=body.content,
            content_type=body.content_type,
            sender=body.sender,
            timestamp=body.timestamp or self._core.now(),
            related_task_id=body.related_task_id,
        )
        counter = {"incoming": "messages_received", "outgoing": "messages_sent"}.get(message.direction)
        async with self._core.locked(("agents", message.agent_id)):
            message = self._store.insert("messages", message)
            if counter is not None:
                self._agents._count(message.agent_id, counter)
        self._core.emit(TOPIC_MESSAGES, "message.new", message)

        if complete_after is not None:
            message_id = message.id
            self._core.scheduler.schedule(
                message_id, complete_after, lambda: self._finish(message_id, "completed")
            )
        return message

    async def begin_processing(self, message_id: str) -> Message:
        async with self._core.locked(("messages", message_id)):
            message = self.get(message_id)
            if message.processing_status != "pending":
                raise InvalidTransitionError("Message", message_id, message.processing_status, "processing")
            message = self._store.update(
                "messages", message_id, lambda m: m.model_copy(update={"processing_status": "processing"})
            )
        self._core.emit(TOPIC_MESSAGES, "message.updated", message)
        return message

    async def complete_processing(self, message_id: str) -> Message:
        """pending/processing → completed, recording the processing time."""
        self._core.scheduler.cancel(message_id)
        return await self._finish(message_id, "completed")

    async def fail_processing(self, message_id: str) -> Message:
        self._core.scheduler.cancel(message_id)
        return await self._finish(message_id, "failed")

    async def _finish(self, message_id: str, status: str) -> Message:
        async with self._core.locked(("messages", message_id)):
            message = self.get(message_id)
            if message.processing_status in TERMINAL_PROCESSING_STATUSES:
                raise InvalidTransitionError("Message", message_id, message.processing_status, status)

            def patch(current: Message) -> Message:
                elapsed = (self._core.now() - current.timestamp).total_seconds() * 1000
                return current.model_copy(
                    update={"processing_status": status, "processing_time": max(elapsed, 0.0)}
                )

            message = self._store.update("messages", message_id, patch)
        logger.debug("Message %s %s in %.0fms", message_id, status, message.processing_time)
        self._core.emit(TOPIC_MESSAGES, "message.updated", message)
        return message

    async def delete(self, message_id: str) -> Message:
        self._core.scheduler.cancel(message_id)
        async with self._core.locked(("messages", message_id)):
            message = self._store.delete("messages", message_id)
        self._core.emit(TOPIC_MESSAGES, "message.deleted", {"id": message_id, "agentId": message.agent_id})
        return message


class _SkillManager:
    """Skill registry and call bookkeeping."""

    def __init__(self, core: _EngineCore, agents: _AgentManager) -> None:
        self._core = core
        self._store = core.store
        self._agents = agents

    def get(self, key: str) -> Skill:
        """Look a skill up by id, falling back to its name."""
        skill = self._store.find("skills", key)
        if skill is not None:
            return skill
        for skill in self._store.list("skills", lambda s: s.name == key):
            return skill
        raise NotFoundError("Skill", key)

    def list(self, category: str | None = None) -> list[Skill]:
        return list(self._store.list("skills", lambda s: category is None or s.category == category))

    async def register(self, data: SkillCreate | dict[str, Any] | None = None, **fields: Any) -> Skill:
        """Register a skill. Ids and names share one namespace."""
        body = _parse(SkillCreate, data if data is not None else fields)
        skill_id = body.id or _new_id("skill")
        taken = {body.name, skill_id}
        for existing in self._store.list("skills", lambda s: s.id in taken or s.name in taken):
            raise ConflictError("Skill", existing.name if existing.name in taken else existing.id)
        skill = Skill(id=skill_id, name=body.name, description=body.description, category=body.category)
        return self._store.insert("skills", skill)

    async def record_call(
        self,
        key: str,
        *,
        success: bool,
        execution_time: float,
        agent_id: str | None = None,
        params: dict[str, Any] | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> SkillCall:
        """Fold one call into the skill's cumulative stats.

        ``avgExecutionTime`` follows the running-mean recurrence
        ``(avg * (n - 1) + t) / n`` in call order.
        """
        if execution_time < 0:
            raise ValidationError("execution_time must not be negative")
        skill_id = self.get(key).id
        call = SkillCall(
            id=_new_id("call"),
            skill_id=skill_id,
            agent_id=agent_id,
            success=success,
            execution_time=execution_time,
            timestamp=self._core.now(),
            params=params or {},
            result=result,
            error=error,
        )
        limit = self._core.config.recent_calls_limit

        def patch(skill: Skill) -> Skill:
            total = skill.stats.total_calls + 1
            stats = skill.stats.model_copy(
                update={
                    "total_calls": total,
                    "success_calls": skill.stats.success_calls + (1 if success else 0),
                    "failed_calls": skill.stats.failed_calls + (0 if success else 1),
                    "avg_execution_time": (skill.stats.avg_execution_time * (total - 1) + execution_time) / total,
                }
            )
            return skill.model_copy(update={"stats": stats, "recent_calls": [call, *skill.recent_calls][:limit]})

        keys = [("skills", skill_id)]
        if agent_id is not None:
            keys.insert(0, ("agents", agent_id))
        async with self._core.locked(*keys):
            self._store.update("skills", skill_id, patch)
            self._agents._count(agent_id, "skills_called")
        return call

    async def invoke(
        self,
        key: str,
        executor: SkillExecutor,
        *,
        agent_id: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> SkillCall:
        """Run ``executor`` and record the outcome and duration of the call.

        A failing executor produces a failed call; its exception is not
        re-raised.
        """
        self.get(key)
        params = params or {}
        started = time.perf_counter()
        try:
            outcome = executor(params)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning("Skill %s failed after %.0fms: %s", key, elapsed, exc)
            return await self.record_call(
                key, success=False, execution_time=elapsed, agent_id=agent_id, params=params, error=str(exc)
            )
        elapsed = (time.perf_counter() - started) * 1000
        return await self.record_call(
            key, success=True, execution_time=elapsed, agent_id=agent_id, params=params, result=outcome
        )


class _SystemManager:
    """System log lines and alerts."""

    def __init__(self, core: _EngineCore) -> None:
        self._core = core
        self._store = core.store

    async def log(
        self,
        level: str,
        message: str,
        source: str = "system",
        agent_id: str | None = None,
    ) -> LogEntry:
        level = level.upper()
        if level not in _LOG_LEVELS:
            raise ValidationError(f"Unknown log level: {level}")
        entry = LogEntry(
            id=_new_id("log"),
            level=level,
            message=message,
            source=source,
            timestamp=self._core.now(),
            agent_id=agent_id,
        )
        entry = self._store.insert("logs", entry)
        self._core.emit(TOPIC_SYSTEM, "system.log", entry)
        return entry

    def logs(
        self,
        level: str | None = None,
        agent_id: str | None = None,
        source: str | None = None,
        limit: int = 100,
    ) -> list[LogEntry]:
        """Most recent matching log lines, oldest first."""

        def matches(entry: LogEntry) -> bool:
            if level is not None and entry.level != level.upper():
                return False
            if agent_id is not None and entry.agent_id != agent_id:
                return False
            return source is None or entry.source == source

        entries = list(self._store.list("logs", matches))
        return entries[-limit:] if limit > 0 else []

    async def alert(
        self,
        level: str,
        message: str,
        source: str = "system",
        agent_id: str | None = None,
    ) -> Alert:
        if level not in _ALERT_LEVELS:
            raise ValidationError(f"Unknown alert level: {level}")
        alert = Alert(
            id=_new_id("alert"),
            level=level,
            message=message,
            source=source,
            agent_id=agent_id,
            timestamp=self._core.now(),
        )
        alert = self._store.insert("alerts", alert)
        logger.info("Alert %s (%s): %s", alert.id, level, message)
        self._core.emit(TOPIC_SYSTEM, "system.alert", alert)
        return alert

    def alerts(self, acknowledged: bool | None = None) -> list[Alert]:
        return list(
            self._store.list("alerts", lambda a: acknowledged is None or a.acknowledged == acknowledged)
        )

    async def acknowledge(self, alert_id: str, by: str | None = None) -> Alert:
        """Acknowledge once; later calls return the alert unchanged."""
        async with self._core.locked(("alerts", alert_id)):
            alert = self._store.get("alerts", alert_id)
            if alert.acknowledged:
                return alert
            alert = self._store.update(
                "alerts",
                alert_id,
                lambda a: a.model_copy(
                    update={"acknowledged": True, "acknowledged_by": by, "acknowledged_at": self._core.now()}
                ),
            )
        self._core.emit(TOPIC_SYSTEM, "system.alert", alert)
        return alert


# ============================================================
#  Engine
# ============================================================


class LifecycleEngine:
    """Composes the sub-managers around one store and one fabric."""

    def __init__(
        self,
        store: EntityStore,
        fabric: NotificationFabric,
        scheduler: Scheduler | None = None,
        config: MonitorConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.scheduler = scheduler or Scheduler()
        self._core = _EngineCore(store, fabric, self.scheduler, config or MonitorConfig(), clock or utcnow)

        self.agents = _AgentManager(self._core)
        self.tasks = _TaskManager(self._core, self.agents)
        self.agents._tasks = self.tasks  # Back-ref for stop/delete
        self.messages = _MessageManager(self._core, self.agents)
        self.skills = _SkillManager(self._core, self.agents)
        self.system = _SystemManager(self._core)
        self.agents._system = self.system  # Back-ref for stale alerts

    def lock_count(self) -> int:
        """Number of entity locks currently held or awaited."""
        return self._core.lock_count()
