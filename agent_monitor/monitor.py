"""
The agent monitor facade.

Usage::

    from agent_monitor import AgentMonitor

    async with AgentMonitor() as monitor:
        observer = monitor.fabric.observer()
        monitor.fabric.subscribe(observer, ["tasks"])

        await monitor.agents.register(id="main", model="MiniMax-M2.5")
        task = await monitor.tasks.create(agent_id="main", name="x", type="test")
        await monitor.tasks.start(task.id)

        event = await observer.get()   # task.updated
"""

from __future__ import annotations

import logging
from typing import Any

from agent_monitor.events import NotificationFabric
from agent_monitor.lifecycle import LifecycleEngine
from agent_monitor.scheduling import Clock, Scheduler, utcnow
from agent_monitor.stats import StatisticsAggregator
from agent_monitor.store import EntityStore
from agent_monitor.types import MonitorConfig

logger = logging.getLogger(__name__)


class AgentMonitor:
    """
    Tracks a fleet of agents and streams their state changes.

    Owns one store, one notification fabric and one scheduler for its whole
    lifetime; call :meth:`close` (or use ``async with``) when done.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        clock: Clock | None = None,
        **overrides: Any,
    ) -> None:
        base = config or MonitorConfig()
        self.config = MonitorConfig(**{**base.model_dump(), **overrides}) if overrides else base
        self.clock = clock or utcnow

        self.store = EntityStore(capacities={"logs": self.config.log_capacity})
        self.fabric = NotificationFabric(
            max_queue=self.config.observer_queue_size,
            overflow_policy=self.config.overflow_policy,
        )
        self.scheduler = Scheduler()
        self.engine = LifecycleEngine(self.store, self.fabric, self.scheduler, self.config, self.clock)
        self.stats = StatisticsAggregator(self.store, self.config.response_window_ms)

        # Sub-managers
        self.agents = self.engine.agents
        self.tasks = self.engine.tasks
        self.messages = self.engine.messages
        self.skills = self.engine.skills
        self.system = self.engine.system

        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def send_command(self, agent_id: str, command: str, payload: dict[str, Any] | None = None) -> int:
        """Route a command to ``agent:<agent_id>``.

        Raises :class:`~agent_monitor.errors.NotFoundError` for unknown
        agents. Returns how many observers received it.
        """
        self.agents.get(agent_id)
        return self.fabric.route_command(agent_id, command, payload)

    async def close(self) -> None:
        """Cancel deferred work and disconnect every observer."""
        if self._closed:
            return
        await self.scheduler.close()
        await self.fabric.close()
        self._closed = True
        logger.info("Agent monitor closed")

    async def __aenter__(self) -> AgentMonitor:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
