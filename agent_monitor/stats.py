"""
Read-only rollups over the entity store.

Every query rescans the store; nothing is cached between calls.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Iterable

from agent_monitor.store import EntityStore
from agent_monitor.types import Message, TodayStats


def _tally(values: Iterable[str]) -> dict[str, int]:
    return dict(Counter(values))


def _rate(part: int, whole: int) -> float:
    """Percentage with one decimal, 0.0 when ``whole`` is 0."""
    return round(part / whole * 100, 1) if whole else 0.0


def response_times(messages: list[Message], window_ms: int = 60000) -> list[float]:
    """Pair each incoming message with a reply and return the deltas in ms.

    The reply is the first outgoing message of the same agent, in store
    order, stamped strictly after the incoming one and within
    ``window_ms``. This is a nearest-successor heuristic, not a causal link:
    interleaved conversations can be mis-paired.
    """
    outgoing = [m for m in messages if m.direction == "outgoing"]
    deltas = []
    for incoming in messages:
        if incoming.direction != "incoming":
            continue
        for reply in outgoing:
            if reply.agent_id != incoming.agent_id:
                continue
            delta = (reply.timestamp - incoming.timestamp).total_seconds() * 1000
            if 0 < delta <= window_ms:
                deltas.append(delta)
                break
    return deltas


class StatisticsAggregator:
    """Answers aggregate queries against a store."""

    def __init__(self, store: EntityStore, response_window_ms: int = 60000) -> None:
        self._store = store
        self._response_window_ms = response_window_ms

    def agent_stats(self) -> dict[str, Any]:
        agents = list(self._store.list("agents"))
        totals = Counter()
        for agent in agents:
            totals.update(agent.today_stats.model_dump())
        today = TodayStats(**{name: totals.get(name, 0) for name in TodayStats.model_fields})
        return {
            "total": len(agents),
            "byStatus": _tally(a.status for a in agents),
            "online": sum(1 for a in agents if a.status in ("online", "busy", "idle")),
            "todayStats": today.model_dump(by_alias=True),
        }

    def task_stats(self, agent_id: str | None = None) -> dict[str, Any]:
        tasks = list(self._store.list("tasks", lambda t: agent_id is None or t.agent_id == agent_id))
        by_status = _tally(t.status for t in tasks)
        completed = by_status.get("completed", 0)
        finished = completed + by_status.get("failed", 0)
        return {
            "total": len(tasks),
            "byStatus": by_status,
            "byType": _tally(t.type for t in tasks),
            "successRate": _rate(completed, finished),
        }

    def message_stats(self, agent_id: str | None = None) -> dict[str, Any]:
        messages = list(self._store.list("messages", lambda m: agent_id is None or m.agent_id == agent_id))
        processed = [m.processing_time for m in messages if m.processing_time is not None]
        deltas = response_times(messages, self._response_window_ms)
        return {
            "total": len(messages),
            "byChannel": _tally(m.channel for m in messages),
            "byDirection": _tally(m.direction for m in messages),
            "byContentType": _tally(m.content_type for m in messages),
            "byProcessingStatus": _tally(m.processing_status for m in messages),
            "avgProcessingTime": sum(processed) / len(processed) if processed else None,
            "avgResponseTime": sum(deltas) / len(deltas) if deltas else None,
        }

    def skill_stats(self, top: int = 5) -> dict[str, Any]:
        skills = list(self._store.list("skills"))
        total_calls = sum(s.stats.total_calls for s in skills)
        success_calls = sum(s.stats.success_calls for s in skills)
        ranked = sorted(skills, key=lambda s: s.stats.total_calls, reverse=True)
        return {
            "totalSkills": len(skills),
            "totalCalls": total_calls,
            "successRate": _rate(success_calls, total_calls),
            "byCategory": _tally(s.category for s in skills),
            "topSkills": [
                {"id": s.id, "name": s.name, "category": s.category, **s.stats.model_dump(by_alias=True)}
                for s in ranked[:top]
            ],
        }

    def log_stats(self) -> dict[str, Any]:
        entries = list(self._store.list("logs"))
        return {
            "total": len(entries),
            "byLevel": _tally(e.level for e in entries),
            "bySource": _tally(e.source for e in entries),
        }

    def alert_stats(self) -> dict[str, Any]:
        alerts = list(self._store.list("alerts"))
        return {
            "total": len(alerts),
            "unacknowledged": sum(1 for a in alerts if not a.acknowledged),
            "byLevel": _tally(a.level for a in alerts),
        }

    def overview(self) -> dict[str, Any]:
        return {
            "agents": self.agent_stats(),
            "tasks": self.task_stats(),
            "messages": self.message_stats(),
            "skills": self.skill_stats(),
            "logs": self.log_stats(),
            "alerts": self.alert_stats(),
        }
