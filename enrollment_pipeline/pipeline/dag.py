"""
Step graph for multi-step stages.

A stage such as EMR transmission is a handful of named steps with
dependencies between them. Steps run in dependency order over one shared
context dict; each step may return a dict that is merged into the context
for the steps after it.

A step that raises is marked failed and keeps its exception, and every
step downstream of it (directly or not) is skipped. The graph itself never
decides what a failure means; the stage reads ``failed_task()`` and maps
the exception to retry, defer or fail.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

StepFn = Callable[[dict[str, Any]], "dict[str, Any] | None"]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskNode:
    name: str
    execute_fn: StepFn
    depends_on: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    exception: Exception | None = None
    duration_ms: float = 0.0

    def report(self) -> dict[str, Any]:
        if self.status == TaskStatus.SKIPPED:
            return {"status": self.status.value}
        return {
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
            "error_type": type(self.exception).__name__ if self.exception else None,
        }


class DAG:
    """
    Usage:
        dag = DAG("emr_transmission")
        dag.add_task("collect", collect)
        dag.add_task("convert", convert, depends_on=["collect"])
        dag.add_task("transmit", transmit, depends_on=["convert"])
        summary = dag.run({"enrollment_id": str(enrollment.id)})
        if dag.failed_task() is not None:
            ...
    """

    def __init__(self, name: str):
        self.name = name
        self.tasks: dict[str, TaskNode] = {}

    def add_task(
        self,
        name: str,
        execute_fn: StepFn,
        depends_on: list[str] | None = None,
    ) -> DAG:
        if name in self.tasks:
            raise ValueError(f"Duplicate task name: {name}")
        self.tasks[name] = TaskNode(name=name, execute_fn=execute_fn, depends_on=list(depends_on or []))
        return self

    def execution_order(self) -> list[str]:
        """Dependency order, ties broken by insertion order."""
        dependents: dict[str, list[str]] = {name: [] for name in self.tasks}
        waiting_on: dict[str, int] = {}
        for task in self.tasks.values():
            for dep in task.depends_on:
                if dep not in self.tasks:
                    raise ValueError(f"Task '{task.name}' depends on unknown task '{dep}'")
                dependents[dep].append(task.name)
            waiting_on[task.name] = len(task.depends_on)

        ready = deque(name for name, count in waiting_on.items() if count == 0)
        order: list[str] = []
        while ready:
            name = ready.popleft()
            order.append(name)
            for dependent in dependents[name]:
                waiting_on[dependent] -= 1
                if waiting_on[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(self.tasks):
            stuck = sorted(set(self.tasks) - set(order))
            raise ValueError(f"Cycle detected in DAG '{self.name}': {', '.join(stuck)}")
        return order

    def _blocked(self, task: TaskNode) -> bool:
        return any(
            self.tasks[dep].status in (TaskStatus.FAILED, TaskStatus.SKIPPED) for dep in task.depends_on
        )

    def _execute(self, task: TaskNode, context: dict[str, Any]) -> None:
        task.status = TaskStatus.RUNNING
        started = time.perf_counter()
        try:
            task.result = task.execute_fn(context) or {}
            task.status = TaskStatus.SUCCESS
        except Exception as exc:
            task.status = TaskStatus.FAILED
            task.error = str(exc)
            task.exception = exc
            logger.error("%s/%s failed: %s", self.name, task.name, exc)
        finally:
            task.duration_ms = (time.perf_counter() - started) * 1000

    def run(self, initial_context: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run every step once and return a per-step report."""
        context = dict(initial_context or {})
        logger.info("Running '%s' (%d steps)", self.name, len(self.tasks))

        for name in self.execution_order():
            task = self.tasks[name]
            if self._blocked(task):
                task.status = TaskStatus.SKIPPED
                logger.warning("%s/%s skipped, an upstream step did not succeed", self.name, name)
                continue
            for dep in task.depends_on:
                context.update(self.tasks[dep].result)
            self._execute(task, context)

        succeeded = all(task.status == TaskStatus.SUCCESS for task in self.tasks.values())
        summary = {
            "pipeline": self.name,
            "status": "completed" if succeeded else "failed",
            "tasks": {name: task.report() for name, task in self.tasks.items()},
        }
        logger.info("'%s' %s", self.name, summary["status"])
        return summary

    def failed_task(self) -> TaskNode | None:
        return next((t for t in self.tasks.values() if t.status == TaskStatus.FAILED), None)

    def result(self, key: str, default: Any = None) -> Any:
        """Latest value a step returned under ``key``."""
        for task in reversed(list(self.tasks.values())):
            if key in task.result:
                return task.result[key]
        return default

