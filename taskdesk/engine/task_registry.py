"""Live tasks keyed by (base_dir, task_id).

Inbound connector traffic names a task by base directory and id; the
registry resolves it to the one Task instance that owns that state.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from .backends.agent import AgentRunner
from .errors import TaskDeskError
from .task import Task
from .yaml_config import TaskDeskConfig

logger = logging.getLogger(__name__)

TaskFactory = Callable[[str, str], Task]


def _key(base_dir: str, task_id: str) -> tuple[str, str]:
    return str(Path(base_dir).resolve()), task_id


class TaskRegistry:
    """Creates tasks on first use and hands out the same instance afterwards."""

    def __init__(
        self,
        config: TaskDeskConfig | None = None,
        *,
        agent_runner: AgentRunner | None = None,
        task_factory: TaskFactory | None = None,
    ) -> None:
        self._config = config or TaskDeskConfig.from_env()
        self._agent_runner = agent_runner
        self._factory = task_factory or self._default_factory
        self._tasks: dict[tuple[str, str], Task] = {}

    @property
    def config(self) -> TaskDeskConfig:
        return self._config

    def _default_factory(self, task_id: str, base_dir: str) -> Task:
        return Task(task_id, base_dir, config=self._config, agent_runner=self._agent_runner)

    def get(self, base_dir: str, task_id: str) -> Task | None:
        return self._tasks.get(_key(base_dir, task_id))

    def get_or_create(self, base_dir: str, task_id: str) -> Task:
        key = _key(base_dir, task_id)
        task = self._tasks.get(key)
        if task is None:
            task = self._factory(task_id, base_dir)
            self._tasks[key] = task
            logger.info("Registered task %s in %s", task_id, base_dir)
        return task

    def list_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    async def close_task(self, base_dir: str, task_id: str, cleanup_empty_task: bool = True) -> bool:
        task = self._tasks.pop(_key(base_dir, task_id), None)
        if task is None:
            return False
        await task.close(cleanup_empty_task)
        return True

    async def close_all(self) -> None:
        tasks, self._tasks = list(self._tasks.values()), {}
        for task in tasks:
            try:
                await task.close()
            except TaskDeskError as exc:
                logger.error("Error closing task %s: %s", task.id, exc)
