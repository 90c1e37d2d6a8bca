"""Per-task todo list stored beside the task record.

File format (todos.json):
    {"initialUserPrompt": "...", "items": [{"name": "...", "completed": false}]}

Always read and written wholesale.
"""

from __future__ import annotations

import logging
from pathlib import Path

from taskdesk.engine.errors import TodoNotFoundError
from taskdesk.engine.models import TodoItem
from taskdesk.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

TODOS_FILE = "todos.json"


class TodoStore:
    def __init__(self, task_dir: Path, task_id: str) -> None:
        self._path = Path(task_dir) / TODOS_FILE
        self._task_id = task_id

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> tuple[str, list[TodoItem]] | None:
        data = read_json(self._path)
        if data is None:
            return None
        items = [
            TodoItem(name=item.get("name", ""), completed=bool(item.get("completed", False)))
            for item in data.get("items", [])
        ]
        return data.get("initialUserPrompt", ""), items

    def _write(self, initial_user_prompt: str, items: list[TodoItem]) -> None:
        atomic_write_json(self._path, {
            "initialUserPrompt": initial_user_prompt,
            "items": [{"name": i.name, "completed": i.completed} for i in items],
        })

    def get(self) -> tuple[str, list[TodoItem]] | None:
        """Return (initial prompt, items), or None when no todo file exists."""
        return self._read()

    def set(self, items: list[TodoItem], initial_user_prompt: str = "") -> list[TodoItem]:
        self._write(initial_user_prompt, list(items))
        return list(items)

    def add(self, names: list[str], initial_user_prompt: str = "") -> list[TodoItem]:
        """Append new uncompleted items, creating the list if needed."""
        current = self._read()
        prompt, items = current if current else (initial_user_prompt, [])
        items.extend(TodoItem(name=name) for name in names)
        self._write(prompt, items)
        return items

    def update(
        self,
        name: str,
        *,
        completed: bool | None = None,
        new_name: str | None = None,
    ) -> list[TodoItem]:
        current = self._read()
        if current is None:
            raise TodoNotFoundError(self._task_id)
        prompt, items = current
        for item in items:
            if item.name == name:
                if completed is not None:
                    item.completed = completed
                if new_name:
                    item.name = new_name
                break
        else:
            raise TodoNotFoundError(self._task_id, name)
        self._write(prompt, items)
        return items

    def delete(self, name: str) -> list[TodoItem]:
        current = self._read()
        if current is None:
            raise TodoNotFoundError(self._task_id)
        prompt, items = current
        remaining = [item for item in items if item.name != name]
        if len(remaining) == len(items):
            raise TodoNotFoundError(self._task_id, name)
        self._write(prompt, remaining)
        return remaining

    def clear(self) -> None:
        """Remove the todo file entirely."""
        if not self._path.exists():
            raise TodoNotFoundError(self._task_id)
        self._path.unlink()
        logger.debug("Cleared todos for task %s", self._task_id)
