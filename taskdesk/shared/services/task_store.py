"""Task record persistence.

Storage layout:
    <base_dir>/<data_dir_name>/tasks/<task_id>/settings.json

The record is only written once a task has been named or explicitly
saved. A task directory without settings.json is an "empty" task and
is safe to delete on close.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from taskdesk.engine.models import TaskData, _utcnow_iso
from taskdesk.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"


class TaskStore:
    """Save and load task records as JSON files under the project directory."""

    def __init__(self, base_dir: str | Path, data_dir_name: str = ".taskdesk") -> None:
        self._base_dir = Path(base_dir)
        self._tasks_dir = self._base_dir / data_dir_name / "tasks"

    @property
    def tasks_dir(self) -> Path:
        return self._tasks_dir

    def task_dir(self, task_id: str) -> Path:
        return self._tasks_dir / task_id

    def settings_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / SETTINGS_FILE

    def exists(self, task_id: str) -> bool:
        return self.settings_path(task_id).is_file()

    def save(self, task: TaskData) -> Path:
        """Persist *task*, stamping created_at/updated_at."""
        now = _utcnow_iso()
        if not task.created_at:
            task.created_at = now
        task.updated_at = now
        path = self.settings_path(task.id)
        atomic_write_json(path, task.to_dict())
        logger.debug("Saved task %s to %s", task.id, path)
        return path

    def load(self, task_id: str) -> TaskData | None:
        path = self.settings_path(task_id)
        try:
            data = read_json(path)
        except ValueError as exc:
            logger.warning("Corrupt task record %s: %s", path, exc)
            return None
        if data is None:
            return None
        return TaskData.from_dict(data)

    def list_task_ids(self) -> list[str]:
        if not self._tasks_dir.is_dir():
            return []
        return sorted(
            p.name for p in self._tasks_dir.iterdir()
            if (p / SETTINGS_FILE).is_file()
        )

    def delete(self, task_id: str) -> bool:
        """Remove the task directory. Returns False when it did not exist."""
        task_dir = self.task_dir(task_id)
        if not task_dir.exists():
            return False
        shutil.rmtree(task_dir)
        logger.info("Removed task directory %s", task_dir)
        return True

    def cleanup_if_empty(self, task_id: str, *, internal: bool = False) -> bool:
        """Delete the task directory when no record was ever saved (or the task is internal)."""
        if internal or not self.exists(task_id):
            return self.delete(task_id)
        return False
