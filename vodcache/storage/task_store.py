"""
Persists scheduled download tasks to `download-tasks.json`.
"""

import logging
import uuid
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vodcache.exceptions import TaskNotFoundError
from vodcache.models.task import Task, now_ms

from .json_store import JsonCollectionStore

log = logging.getLogger(__name__)

TASKS_FILE_NAME = "download-tasks.json"


class TaskStore(JsonCollectionStore):
    """CRUD over the task collection, keyed by task id."""

    def __init__(self, data_dir: Path):
        super().__init__(Path(data_dir) / TASKS_FILE_NAME)

    def _load_sync(self) -> list[Task]:
        tasks = []
        for record in self._read_sync():
            try:
                tasks.append(Task.model_validate(record))
            except ValidationError as e:
                log.warning(
                    f"[yellow]Skipping malformed task record "
                    f"{record.get('id', '?')}: {e.error_count()} errors[/yellow]"
                )
        return tasks

    def _save_sync(self, task: Task) -> Task:
        task.updated_at = now_ms()
        record = task.to_record()

        def _upsert(records: list[dict[str, Any]]) -> None:
            for i, existing in enumerate(records):
                if existing.get("id") == task.id:
                    records[i] = record
                    return
            records.append(record)

        self._mutate_sync(_upsert)
        return task

    def _delete_sync(self, task_id: str) -> bool:
        def _remove(records: list[dict[str, Any]]) -> bool:
            before = len(records)
            records[:] = [r for r in records if r.get("id") != task_id]
            return len(records) != before

        return self._mutate_sync(_remove)

    async def list_tasks(self) -> list[Task]:
        return await self._run_in_executor(self._load_sync)

    async def get(self, task_id: str) -> Task:
        """
        Raises:
            TaskNotFoundError: no task has this id.
        """
        for task in await self.list_tasks():
            if task.id == task_id:
                return task
        raise TaskNotFoundError(f"Task '{task_id}' does not exist.")

    async def save(self, task: Task) -> Task:
        """Inserts or replaces a task, stamping `updated_at`."""
        return await self._run_in_executor(self._save_sync, task)

    async def create(self, **fields: Any) -> Task:
        """Creates a task with a fresh id and the model defaults for omitted fields."""
        fields.setdefault("id", uuid.uuid4().hex[:12])
        task = Task(**fields)
        return await self.save(task)

    async def delete(self, task_id: str) -> bool:
        return await self._run_in_executor(self._delete_sync, task_id)
