"""
Persists downloaded episodes to `cached-videos.json`.
"""

import logging
from collections import defaultdict
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vodcache.models.task import CachedEpisode

from .json_store import JsonCollectionStore

log = logging.getLogger(__name__)

CACHE_FILE_NAME = "cached-videos.json"


class CacheIndex(JsonCollectionStore):
    """The set of episodes already on disk, deduplicated by `unique_id`."""

    def __init__(self, data_dir: Path):
        super().__init__(Path(data_dir) / CACHE_FILE_NAME)

    def _load_sync(self) -> list[CachedEpisode]:
        episodes = []
        for record in self._read_sync():
            try:
                episodes.append(CachedEpisode.model_validate(record))
            except ValidationError as e:
                log.warning(
                    f"[yellow]Skipping malformed cache record: "
                    f"{e.error_count()} errors[/yellow]"
                )
        return episodes

    def _add_sync(self, episode: CachedEpisode) -> bool:
        record = episode.to_record()

        def _upsert(records: list[dict[str, Any]]) -> bool:
            for i, existing in enumerate(records):
                if existing.get("unique_id") == episode.unique_id:
                    records[i] = record
                    return False
            records.append(record)
            return True

        return self._mutate_sync(_upsert)

    def _delete_sync(self, unique_id: str) -> bool:
        def _remove(records: list[dict[str, Any]]) -> bool:
            before = len(records)
            records[:] = [r for r in records if r.get("unique_id") != unique_id]
            return len(records) != before

        return self._mutate_sync(_remove)

    async def list_episodes(self) -> list[CachedEpisode]:
        return await self._run_in_executor(self._load_sync)

    async def add(self, episode: CachedEpisode) -> bool:
        """Records a downloaded episode. Returns False if it replaced an entry."""
        return await self._run_in_executor(self._add_sync, episode)

    async def delete(self, unique_id: str) -> bool:
        return await self._run_in_executor(self._delete_sync, unique_id)

    async def episode_numbers(self, task_id: str) -> set[int]:
        """Episode numbers of a task that are already cached."""
        return {
            e.episode_number for e in await self.list_episodes() if e.task_id == task_id
        }

    async def by_task(self, task_id: str) -> list[CachedEpisode]:
        episodes = [e for e in await self.list_episodes() if e.task_id == task_id]
        return sorted(episodes, key=lambda e: e.episode_number)

    async def grouped(self) -> dict[str, list[CachedEpisode]]:
        """Cached episodes grouped by task id, each group in episode order."""
        groups: dict[str, list[CachedEpisode]] = defaultdict(list)
        for episode in await self.list_episodes():
            groups[episode.task_id].append(episode)
        return {
            task_id: sorted(items, key=lambda e: e.episode_number)
            for task_id, items in groups.items()
        }
