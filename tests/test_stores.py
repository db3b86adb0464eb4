"""
Tests for the task store, cache index, running markers and config manager.
"""

import json
import os
import socket

import pytest

from vodcache.exceptions import ConfigurationError, TaskNotFoundError
from vodcache.models.task import CachedEpisode, Task
from vodcache.storage.cache_index import CACHE_FILE_NAME, CacheIndex
from vodcache.storage.config_manager import ConfigManager
from vodcache.storage.markers import RunningMarkers
from vodcache.storage.task_store import TASKS_FILE_NAME, TaskStore


def make_episode(task_id: str, number: int, **extra) -> CachedEpisode:
    return CachedEpisode(
        task_id=task_id,
        title="Show",
        episode_number=number,
        episode_path=f"Show/Show_EP{number:02}.mp4",
        **extra,
    )


class TestTaskModel:
    def test_defaults(self):
        task = Task(id="t1", title=" Show ", source="demo", source_id="42")
        assert task.title == "Show"
        assert task.start_episode == 1
        assert task.total_episodes == 9999
        assert task.download_timeout == 3600
        assert task.enabled

    def test_exhausted_range_forces_disabled(self):
        task = Task(
            id="t1",
            title="Show",
            source="demo",
            source_id="42",
            start_episode=5,
            total_episodes=4,
            enabled=True,
        )
        assert not task.enabled

    def test_advancing_past_range_disables(self):
        task = Task(id="t1", title="S", source="d", source_id="1", total_episodes=3)
        task.advance_resume_pointer(4)
        assert task.start_episode == 4
        assert not task.enabled

    def test_is_due(self):
        task = Task(id="t1", title="S", source="d", source_id="1", next_run=1000)
        assert task.is_due(1000)
        assert not task.is_due(999)
        task.next_run = None
        assert task.is_due(0)
        task.enabled = False
        assert not task.is_due(10**15)

    def test_record_uses_camel_case(self):
        record = Task(id="t1", title="S", source="d", source_id="1").to_record()
        assert {"startEpisode", "totalEpisodes", "nextRun", "cronExpression"} <= set(
            record
        )
        assert Task.model_validate(record).source_id == "1"


class TestTaskStore:
    async def test_crud_round_trip(self, data_dir):
        store = TaskStore(data_dir)
        created = await store.create(title="Show", source="demo", source_id="42")

        assert (await store.get(created.id)).title == "Show"
        on_disk = json.loads((data_dir / TASKS_FILE_NAME).read_text())
        assert on_disk[0]["sourceId"] == "42"

        created.start_episode = 3
        await store.save(created)
        tasks = await store.list_tasks()
        assert len(tasks) == 1
        assert tasks[0].start_episode == 3

        assert await store.delete(created.id)
        assert not await store.delete(created.id)
        with pytest.raises(TaskNotFoundError):
            await store.get(created.id)

    async def test_missing_and_corrupt_files_read_as_empty(self, data_dir):
        store = TaskStore(data_dir)
        assert await store.list_tasks() == []
        (data_dir / TASKS_FILE_NAME).write_text("{not json")
        assert await store.list_tasks() == []

    async def test_malformed_records_are_skipped(self, data_dir):
        (data_dir / TASKS_FILE_NAME).write_text(
            json.dumps(
                [
                    {"id": "bad"},
                    {"id": "ok", "title": "T", "source": "d", "sourceId": "1"},
                ]
            )
        )
        tasks = await TaskStore(data_dir).list_tasks()
        assert [t.id for t in tasks] == ["ok"]

    async def test_no_temp_files_left_behind(self, data_dir):
        store = TaskStore(data_dir)
        await store.create(title="A", source="d", source_id="1")
        assert sorted(p.name for p in data_dir.iterdir()) == [TASKS_FILE_NAME]


class TestCacheIndex:
    async def test_unique_id_and_dedup(self, data_dir):
        index = CacheIndex(data_dir)
        assert await index.add(make_episode("t1", 1))
        assert not await index.add(make_episode("t1", 1, year="2024"))

        episodes = await index.list_episodes()
        assert len(episodes) == 1
        assert episodes[0].unique_id == "video_t1_1"
        assert episodes[0].year == "2024"

        record = json.loads((data_dir / CACHE_FILE_NAME).read_text())[0]
        assert record["id"] == "t1"
        assert record["episode_number"] == 1
        assert record["source"] == "server_cache"

    async def test_queries_and_delete(self, data_dir):
        index = CacheIndex(data_dir)
        for task_id, number in [("t1", 2), ("t1", 1), ("t2", 5)]:
            await index.add(make_episode(task_id, number))

        assert await index.episode_numbers("t1") == {1, 2}
        groups = await index.grouped()
        assert [e.episode_number for e in groups["t1"]] == [1, 2]
        assert [e.episode_number for e in await index.by_task("t2")] == [5]

        assert await index.delete("video_t1_2")
        assert not await index.delete("video_t1_2")
        assert await index.episode_numbers("t1") == {1}


class TestRunningMarkers:
    def test_acquire_is_exclusive_and_release_clears(self, data_dir):
        markers = RunningMarkers(data_dir)
        assert markers.acquire("t1")
        assert not markers.acquire("t1")
        assert markers.exists("t1")
        assert markers.path_for("t1").name == "download-task-t1.running"
        assert markers.active_task_ids() == {"t1"}

        markers.release("t1")
        assert not markers.exists("t1")
        markers.release("t1")

    def test_owner_release_leaves_a_marker_taken_over_by_someone_else(self, data_dir):
        markers = RunningMarkers(data_dir)
        markers.acquire("t1", pid=os.getppid())

        markers.release("t1", owner_pid=os.getpid())
        assert markers.read("t1").pid == os.getppid()

        markers.release("t1", owner_pid=os.getppid())
        assert markers.read("t1") is None
        markers.release("t1", owner_pid=os.getppid())

    def test_record_names_owner(self, data_dir):
        markers = RunningMarkers(data_dir)
        markers.acquire("t1")
        record = markers.read("t1")
        assert record.pid == os.getpid()
        assert record.host == socket.gethostname()
        assert record.acquired_at > 0

        markers.update_owner("t1", os.getppid())
        assert markers.read("t1").pid == os.getppid()

    def test_stale_marker_is_reclaimed(self, data_dir):
        markers = RunningMarkers(data_dir)
        markers.path_for("t1").write_text(
            json.dumps(
                {"pid": 2**22 + 12345, "host": socket.gethostname(), "acquired_at": 1}
            )
        )
        assert not markers.exists("t1")
        assert not markers.path_for("t1").exists()
        assert markers.acquire("t1")

    def test_marker_from_other_host_is_respected(self, data_dir):
        markers = RunningMarkers(data_dir)
        markers.path_for("t1").write_text(
            json.dumps({"pid": 1, "host": "elsewhere.invalid", "acquired_at": 1})
        )
        assert markers.exists("t1")
        assert not markers.acquire("t1")


class TestConfigManager:
    @pytest.fixture(autouse=True)
    def _clean_environment(self, monkeypatch):
        monkeypatch.delenv("DOWNLOAD_PATH", raising=False)
        monkeypatch.delenv("MAX_CONCURRENT_DOWNLOADS", raising=False)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(tmp_path / "config.ini").load_config()

    def test_save_and_load(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.ini")
        manager.save_new_config(
            {"download_path": "/srv/media", "max_concurrent_downloads": 3},
            sources={"demo": "https://api.example.com/provide/vod"},
        )

        config = ConfigManager(tmp_path / "config.ini").load_config()
        assert config.download_path == "/srv/media"
        assert config.max_concurrent_downloads == 3
        assert config.retries == 3
        assert config.sources == {"demo": "https://api.example.com/provide/vod"}
        assert config.config_path == str(tmp_path)

    def test_missing_keys_are_migrated(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[DEFAULT]\ndownload_path = /srv/media\n")

        config = ConfigManager(path).load_config()

        assert config.segment_concurrency == 5
        text = path.read_text()
        assert "segment_concurrency = 5" in text
        assert "[sources]" in text

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        manager = ConfigManager(tmp_path / "config.ini")
        manager.save_new_config({"download_path": "/srv/media"})
        monkeypatch.setenv("DOWNLOAD_PATH", "/mnt/videos")
        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "4")

        config = manager.load_config()
        assert config.download_path == "/mnt/videos"
        assert config.max_concurrent_downloads == 4

    def test_invalid_values_raise_configuration_error(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[DEFAULT]\nmax_concurrent_downloads = 0\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(path).load_config()
