"""
Tests for the command-line interface.
"""

import asyncio

import pytest
from typer.testing import CliRunner

from vodcache.cli import app as cli
from vodcache.models.task import CachedEpisode
from vodcache.storage.cache_index import CacheIndex
from vodcache.storage.task_store import TaskStore

runner = CliRunner()


@pytest.fixture
def configured(tmp_path, monkeypatch, data_dir, download_dir):
    monkeypatch.setattr(cli, "CONFIG_FILE", tmp_path / "config" / "config.ini")
    monkeypatch.delenv("DOWNLOAD_PATH", raising=False)
    monkeypatch.delenv("MAX_CONCURRENT_DOWNLOADS", raising=False)
    result = runner.invoke(
        cli.app,
        [
            "init",
            "--download-path",
            str(download_dir),
            "--data-dir",
            str(data_dir),
            "--source",
            "demo=https://api.example.com/provide/vod",
            "--force",
        ],
    )
    assert result.exit_code == 0, result.output
    return TaskStore(data_dir), CacheIndex(data_dir)


def test_commands_require_a_configuration(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "CONFIG_FILE", tmp_path / "missing.ini")
    result = runner.invoke(cli.app, ["list"])
    assert result.exit_code != 0


def test_add_update_and_toggle_a_task(configured):
    task_store, _ = configured

    result = runner.invoke(
        cli.app, ["add", "Show", "demo", "42", "--total", "12", "--cron", "30 * * * *"]
    )
    assert result.exit_code == 0, result.output
    (task,) = asyncio.run(task_store.list_tasks())
    assert task.total_episodes == 12
    assert task.cron_expression == "30 * * * *"
    assert task.next_run is not None

    result = runner.invoke(cli.app, ["update", task.id, "--start", "13"])
    assert result.exit_code == 0, result.output
    assert not asyncio.run(task_store.get(task.id)).enabled

    result = runner.invoke(cli.app, ["enable", task.id])
    assert result.exit_code == 1

    runner.invoke(cli.app, ["update", task.id, "--total", "20"])
    result = runner.invoke(cli.app, ["enable", task.id])
    assert result.exit_code == 0, result.output
    assert asyncio.run(task_store.get(task.id)).enabled

    result = runner.invoke(cli.app, ["list"])
    assert result.exit_code == 0
    assert "Show" in result.output


def test_add_rejects_unsupported_cron(configured):
    task_store, _ = configured
    result = runner.invoke(cli.app, ["add", "Show", "demo", "42", "--cron", "0 2 *"])
    assert result.exit_code == 1
    assert asyncio.run(task_store.list_tasks()) == []


def test_remove_unknown_task_fails(configured):
    result = runner.invoke(cli.app, ["remove", "nope"])
    assert result.exit_code != 0


def test_cache_delete_can_remove_the_file(configured, download_dir):
    _, cache_index = configured
    episode_file = download_dir / "Show" / "Show_EP01.mp4"
    episode_file.parent.mkdir()
    episode_file.write_bytes(b"x")
    asyncio.run(
        cache_index.add(
            CachedEpisode(
                task_id="t1",
                title="Show",
                episode_number=1,
                episode_path="Show/Show_EP01.mp4",
            )
        )
    )

    result = runner.invoke(cli.app, ["cache-delete", "video_t1_1", "--delete-file"])

    assert result.exit_code == 0, result.output
    assert not episode_file.exists()
    assert asyncio.run(cache_index.list_episodes()) == []
    assert runner.invoke(cli.app, ["cache-delete", "video_t1_1"]).exit_code == 1


def test_next_run_prints_following_fire_time():
    result = runner.invoke(cli.app, ["next-run", "0 2 * * *", "--at", "2024-01-01 02:30"])
    assert result.exit_code == 0
    assert "2024-01-02 02:00" in result.output
