"""
Pydantic models for scheduled download tasks, cached episodes and content detail.

Tasks are persisted with camelCase keys and cached episodes with snake_case keys,
matching the on-disk JSON collections both stores read and rewrite wholesale.
"""

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_TOTAL_EPISODES = 9999
DEFAULT_DOWNLOAD_TIMEOUT = 3600


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def make_unique_id(task_id: str, episode_number: int) -> str:
    """Builds the stable dedup key of a cached episode."""
    return f"video_{task_id}_{episode_number}"


class Task(BaseModel):
    """A recurring download of an episode range from one content source."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    id: str
    title: str
    source: str
    source_id: str
    start_episode: int = 1
    total_episodes: int = DEFAULT_TOTAL_EPISODES
    download_path: str = ""
    cron_expression: str = "0 2 * * *"
    download_timeout: int = DEFAULT_DOWNLOAD_TIMEOUT
    enabled: bool = True
    poster: str = ""
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    next_run: int | None = None

    @model_validator(mode="after")
    def disable_when_range_exhausted(self) -> "Task":
        """A task whose resume pointer is past its range can never run."""
        if self.start_episode > self.total_episodes:
            self.enabled = False
        return self

    @property
    def is_exhausted(self) -> bool:
        return self.start_episode > self.total_episodes

    def is_due(self, at_ms: int | None = None) -> bool:
        """True if the task is enabled and its next run is absent or reached."""
        at_ms = now_ms() if at_ms is None else at_ms
        return self.enabled and (self.next_run or 0) <= at_ms

    def advance_resume_pointer(self, next_episode: int) -> None:
        """Moves the resume pointer, keeping the range invariant intact."""
        self.start_episode = next_episode
        self.updated_at = now_ms()
        if self.is_exhausted:
            self.enabled = False

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class CachedEpisode(BaseModel):
    """A successfully downloaded episode, as stored in the cache index."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="id")
    unique_id: str = ""
    title: str
    episode_number: int
    episode_path: str
    poster: str = ""
    source: str = "server_cache"
    source_name: str = ""
    class_name: str | None = Field(default=None, alias="class")
    year: str = ""
    desc: str | None = None
    type_name: str | None = None
    douban_id: int | None = None
    org_source: str = ""
    org_source_id: str = ""
    total_episodes: int = 0
    download_time: int = Field(default_factory=now_ms)

    @model_validator(mode="after")
    def fill_unique_id(self) -> "CachedEpisode":
        if not self.unique_id:
            self.unique_id = make_unique_id(self.task_id, self.episode_number)
        return self

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class EpisodeRef(BaseModel):
    """One episode to fetch: its number and the source URL."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    episode_number: int
    url: str


class ContentDetail(BaseModel):
    """Detail of one content item from a source API, including episode URLs."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    poster: str = ""
    episodes: list[str] = Field(default_factory=list)
    episode_numbers: list[int] = Field(default_factory=list)
    source: str = ""
    source_name: str = ""
    year: str = ""
    desc: str | None = None
    type_name: str | None = None
    class_name: str | None = Field(default=None, alias="class")
    douban_id: int | None = None

    def episode_refs(self) -> list[EpisodeRef]:
        """
        Pairs each episode URL with its number, defaulting to 1-based position
        when the source does not number its episodes.
        """
        refs = []
        for index, url in enumerate(self.episodes):
            number = (
                self.episode_numbers[index]
                if index < len(self.episode_numbers)
                else index + 1
            )
            refs.append(EpisodeRef(episode_number=number, url=url))
        return refs
