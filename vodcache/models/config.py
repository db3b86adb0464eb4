"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

VERBOSITY_LEVELS = ("quiet", "normal", "verbose")


class ServiceConfig(BaseModel):
    """A validated configuration model for the supervisor and its workers."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Storage
    data_dir: str = "data"
    download_path: str = "/downloads"

    # Task-level concurrency
    max_concurrent_downloads: int = 2
    check_interval: int = 300
    stop_grace_period: float = 2.0

    # Fetching
    segment_concurrency: int = 5
    file_concurrency: int = 2
    retries: int = 3
    retry_delay: float = 2.0
    segment_timeout: int = 300
    progress_interval: float = 60.0
    verbosity: str = "normal"

    # Merging
    ffmpeg_path: str = "ffmpeg"

    # Content source key -> API endpoint
    sources: dict[str, str] = Field(default_factory=dict)

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    @field_validator("max_concurrent_downloads")
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        """Ensures a reasonable number of simultaneous worker processes."""
        if v < 1 or v > 16:
            raise ValueError("max_concurrent_downloads must be between 1 and 16.")
        return v

    @field_validator("segment_concurrency", "file_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures a reasonable number of in-flight fetches."""
        if v < 1 or v > 32:
            raise ValueError("Fetch concurrency must be between 1 and 32.")
        return v

    @field_validator("retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0 or v > 10:
            raise ValueError("retries must be between 0 and 10.")
        return v

    @field_validator("retry_delay", "stop_grace_period", "progress_interval")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Durations cannot be negative.")
        return v

    @field_validator("segment_timeout", "check_interval")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Timeouts and intervals must be positive.")
        return v

    @field_validator("verbosity")
    @classmethod
    def validate_verbosity(cls, v: str) -> str:
        v = v.lower()
        if v not in VERBOSITY_LEVELS:
            raise ValueError(f"verbosity must be one of {', '.join(VERBOSITY_LEVELS)}.")
        return v

    @model_validator(mode="after")
    def validate_paths(self) -> "ServiceConfig":
        """Checks that the storage locations are usable."""
        if not self.download_path:
            raise ValueError("download_path cannot be empty.")
        if not self.data_dir:
            raise ValueError("data_dir cannot be empty.")
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI [DEFAULT] section."""
        internal_fields = {"config_path", "sources"}
        return {key for key in cls.model_fields if key not in internal_fields}
