"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vodcache.exceptions import ConfigurationError
from vodcache.models.config import ServiceConfig

log = logging.getLogger(__name__)

SOURCES_SECTION = "sources"

# Environment variable -> config key. Environment wins over the file.
ENV_OVERRIDES = {
    "DOWNLOAD_PATH": "download_path",
    "MAX_CONCURRENT_DOWNLOADS": "max_concurrent_downloads",
}


def _to_ini(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> ServiceConfig:
        """
        Loads configuration from the INI file, applies environment and CLI
        overrides, and validates it.

        Raises:
            ConfigurationError: If the config file is missing, invalid, or validation
            fails.
        """
        if not self.config_file_path.is_file():
            raise ConfigurationError(
                f"Configuration file not found at '{self.config_file_path}'. "
                "Please run 'vodcache init' first."
            )

        try:
            self._parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e

        if self._migrate_if_needed():
            log.info(
                "[yellow]Configuration file was updated with new default values."
                "[/yellow]"
            )

        settings: dict[str, Any] = dict(self._parser["DEFAULT"])
        settings["sources"] = (
            dict(self._parser.items(SOURCES_SECTION, raw=True))
            if self._parser.has_section(SOURCES_SECTION)
            else {}
        )
        # configparser leaks DEFAULT keys into every section.
        for key in self._parser.defaults():
            settings["sources"].pop(key, None)

        for env_name, key in ENV_OVERRIDES.items():
            if value := os.getenv(env_name):
                log.debug(f"Config '{key}' overridden by ${env_name}")
                settings[key] = value

        if cli_options:
            settings.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            return ServiceConfig(
                **settings, config_path=str(self.config_file_path.parent)
            )
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(
        self, settings: dict[str, Any], sources: dict[str, str] | None = None
    ) -> None:
        """Creates and saves a new configuration file."""
        config = configparser.ConfigParser(interpolation=None)
        defaults = ServiceConfig()
        config["DEFAULT"] = {
            key: _to_ini(settings.get(key, getattr(defaults, key)))
            for key in sorted(ServiceConfig.get_ini_keys())
        }
        config[SOURCES_SECTION] = dict(sources or {})

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = ServiceConfig()
        section = self._parser["DEFAULT"]
        needs_saving = False

        for key in sorted(ServiceConfig.get_ini_keys()):
            if key not in section:
                section[key] = _to_ini(getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{section[key]}'."
                )
        if not self._parser.has_section(SOURCES_SECTION):
            self._parser.add_section(SOURCES_SECTION)
            needs_saving = True

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
