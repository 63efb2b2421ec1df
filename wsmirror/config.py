"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
from typing import Optional

from wsmirror.logger import log


@dataclass
class ApiConfig:
    """Configuration variables related to the fallback API."""

    base_url: str = "http://localhost:8080/api"
    token: Optional[str] = field(default=None, repr=False)

    @staticmethod
    def load(section: SectionProxy) -> ApiConfig:
        """Load overridden variables from a section within a config file."""
        config = ApiConfig()

        config.base_url = section.get("base_url", fallback=config.base_url)
        config.token = section.get("token", fallback=config.token)

        return config


@dataclass
class ConnectionConfig:
    """Configuration variables related to the live connection to a workspace."""

    timeout: int = 10000
    port_poll_interval: int = 500
    preview_url: str = "http://localhost:{port}"

    @staticmethod
    def load(section: SectionProxy) -> ConnectionConfig:
        """Load overridden variables from a section within a config file."""
        config = ConnectionConfig()

        config.timeout = section.getint("timeout", fallback=config.timeout)
        config.port_poll_interval = section.getint(
            "port_poll_interval", fallback=config.port_poll_interval
        )
        config.preview_url = section.get("preview_url", fallback=config.preview_url)

        return config


@dataclass
class CacheConfig:
    """Configuration variables related to caching of workspace files."""

    # Age in milliseconds up to which a cached file is used without a live connection
    max_age: int = 1000

    @staticmethod
    def load(section: SectionProxy) -> CacheConfig:
        """Load overridden variables from a section within a config file."""
        config = CacheConfig()

        config.max_age = section.getint("max_age", fallback=config.max_age)

        return config


@dataclass
class EditorConfig:
    """Configuration variables related to editing files."""

    # Milliseconds without edits after which changes are saved
    debounce: int = 2000

    @staticmethod
    def load(section: SectionProxy) -> EditorConfig:
        """Load overridden variables from a section within a config file."""
        config = EditorConfig()

        config.debounce = section.getint("debounce", fallback=config.debounce)

        return config


@dataclass
class Config:
    """Configuration variables."""

    api: ApiConfig = field(default_factory=ApiConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    editor: EditorConfig = field(default_factory=EditorConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser(interpolation=None)

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "api" in parser:
                config.api = ApiConfig.load(parser["api"])
            if "connection" in parser:
                config.connection = ConnectionConfig.load(parser["connection"])
            if "cache" in parser:
                config.cache = CacheConfig.load(parser["cache"])
            if "editor" in parser:
                config.editor = EditorConfig.load(parser["editor"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
