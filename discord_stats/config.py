import os
from contextvars import ContextVar
from pathlib import Path
from typing import NamedTuple, Optional

import tomli_w
from pydantic import field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from discord_stats.errors import ConfigError


CONFIG_ENV_VAR = "DISCORD_STATS_CONFIG"
CONFIG_FILE_NAME = "config.toml"
DATABASE_FILE_NAME = "stats.db"

# Highest value a snowflake id can take
MAX_ID = 2**64 - 1

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# TOML file consulted by the settings source currently being built
_config_file: ContextVar[Optional[Path]] = ContextVar("config_file", default=None)


class TrackedChannel(NamedTuple):
    """A (guild, channel) pair; guild_id is None for direct messages."""
    guild_id: Optional[int]
    channel_id: int


def _parse_id(value: str, kind: str) -> int:
    try:
        parsed = int(value.strip())
    except ValueError:
        raise ConfigError(kind, f"not an integer: {value!r}")
    if parsed < 0 or parsed > MAX_ID:
        raise ConfigError(kind, f"out of range: {value!r}")
    return parsed


def parse_channel_specifier(spec: str) -> TrackedChannel:
    """
    Parse a tracked-channel specifier.

    Accepted forms are "guildId|channelId" and a bare "channelId" for a
    direct message channel.
    """
    parts = spec.split("|")
    if len(parts) == 1:
        return TrackedChannel(None, _parse_id(parts[0], "invalid_channel_format"))
    if len(parts) == 2:
        guild_id = _parse_id(parts[0], "invalid_guild_format")
        channel_id = _parse_id(parts[1], "invalid_channel_format")
        return TrackedChannel(guild_id, channel_id)
    raise ConfigError("invalid_channel_format", f"too many '|' separators: {spec!r}")


def format_channel_specifier(channel: TrackedChannel) -> str:
    if channel.guild_id is None:
        return str(channel.channel_id)
    return f"{channel.guild_id}|{channel.channel_id}"


def default_config_path() -> Path:
    """Config file location: $DISCORD_STATS_CONFIG or ~/.config/discord-stats/config.toml."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    try:
        home = Path.home()
    except RuntimeError as e:
        raise ConfigError("no_home", str(e))
    return home / ".config" / "discord-stats" / CONFIG_FILE_NAME


class Settings(BaseSettings):
    """
    Application settings.

    Loaded from (highest priority first) keyword arguments, environment
    variables prefixed with DISCORD_STATS_, and the TOML config file.
    """

    model_config = SettingsConfigDict(
        env_prefix="DISCORD_STATS_",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Gateway credential
    token: str = ""

    # "guildId|channelId" or bare "channelId" entries
    tracked_channels: list[str] = []

    # SQLite file; empty means next to the config file
    database_path: str = ""

    log_level: str = "INFO"

    http_host: str = "127.0.0.1"
    http_port: int = 8080

    # Messages requested per history call, capped by the gateway at 100
    page_size: int = 100

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}, expected one of {', '.join(LOG_LEVELS)}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=_config_file.get()),
        )

    def tracked_channel_set(self) -> set[TrackedChannel]:
        """Parse every tracked-channel specifier, raising ConfigError on the first bad one."""
        return {parse_channel_specifier(spec) for spec in self.tracked_channels}

    def database_file(self, config_path: Path) -> Path:
        if self.database_path:
            return Path(self.database_path).expanduser()
        return config_path.parent / DATABASE_FILE_NAME


def ensure_parent(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError("no_parent", f"cannot create {path.parent}: {e}")


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Build Settings from the given config file (or the default one).

    A missing file is not an error; every field has a default. A file that
    is not valid TOML, or values of the wrong type, raise ConfigError.
    """
    path = path or default_config_path()
    token = _config_file.set(path)
    try:
        return Settings()
    except ValueError as e:
        # TOML syntax and validation errors are both ValueErrors
        raise ConfigError("invalid_format", f"{path}: {e}")
    except OSError as e:
        raise ConfigError("io", f"{path}: {e}")
    finally:
        _config_file.reset(token)


def save_tracked_channels(tracked_channels: list[str], path: Optional[Path] = None) -> Path:
    """
    Replace the tracked channels in the TOML config file.

    Every other key is written back exactly as the file had it; values that
    came from DISCORD_STATS_* environment variables are never persisted.
    """
    path = path or default_config_path()
    ensure_parent(path)
    try:
        document = dict(TomlConfigSettingsSource(Settings, toml_file=path).toml_data)
    except ValueError as e:
        raise ConfigError("invalid_format", f"{path}: {e}")
    except OSError as e:
        raise ConfigError("io", f"{path}: {e}")
    document["tracked_channels"] = list(tracked_channels)
    try:
        with open(path, "wb") as f:
            tomli_w.dump(document, f)
    except OSError as e:
        raise ConfigError("io", f"{path}: {e}")
    return path
