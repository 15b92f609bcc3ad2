"""Tests for configuration loading, saving and channel specifiers."""

import pytest

from discord_stats.config import (
    MAX_ID,
    TrackedChannel,
    format_channel_specifier,
    load_settings,
    parse_channel_specifier,
    save_tracked_channels,
)
from discord_stats.errors import ConfigError


class TestChannelSpecifier:

    def test_guild_channel(self):
        assert parse_channel_specifier("81384788765712384|381870553235193857") == TrackedChannel(
            81384788765712384, 381870553235193857
        )

    def test_bare_channel_is_direct_message(self):
        assert parse_channel_specifier("381870553235193857") == TrackedChannel(None, 381870553235193857)

    def test_max_id(self):
        assert parse_channel_specifier(f"{MAX_ID}|{MAX_ID}") == TrackedChannel(MAX_ID, MAX_ID)

    @pytest.mark.parametrize("spec,kind", [
        ("abc|123", "invalid_guild_format"),
        ("123|abc", "invalid_channel_format"),
        ("abc", "invalid_channel_format"),
        ("", "invalid_channel_format"),
        ("1|2|3", "invalid_channel_format"),
        (f"{MAX_ID + 1}", "invalid_channel_format"),
        ("-1|5", "invalid_guild_format"),
    ])
    def test_malformed(self, spec, kind):
        with pytest.raises(ConfigError) as excinfo:
            parse_channel_specifier(spec)
        assert excinfo.value.kind == kind

    @pytest.mark.parametrize("channel", [TrackedChannel(7, 70), TrackedChannel(None, 80)])
    def test_format_parses_back(self, channel):
        assert parse_channel_specifier(format_channel_specifier(channel)) == channel


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "config.toml")
        assert settings.token == ""
        assert settings.tracked_channels == []
        assert settings.http_port == 8080

    def test_reads_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('token = "abc"\ntracked_channels = ["7|70", "80"]\nhttp_port = 9000\n')

        settings = load_settings(path)

        assert settings.token == "abc"
        assert settings.http_port == 9000
        assert settings.tracked_channel_set() == {TrackedChannel(7, 70), TrackedChannel(None, 80)}

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text('token = "from-file"\n')
        monkeypatch.setenv("DISCORD_STATS_TOKEN", "from-env")

        assert load_settings(path).token == "from-env"

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("token = \n")

        with pytest.raises(ConfigError) as excinfo:
            load_settings(path)
        assert excinfo.value.kind == "invalid_format"

    def test_wrong_type(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('http_port = "not a port"\n')

        with pytest.raises(ConfigError):
            load_settings(path)

    def test_bad_specifier_is_reported_when_parsed(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('tracked_channels = ["guild|channel"]\n')

        settings = load_settings(path)
        with pytest.raises(ConfigError):
            settings.tracked_channel_set()

    def test_default_database_next_to_config(self, tmp_path):
        path = tmp_path / "config.toml"
        assert load_settings(path).database_file(path) == tmp_path / "stats.db"

    def test_unknown_log_level(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('log_level = "LOUD"\n')

        with pytest.raises(ConfigError):
            load_settings(path)


class TestSaveTrackedChannels:

    def test_creates_missing_file(self, tmp_path):
        path = tmp_path / "nested" / "config.toml"
        save_tracked_channels(["7|70"], path)

        assert load_settings(path).tracked_channels == ["7|70"]

    def test_other_keys_are_kept_as_written(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('token = "abc"\nhttp_port = 9000\ntracked_channels = ["80"]\n')

        save_tracked_channels(["80", "7|70"], path)

        loaded = load_settings(path)
        assert loaded.token == "abc"
        assert loaded.http_port == 9000
        assert loaded.tracked_channels == ["80", "7|70"]
        assert "log_level" not in path.read_text()

    def test_environment_values_are_not_persisted(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text('token = "from-file"\n')
        monkeypatch.setenv("DISCORD_STATS_TOKEN", "from-env")
        monkeypatch.setenv("DISCORD_STATS_HTTP_PORT", "9999")

        save_tracked_channels(load_settings(path).tracked_channels + ["80"], path)

        text = path.read_text()
        assert "from-env" not in text
        assert "9999" not in text
        assert 'token = "from-file"' in text

    def test_invalid_file_is_not_overwritten(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("token = [\n")

        with pytest.raises(ConfigError):
            save_tracked_channels(["80"], path)
        assert path.read_text() == "token = [\n"
