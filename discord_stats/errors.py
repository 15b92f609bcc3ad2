"""
Exception types and process exit codes.

Storage errors are caught by the event router and the HTTP layer.
Configuration, credential and connection errors are fatal at startup and
map to distinct exit codes in the CLI.
"""

# Exit codes used by the CLI, one per startup failure category
EXIT_CONFIG = 2
EXIT_CREDENTIAL = 3
EXIT_CONNECTION = 4
EXIT_STORAGE = 5


class StoreError(Exception):
    """Storage engine failure (connection or query error)."""


class EditSerializationError(StoreError):
    """An edit record holds JSON that cannot be decoded into two arrays."""

    def __init__(self, message_id: str, channel_id: str, reason: str):
        self.message_id = message_id
        self.channel_id = channel_id
        super().__init__(
            f"Corrupt edit history for message {message_id} in channel {channel_id}: {reason}"
        )


class ConfigError(Exception):
    """
    Invalid or unreadable configuration.

    kind is one of: no_home, no_parent, invalid_guild_format,
    invalid_channel_format, invalid_format, io.
    """

    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind}: {detail}" if detail else kind)


class CredentialError(Exception):
    """The gateway rejected the configured token."""


class GatewayConnectionError(Exception):
    """The gateway could not be reached."""


class HandshakeTimeout(GatewayConnectionError):
    """No ready event arrived within the allowed wait."""


class ScanFetchError(Exception):
    """A history page could not be fetched."""


class ResolutionError(LookupError):
    """A guild, channel or user name matched nothing, or more than one thing."""
