from __future__ import annotations


class BoardTapError(Exception):
    """Base class for all board-tap errors."""


class ConfigError(BoardTapError):
    """The configuration file is missing or malformed."""


class RegistryError(BoardTapError):
    """A module catalog is empty or contains an invalid module definition."""


class SourceError(BoardTapError):
    pass


class SourceUnavailable(SourceError):
    """File missing, permission denied, command not found or command failed."""


class SourceTimeout(SourceError):
    """Command did not complete within its timeout."""


class ExtractionError(BoardTapError):
    """Pattern did not match the raw source output."""


class ConversionError(BoardTapError):
    """A captured field could not be turned into a valid reading."""
