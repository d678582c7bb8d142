"""
Exceptions raised by the APKG codec and the scheduling engine.

Every error carries a human-readable message. Nothing here is retried
internally; the caller decides whether to re-prompt for another file.
"""


class DeckportError(Exception):
    """Base class for all deckport errors."""


class ContainerError(DeckportError):
    """The archive is missing, corrupt, or lacks a collection entry."""


class SnapshotError(DeckportError):
    """The embedded database is unreadable or misses a required table."""


class EmptyImportError(DeckportError):
    """A package was read successfully but yielded no usable cards."""


class SchedulingError(DeckportError):
    """Base class for scheduling misconfiguration."""


class UnknownAlgorithmError(SchedulingError):
    """No scheduling algorithm is registered under the requested name."""


class MissingConfigurationError(SchedulingError):
    """A parameterized algorithm was requested without its settings."""
