"""Errors raised while exporting a report.

Configuration, planning, collection and write errors are fatal for the run
and surface to the caller. Reference-data cache failures never raise.
"""


class ExportError(Exception):
    """Base class for all export failures."""


class ConfigurationError(ExportError):
    """Raised when the configuration document is malformed or a required setting is missing."""


class PlanningError(ExportError):
    """Raised when a property plan cannot be built or repaired."""


class PlanExhaustedError(PlanningError):
    """Raised when removing rejected properties leaves nothing to select."""

    def __init__(self, dropped: list[str]):
        self.dropped = dropped
        if dropped:
            message = "No usable properties left after dropping: " + ", ".join(dropped)
        else:
            message = "No usable properties requested"
        super().__init__(message)


class CollectionError(ExportError):
    """Raised when the upstream data source rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StorageWriteError(ExportError):
    """Raised when output cannot be serialized or published to storage."""
