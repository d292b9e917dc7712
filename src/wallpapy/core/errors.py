"""Error taxonomy for the generation pipeline.

Every failure a generation run can end with maps onto one of these classes.
The orchestrator records ``error.kind`` (the class name) together with the
human readable message on the failed run, so operators can tell a quota
problem from a refused prompt at a glance.
"""

from __future__ import annotations


class WallpapyError(Exception):
    """Base class for all Wallpapy errors."""

    @property
    def kind(self) -> str:
        """Taxonomy name of the error, e.g. ``"ContentRejectedError"``."""
        return type(self).__name__


class ExternalServiceError(WallpapyError):
    """Transport, authentication or quota failure on an external AI call."""


class ContentRejectedError(WallpapyError):
    """The image model refused or filtered the prompt."""


class MalformedResponseError(WallpapyError):
    """The language model produced output that is not a usable prompt."""


class CorruptImageError(WallpapyError):
    """Returned image bytes could not be decoded."""


class StorageError(WallpapyError):
    """Catalog or image storage read/write failure."""


class ArtifactNotFoundError(StorageError):
    """No artifact (or comment) exists with the requested id."""


class StageTimeoutError(WallpapyError):
    """A pipeline stage did not finish within its timeout."""


class GenerationInProgressError(WallpapyError):
    """A generation run is already in flight; the trigger was rejected."""
