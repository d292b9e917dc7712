"""File-system storage for encoded wallpaper images."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from wallpapy.core.errors import StorageError

logger = logging.getLogger(__name__)


class ImageStorage:
    """Store encoded images as files inside a single directory.

    References handed out by this class are bare file names relative to the
    storage directory. Writes go through a temporary file in the same
    directory followed by ``os.replace`` so a reader never sees a truncated
    image.
    """

    def __init__(self, root: Path):
        """Initialize the storage directory.

        Args:
            root: Directory that holds the image files
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, reference: str) -> Path:
        """Resolve a reference to its absolute path.

        Raises:
            StorageError: If the reference points outside the storage directory
        """
        candidate = (self.root / reference).resolve()
        if candidate.parent != self.root.resolve():
            raise StorageError(f"Invalid storage reference: {reference!r}")
        return candidate

    def save(self, file_name: str, data: bytes) -> str:
        """Atomically write ``data`` under ``file_name`` and return its reference."""
        target = self.path(file_name)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=target.suffix)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error(f"Error writing image {file_name}: {e}")
            raise StorageError(f"Failed to write {file_name}: {e}") from e

        logger.debug(f"Stored {len(data)} bytes as {file_name}")
        return file_name

    def load(self, reference: str) -> bytes:
        """Read the bytes stored under ``reference``."""
        try:
            return self.path(reference).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {reference}: {e}") from e

    def exists(self, reference: str) -> bool:
        return self.path(reference).is_file()

    def delete(self, reference: str) -> bool:
        """Remove a stored file.

        Returns:
            True if a file was removed, False if it did not exist
        """
        target = self.path(reference)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {reference}: {e}") from e
        logger.info(f"Deleted stored image: {reference}")
        return True
