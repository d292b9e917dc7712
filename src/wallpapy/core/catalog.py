"""SQLite catalog of generated wallpapers, ratings, comments and runs.

The catalog is the single source of truth for "what exists" and "what was
liked". Every public method opens a short-lived connection, runs inside one
transaction and holds the store's lock, so the serving layer and the
generation orchestrator can call it concurrently without racing.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from wallpapy.core.errors import ArtifactNotFoundError, StorageError
from wallpapy.core.models import (
    Artifact,
    ArtifactStatus,
    CatalogSnapshot,
    Comment,
    GenerationRun,
    ImageFile,
    Rating,
    RunStage,
    RunStatus,
    RunTrigger,
)

logger = logging.getLogger(__name__)

_ARTIFACT_COLUMNS = (
    "id, created_at, status, rating, style_tag, prompt, shortened_prompt, placeholder, "
    "image_file, image_width, image_height, thumb_file, thumb_width, thumb_height, "
    "failure_reason"
)


@dataclass(frozen=True)
class ArtifactFilter:
    """Selection criteria for :meth:`CatalogStore.list`.

    Attributes:
        status: Only artifacts with this status (succeeded by default)
        rating: Only artifacts with this rating, or any rating when None
        newest_first: Order by creation time descending instead of ascending
        limit: Maximum number of artifacts, or no limit when None
    """

    status: ArtifactStatus | None = ArtifactStatus.SUCCEEDED
    rating: Rating | None = None
    newest_first: bool = True
    limit: int | None = None


class CatalogStore:
    """Durable, internally synchronized catalog backed by SQLite."""

    def __init__(self, db_path: Path):
        """Initialize the catalog database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._initialize_db()
        logger.info(f"Initialized catalog database at {self.db_path}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Yield a cursor inside one locked transaction.

        Commits on success, rolls back on error and always closes the
        connection. ``sqlite3.Error`` is re-raised as :class:`StorageError`.
        """
        with self._lock:
            try:
                conn = sqlite3.connect(self.db_path, timeout=30)
            except sqlite3.Error as e:
                logger.error(f"Error opening catalog {self.db_path}: {e}")
                raise StorageError(f"Cannot open catalog: {e}") from e
            try:
                with conn:
                    yield conn.cursor()
            except sqlite3.Error as e:
                logger.error(f"Catalog operation failed: {e}")
                raise StorageError(str(e)) from e
            finally:
                conn.close()

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    rating TEXT NOT NULL DEFAULT 'unrated',
                    style_tag TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    shortened_prompt TEXT NOT NULL DEFAULT '',
                    placeholder TEXT,
                    image_file TEXT UNIQUE,
                    image_width INTEGER,
                    image_height INTEGER,
                    thumb_file TEXT,
                    thumb_width INTEGER,
                    thumb_height INTEGER,
                    failure_reason TEXT
                )
                """)

            # Feedback window and wallpaper rotation both read by rating + date
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_rating_created
                ON artifacts(rating, created_at DESC)
                """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    text TEXT NOT NULL
                )
                """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    trigger TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error_kind TEXT,
                    reason TEXT,
                    artifact_id TEXT
                )
                """)

    # -- Artifacts ----------------------------------------------------------

    def put(self, artifact: Artifact) -> None:
        """Insert a finalized artifact in a single atomic write.

        Raises:
            StorageError: If the artifact is not finalized, its id already
                exists, or the write fails
        """
        if (
            artifact.status is not ArtifactStatus.SUCCEEDED
            or artifact.image is None
            or not artifact.placeholder
        ):
            raise StorageError(f"Refusing to store unfinalized artifact {artifact.id}")

        thumb = artifact.thumbnail
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"INSERT INTO artifacts ({_ARTIFACT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        str(artifact.id),
                        artifact.created_at.isoformat(timespec="microseconds"),
                        artifact.status.value,
                        artifact.rating.value,
                        artifact.style_tag,
                        artifact.prompt,
                        artifact.shortened_prompt,
                        artifact.placeholder,
                        artifact.image.file_name,
                        artifact.image.width,
                        artifact.image.height,
                        thumb.file_name if thumb else None,
                        thumb.width if thumb else None,
                        thumb.height if thumb else None,
                        artifact.failure_reason,
                    ),
                )
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise StorageError(f"Artifact {artifact.id} already exists") from e.__cause__
            raise

        logger.info(f"Stored artifact {artifact.id} ({artifact.image.file_name})")

    def get(self, artifact_id: uuid.UUID | str) -> Artifact | None:
        """Return the artifact with ``artifact_id`` or None if it doesn't exist."""
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE id = ? LIMIT 1",
                (str(artifact_id),),
            )
            row = cursor.fetchone()
        return self._row_to_artifact(row) if row else None

    def list(self, criteria: ArtifactFilter | None = None) -> list[Artifact]:
        """List artifacts matching ``criteria`` ordered by creation time."""
        criteria = criteria or ArtifactFilter()
        clauses: list[str] = []
        params: list = []

        if criteria.status is not None:
            clauses.append("status = ?")
            params.append(criteria.status.value)
        if criteria.rating is not None:
            clauses.append("rating = ?")
            params.append(criteria.rating.value)

        query = f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)

        # Ties on created_at are broken by id so ordering is total and stable
        direction = "DESC" if criteria.newest_first else "ASC"
        query += f" ORDER BY created_at {direction}, id {direction}"

        if criteria.limit is not None:
            query += " LIMIT ?"
            params.append(criteria.limit)

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_artifact(row) for row in rows]

    def set_rating(self, artifact_id: uuid.UUID | str, rating: Rating) -> Artifact:
        """Set the rating of an artifact, leaving every other field untouched.

        Returns:
            The updated artifact

        Raises:
            ArtifactNotFoundError: If no artifact has this id
            StorageError: If the write fails
        """
        rating = Rating(rating)
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE artifacts SET rating = ? WHERE id = ?",
                (rating.value, str(artifact_id)),
            )
            if cursor.rowcount == 0:
                raise ArtifactNotFoundError(f"Artifact not found: {artifact_id}")
            cursor.execute(
                f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE id = ?",
                (str(artifact_id),),
            )
            row = cursor.fetchone()

        logger.info(f"Rated artifact {artifact_id}: {rating.value}")
        return self._row_to_artifact(row)

    def delete(self, artifact_id: uuid.UUID | str) -> Artifact:
        """Remove an artifact record and return it.

        Stored image files are not touched; the caller removes them using
        :attr:`Artifact.storage_references`.

        Raises:
            ArtifactNotFoundError: If no artifact has this id
        """
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE id = ?",
                (str(artifact_id),),
            )
            row = cursor.fetchone()
            if row is None:
                raise ArtifactNotFoundError(f"Artifact not found: {artifact_id}")
            cursor.execute("DELETE FROM artifacts WHERE id = ?", (str(artifact_id),))

        logger.info(f"Removed artifact {artifact_id}")
        return self._row_to_artifact(row)

    def count(self, rating: Rating | None = None) -> int:
        """Count succeeded artifacts, optionally only those with ``rating``."""
        query = "SELECT COUNT(*) FROM artifacts WHERE status = ?"
        params: list = [ArtifactStatus.SUCCEEDED.value]
        if rating is not None:
            query += " AND rating = ?"
            params.append(Rating(rating).value)

        with self._transaction() as cursor:
            cursor.execute(query, params)
            result = cursor.fetchone()
        return result[0] if result else 0

    def snapshot(self) -> CatalogSnapshot:
        """Consistent copy of all succeeded artifacts and comments, newest first."""
        with self._lock:
            artifacts = self.list(ArtifactFilter())
            comments = self.list_comments()
        return CatalogSnapshot(artifacts=tuple(artifacts), comments=tuple(comments))

    # -- Comments -----------------------------------------------------------

    def add_comment(self, text: str) -> Comment:
        comment = Comment(text=text.strip())
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO comments (id, created_at, text) VALUES (?, ?, ?)",
                (
                    str(comment.id),
                    comment.created_at.isoformat(timespec="microseconds"),
                    comment.text,
                ),
            )
        logger.info(f"Added comment {comment.id}")
        return comment

    def remove_comment(self, comment_id: uuid.UUID | str) -> None:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM comments WHERE id = ?", (str(comment_id),))
            if cursor.rowcount == 0:
                raise ArtifactNotFoundError(f"Comment not found: {comment_id}")
        logger.info(f"Removed comment {comment_id}")

    def list_comments(self, limit: int | None = None) -> list[Comment]:
        """Get comments, newest first."""
        query = "SELECT id, created_at, text FROM comments ORDER BY created_at DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [
            Comment(id=uuid.UUID(row[0]), created_at=datetime.fromisoformat(row[1]), text=row[2])
            for row in rows
        ]

    # -- Run log ------------------------------------------------------------

    def record_run(self, run: GenerationRun) -> None:
        """Insert or update a generation run in the run log."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT OR REPLACE INTO runs
                    (id, trigger, started_at, finished_at, stage, status,
                     error_kind, reason, artifact_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(run.id),
                    run.trigger.value,
                    run.started_at.isoformat(timespec="microseconds"),
                    (
                        run.finished_at.isoformat(timespec="microseconds")
                        if run.finished_at
                        else None
                    ),
                    run.stage.value,
                    run.status.value,
                    run.error_kind,
                    run.reason,
                    str(run.artifact_id) if run.artifact_id else None,
                ),
            )

    def list_runs(self, limit: int | None = None) -> list[GenerationRun]:
        """Get recorded runs, most recently started first."""
        query = (
            "SELECT id, trigger, started_at, finished_at, stage, status, error_kind, reason, "
            "artifact_id FROM runs ORDER BY started_at DESC, id DESC"
        )
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    def last_run(self) -> GenerationRun | None:
        runs = self.list_runs(limit=1)
        return runs[0] if runs else None

    # -- Row mapping --------------------------------------------------------

    @staticmethod
    def _row_to_artifact(row: tuple) -> Artifact:
        (
            artifact_id,
            created_at,
            status,
            rating,
            style_tag,
            prompt,
            shortened_prompt,
            placeholder,
            image_file,
            image_width,
            image_height,
            thumb_file,
            thumb_width,
            thumb_height,
            failure_reason,
        ) = row
        return Artifact(
            id=uuid.UUID(artifact_id),
            created_at=datetime.fromisoformat(created_at),
            status=ArtifactStatus(status),
            rating=Rating(rating),
            style_tag=style_tag,
            prompt=prompt,
            shortened_prompt=shortened_prompt,
            placeholder=placeholder,
            image=(
                ImageFile(file_name=image_file, width=image_width, height=image_height)
                if image_file
                else None
            ),
            thumbnail=(
                ImageFile(file_name=thumb_file, width=thumb_width, height=thumb_height)
                if thumb_file
                else None
            ),
            failure_reason=failure_reason,
        )

    @staticmethod
    def _row_to_run(row: tuple) -> GenerationRun:
        run_id, trigger, started_at, finished_at, stage, status, kind, reason, artifact_id = row
        return GenerationRun(
            id=uuid.UUID(run_id),
            trigger=RunTrigger(trigger),
            started_at=datetime.fromisoformat(started_at),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
            stage=RunStage(stage),
            status=RunStatus(status),
            error_kind=kind,
            reason=reason,
            artifact_id=uuid.UUID(artifact_id) if artifact_id else None,
        )
