"""Tests for wallpapy.core.catalog: SQLite catalog store.

Tests cover:
- Put / get round trip and the single-write rule for unfinalized artifacts.
- Duplicate ids are rejected.
- Listing by rating, ordering, and limit.
- Rating transitions (last write wins) and unknown ids.
- Deletion, counting, snapshots, comments, and the run log.
- Persistence across re-opening the same database file.
"""

from __future__ import annotations

import threading
import uuid
from datetime import timedelta

import pytest

from wallpapy.core.catalog import ArtifactFilter, CatalogStore
from wallpapy.core.errors import ArtifactNotFoundError, StorageError
from wallpapy.core.models import (
    Artifact,
    ArtifactStatus,
    GenerationRun,
    Rating,
    RunStage,
    RunStatus,
    RunTrigger,
)


class TestPutAndGet:
    """Test artifact insertion and lookup."""

    def test_round_trip(self, catalog: CatalogStore, artifact_factory):
        """A stored artifact should come back with every field intact."""
        artifact = artifact_factory("A misty fjord at dawn", Rating.LIKED)
        catalog.put(artifact)

        loaded = catalog.get(artifact.id)
        assert loaded == artifact

    def test_get_unknown_returns_none(self, catalog: CatalogStore):
        assert catalog.get(uuid.uuid4()) is None

    def test_duplicate_id_rejected(self, catalog: CatalogStore, artifact_factory):
        """Ids are never reused: a second put with the same id must fail."""
        artifact = artifact_factory("Prompt")
        catalog.put(artifact)

        duplicate = artifact.model_copy(update={"prompt": "Other"})
        with pytest.raises(StorageError, match="already exists"):
            catalog.put(duplicate)
        assert catalog.get(artifact.id).prompt == "Prompt"

    def test_unfinalized_artifact_rejected(self, catalog: CatalogStore):
        """Only fully finalized artifacts may be written."""
        pending = Artifact(prompt="Prompt", style_tag="test")
        with pytest.raises(StorageError, match="unfinalized"):
            catalog.put(pending)
        assert catalog.list(ArtifactFilter(status=None)) == []

    def test_artifact_without_placeholder_rejected(self, catalog: CatalogStore, artifact_factory):
        artifact = artifact_factory("Prompt")
        artifact.placeholder = None
        with pytest.raises(StorageError):
            catalog.put(artifact)

    def test_failed_artifact_rejected(self, catalog: CatalogStore, artifact_factory):
        artifact = artifact_factory("Prompt")
        artifact.status = ArtifactStatus.FAILED
        with pytest.raises(StorageError):
            catalog.put(artifact)


class TestListing:
    """Test listing with filters and ordering."""

    def test_newest_first_by_default(self, catalog: CatalogStore, artifact_factory):
        first = artifact_factory("first")
        second = artifact_factory("second")
        third = artifact_factory("third")
        for artifact in (second, third, first):
            catalog.put(artifact)

        prompts = [a.prompt for a in catalog.list()]
        assert prompts == ["third", "second", "first"]

    def test_oldest_first(self, catalog: CatalogStore, artifact_factory):
        for prompt in ("first", "second"):
            catalog.put(artifact_factory(prompt))

        prompts = [a.prompt for a in catalog.list(ArtifactFilter(newest_first=False))]
        assert prompts == ["first", "second"]

    def test_filter_liked(self, catalog: CatalogStore, artifact_factory):
        catalog.put(artifact_factory("liked one", Rating.LIKED))
        catalog.put(artifact_factory("disliked", Rating.DISLIKED))
        catalog.put(artifact_factory("liked two", Rating.LIKED))
        catalog.put(artifact_factory("unrated"))

        liked = catalog.list(ArtifactFilter(rating=Rating.LIKED))
        assert [a.prompt for a in liked] == ["liked two", "liked one"]

    def test_limit(self, catalog: CatalogStore, artifact_factory):
        for i in range(5):
            catalog.put(artifact_factory(f"prompt {i}"))

        latest = catalog.list(ArtifactFilter(limit=2))
        assert [a.prompt for a in latest] == ["prompt 4", "prompt 3"]

    def test_equal_timestamps_have_stable_order(self, catalog: CatalogStore, artifact_factory):
        """Ties on created_at are broken by id, so repeated listings agree."""
        for i in range(4):
            catalog.put(artifact_factory(f"same time {i}", minutes=0))

        assert catalog.list() == catalog.list()


class TestRating:
    """Test rating transitions."""

    @pytest.mark.parametrize(
        "start,end",
        [
            (Rating.UNRATED, Rating.LIKED),
            (Rating.LIKED, Rating.DISLIKED),
            (Rating.DISLIKED, Rating.UNRATED),
            (Rating.LIKED, Rating.UNRATED),
        ],
    )
    def test_any_transition_is_valid(self, catalog: CatalogStore, artifact_factory, start, end):
        artifact = artifact_factory("Prompt", start)
        catalog.put(artifact)

        updated = catalog.set_rating(artifact.id, end)
        assert updated.rating is end
        assert catalog.get(artifact.id).rating is end

    def test_last_write_wins(self, catalog: CatalogStore, artifact_factory):
        artifact = artifact_factory("Prompt")
        catalog.put(artifact)

        catalog.set_rating(artifact.id, Rating.LIKED)
        catalog.set_rating(artifact.id, Rating.DISLIKED)
        assert catalog.get(artifact.id).rating is Rating.DISLIKED

    def test_rating_leaves_other_fields(self, catalog: CatalogStore, artifact_factory):
        artifact = artifact_factory("Prompt")
        catalog.put(artifact)

        updated = catalog.set_rating(artifact.id, Rating.LIKED)
        assert updated.model_copy(update={"rating": Rating.UNRATED}) == artifact

    def test_unknown_id(self, catalog: CatalogStore):
        with pytest.raises(ArtifactNotFoundError):
            catalog.set_rating(uuid.uuid4(), Rating.LIKED)

    def test_rating_accepts_string_value(self, catalog: CatalogStore, artifact_factory):
        artifact = artifact_factory("Prompt")
        catalog.put(artifact)
        assert catalog.set_rating(str(artifact.id), "liked").rating is Rating.LIKED


class TestDeleteAndCount:
    def test_delete_returns_record(self, catalog: CatalogStore, artifact_factory):
        artifact = artifact_factory("Prompt")
        catalog.put(artifact)

        removed = catalog.delete(artifact.id)
        assert removed.id == artifact.id
        assert removed.storage_references == [
            f"{artifact.id}.webp",
            f"{artifact.id}_thumb.webp",
        ]
        assert catalog.get(artifact.id) is None

    def test_delete_unknown(self, catalog: CatalogStore):
        with pytest.raises(ArtifactNotFoundError):
            catalog.delete(uuid.uuid4())

    def test_count_per_rating(self, catalog: CatalogStore, artifact_factory):
        catalog.put(artifact_factory("a", Rating.LIKED))
        catalog.put(artifact_factory("b", Rating.LIKED))
        catalog.put(artifact_factory("c", Rating.DISLIKED))
        catalog.put(artifact_factory("d"))

        assert catalog.count() == 4
        assert catalog.count(Rating.LIKED) == 2
        assert catalog.count(Rating.DISLIKED) == 1
        assert catalog.count(Rating.UNRATED) == 1


class TestComments:
    def test_add_and_list_newest_first(self, catalog: CatalogStore):
        catalog.add_comment("More oceans please")
        catalog.add_comment("  Fewer castles  ")

        comments = catalog.list_comments()
        assert [c.text for c in comments] == ["Fewer castles", "More oceans please"]

    def test_list_limit(self, catalog: CatalogStore):
        for i in range(3):
            catalog.add_comment(f"comment {i}")
        assert len(catalog.list_comments(limit=2)) == 2

    def test_remove(self, catalog: CatalogStore):
        comment = catalog.add_comment("Too dark")
        catalog.remove_comment(comment.id)
        assert catalog.list_comments() == []

    def test_remove_unknown(self, catalog: CatalogStore):
        with pytest.raises(ArtifactNotFoundError):
            catalog.remove_comment(uuid.uuid4())

    def test_snapshot_contains_artifacts_and_comments(
        self, catalog: CatalogStore, artifact_factory
    ):
        catalog.put(artifact_factory("Prompt"))
        catalog.add_comment("Nice")

        snapshot = catalog.snapshot()
        assert [a.prompt for a in snapshot.artifacts] == ["Prompt"]
        assert [c.text for c in snapshot.comments] == ["Nice"]


class TestRunLog:
    def test_record_and_last_run(self, catalog: CatalogStore):
        older = GenerationRun(trigger=RunTrigger.SCHEDULED)
        newer = GenerationRun(
            trigger=RunTrigger.MANUAL,
            started_at=older.started_at + timedelta(minutes=5),
            stage=RunStage.PROMPTING,
            status=RunStatus.FAILED,
            error_kind="ExternalServiceError",
            reason="quota",
        )
        catalog.record_run(older)
        catalog.record_run(newer)

        last = catalog.last_run()
        assert last.id == newer.id
        assert last.status is RunStatus.FAILED
        assert last.stage is RunStage.PROMPTING
        assert last.error_kind == "ExternalServiceError"
        assert [r.id for r in catalog.list_runs()] == [newer.id, older.id]

    def test_record_run_updates_existing(self, catalog: CatalogStore):
        run = GenerationRun()
        catalog.record_run(run)
        run.status = RunStatus.SUCCEEDED
        catalog.record_run(run)

        runs = catalog.list_runs()
        assert len(runs) == 1
        assert runs[0].status is RunStatus.SUCCEEDED

    def test_last_run_empty(self, catalog: CatalogStore):
        assert catalog.last_run() is None


class TestPersistence:
    def test_survives_reopen(self, test_config, artifact_factory):
        """Everything written is visible to a new store on the same file."""
        first = CatalogStore(test_config.database_path)
        artifact = artifact_factory("Persistent", Rating.LIKED)
        first.put(artifact)
        first.add_comment("Keep it calm")
        first.record_run(GenerationRun())

        reopened = CatalogStore(test_config.database_path)
        assert reopened.get(artifact.id) == artifact
        assert [c.text for c in reopened.list_comments()] == ["Keep it calm"]
        assert reopened.last_run() is not None

    def test_unwritable_path_raises_storage_error(self, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")
        with pytest.raises((StorageError, OSError)):
            CatalogStore(blocker / "catalog.db")


class TestConcurrency:
    def test_parallel_puts_ratings_and_reads(self, catalog: CatalogStore, artifact_factory):
        """Rating updates and listings race new inserts without errors."""
        existing = [artifact_factory(f"existing {i}") for i in range(10)]
        for artifact in existing:
            catalog.put(artifact)
        batches = [[artifact_factory(f"new {w}-{i}") for i in range(10)] for w in range(4)]
        ratings = list(Rating)
        errors: list[Exception] = []

        def collect(func):
            def run():
                try:
                    func()
                except Exception as e:
                    errors.append(e)

            return run

        def writer(batch):
            for artifact in batch:
                catalog.put(artifact)

        def rater(offset):
            for i, artifact in enumerate(existing * 3):
                catalog.set_rating(artifact.id, ratings[(i + offset) % len(ratings)])

        def reader():
            for artifact in existing * 2:
                catalog.list()
                assert catalog.get(artifact.id) is not None

        targets = [lambda b=b: writer(b) for b in batches]
        targets += [lambda o=o: rater(o) for o in range(3)]
        targets += [reader, reader]
        threads = [threading.Thread(target=collect(t)) for t in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert errors == []
        stored = catalog.list()
        assert len(stored) == 50
        expected = {a.id for a in existing} | {a.id for batch in batches for a in batch}
        assert {a.id for a in stored} == expected
        assert all(a.rating in ratings for a in stored)
        assert sum(catalog.count(r) for r in ratings) == 50
