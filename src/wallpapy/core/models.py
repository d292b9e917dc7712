"""Domain models for the Wallpapy generation core.

Persisted records (artifacts, comments) and values exchanged with external
models (prompt data, style profiles) are Pydantic models so they validate on
the way in and serialise cleanly for the API. Transient, mutable state (the
in-flight generation run, feedback summaries, catalog snapshots) uses plain
dataclasses.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Rating(str, Enum):
    """User rating of an artifact. Any transition between values is valid."""

    UNRATED = "unrated"
    LIKED = "liked"
    DISLIKED = "disliked"


class ArtifactStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStage(str, Enum):
    """Stages of the generation state machine."""

    IDLE = "idle"
    SUMMARIZING = "summarizing"
    PROMPTING = "prompting"
    IMAGE_GENERATING = "image_generating"
    FINALIZING = "finalizing"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    RECREATE = "recreate"


class StyleProfile(BaseModel):
    """User-chosen aesthetic target. Owned by configuration."""

    model_config = ConfigDict(frozen=True)

    tag: str = "default"
    style: str
    contents: str = ""
    negative_contents: str = ""


class PromptData(BaseModel):
    """Validated output of the prompt model."""

    prompt: str = Field(..., description="The prompt to send to the image generator")
    shortened_prompt: str = Field(
        default="",
        description="Image description only, without style, max 25 words",
    )


class ImageFile(BaseModel):
    """Storage reference of one encoded image."""

    file_name: str
    width: int
    height: int


class Artifact(BaseModel):
    """One generated wallpaper candidate.

    Attributes:
        id: Random UUID, never reused.
        prompt: Text sent to the image model.
        shortened_prompt: Short title of the image description.
        style_tag: Style profile that produced the artifact.
        created_at: UTC creation time.
        rating: Current user rating (last write wins).
        placeholder: Data URI of a tiny blurred preview.
        image: Full size image reference.
        thumbnail: Downscaled preview image reference.
        status: Generation status.
        failure_reason: Why generation failed, if it did.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    prompt: str
    shortened_prompt: str = ""
    style_tag: str
    created_at: datetime = Field(default_factory=utcnow)
    rating: Rating = Rating.UNRATED
    placeholder: str | None = None
    image: ImageFile | None = None
    thumbnail: ImageFile | None = None
    status: ArtifactStatus = ArtifactStatus.PENDING
    failure_reason: str | None = None

    @property
    def storage_references(self) -> list[str]:
        """File names of every stored image belonging to this artifact."""
        return [f.file_name for f in (self.image, self.thumbnail) if f is not None]

    def prompt_data(self) -> PromptData:
        return PromptData(prompt=self.prompt, shortened_prompt=self.shortened_prompt)


class Comment(BaseModel):
    """Free-text user feedback that steers future prompts."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    created_at: datetime = Field(default_factory=utcnow)
    text: str = Field(..., min_length=1)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Point-in-time copy of the catalog contents the summarizer reads."""

    artifacts: tuple[Artifact, ...] = ()
    comments: tuple[Comment, ...] = ()


@dataclass(frozen=True)
class FeedbackSummary:
    """Bounded digest of past ratings and comments, newest first.

    Never persisted; recomputed from the catalog for every run.
    """

    liked_prompts: tuple[str, ...] = ()
    disliked_prompts: tuple[str, ...] = ()
    recent_prompts: tuple[str, ...] = ()
    comments: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        """True when there is no history at all (cold start)."""
        return not (
            self.liked_prompts or self.disliked_prompts or self.recent_prompts or self.comments
        )


@dataclass
class GenerationRun:
    """Record of one orchestration attempt.

    The in-flight run lives on the orchestrator; finished runs are appended
    to the catalog's run log.
    """

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    trigger: RunTrigger = RunTrigger.MANUAL
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    stage: RunStage = RunStage.IDLE
    status: RunStatus = RunStatus.RUNNING
    error_kind: str | None = None
    reason: str | None = None
    artifact_id: uuid.UUID | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def to_dict(self) -> dict:
        """JSON-friendly representation for logs and the API."""
        return {
            "id": str(self.id),
            "trigger": self.trigger.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stage": self.stage.value,
            "status": self.status.value,
            "error_kind": self.error_kind,
            "reason": self.reason,
            "artifact_id": str(self.artifact_id) if self.artifact_id else None,
        }
