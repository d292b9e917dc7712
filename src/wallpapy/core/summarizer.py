"""Condense catalog history into the feedback sent to the prompt model.

The summary is bounded by a window size so the prompt request stays small
no matter how large the catalog grows. It is a pure function of the catalog
snapshot and the window sizes: the same inputs always produce the same
summary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from wallpapy.core.models import (
    Artifact,
    ArtifactStatus,
    CatalogSnapshot,
    FeedbackSummary,
    Rating,
    StyleProfile,
)

logger = logging.getLogger(__name__)


def _newest_first(artifacts: Iterable[Artifact]) -> list[Artifact]:
    """Sort by creation time then id, both descending, so ties are stable."""
    return sorted(artifacts, key=lambda a: (a.created_at, str(a.id)), reverse=True)


def _prompts_with_rating(artifacts: list[Artifact], rating: Rating, window: int) -> tuple:
    return tuple(a.prompt for a in artifacts if a.rating is rating)[:window]


def summarize(
    style: StyleProfile,
    catalog_snapshot: CatalogSnapshot,
    window: int = 5,
    recent_window: int = 10,
) -> FeedbackSummary:
    """Build the feedback summary for the next prompt.

    Args:
        style: Style profile of the upcoming run. Artifacts from every style
            contribute, since ratings express the user's taste in general.
        catalog_snapshot: Artifacts and comments to summarize
        window: Maximum number of liked, disliked and comment entries (K)
        recent_window: Maximum number of recent prompts listed for exclusion

    Returns:
        FeedbackSummary with each list ordered newest first. Empty when the
        catalog holds no succeeded artifacts and no comments.

    Raises:
        ValueError: If a window size is negative
    """
    if window < 0 or recent_window < 0:
        raise ValueError(f"Window sizes must be >= 0, got {window} and {recent_window}")

    artifacts = _newest_first(
        a for a in catalog_snapshot.artifacts if a.status is ArtifactStatus.SUCCEEDED
    )
    comments = sorted(
        catalog_snapshot.comments, key=lambda c: (c.created_at, str(c.id)), reverse=True
    )

    summary = FeedbackSummary(
        liked_prompts=_prompts_with_rating(artifacts, Rating.LIKED, window),
        disliked_prompts=_prompts_with_rating(artifacts, Rating.DISLIKED, window),
        recent_prompts=tuple(a.prompt for a in artifacts[:recent_window]),
        comments=tuple(c.text for c in comments[:window]),
    )

    logger.debug(
        f"Feedback for style '{style.tag}': {len(summary.liked_prompts)} liked, "
        f"{len(summary.disliked_prompts)} disliked, {len(summary.recent_prompts)} recent, "
        f"{len(summary.comments)} comments"
    )
    return summary
