"""Pydantic request models for the Wallpapy API.

Models
------
RatingRequest
    Payload for ``POST /api/artifacts/{id}/rating``.
GenerateRequest
    Payload for ``POST /api/generate``: an optional one-off wish for the
    next wallpaper.
CommentRequest
    Payload for ``POST /api/comments``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from wallpapy.core.models import Rating


class RatingRequest(BaseModel):
    """Request body for setting an artifact's rating.

    Attributes:
        rating: New rating. Any value may replace any other.
    """

    rating: Rating = Field(..., description="One of 'unrated', 'liked', 'disliked'.")


class GenerateRequest(BaseModel):
    """Request body for a manual generation.

    Attributes:
        message: Optional request forwarded to the prompt model for this
            image only, e.g. ``"something with the sea"``.
    """

    message: str | None = Field(
        default=None,
        max_length=500,
        description="One-off request for this image.",
    )


class CommentRequest(BaseModel):
    """Request body for adding a feedback comment.

    Attributes:
        text: Free-text feedback, included in future prompt requests.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    text: str = Field(..., min_length=1, max_length=1000, description="Comment text.")
