"""Artifact listing helpers for the Wallpapy API.

Route handlers use these to turn catalog records into JSON payloads and to
paginate listings, so the handlers only deal with HTTP concerns.
"""

from __future__ import annotations

from wallpapy.core.models import Artifact


def artifact_payload(artifact: Artifact) -> dict:
    """Serialise an artifact and add the URLs its image files are served at.

    Args:
        artifact: Catalog record.

    Returns:
        JSON-friendly dictionary with ``image_url`` and ``thumbnail_url``.
    """
    payload = artifact.model_dump(mode="json")
    base = f"/api/artifacts/{artifact.id}/image"
    payload["image_url"] = base
    payload["thumbnail_url"] = f"{base}?variant=thumbnail" if artifact.thumbnail else base
    return payload


def paginate_artifacts(artifacts: list[Artifact], page: int, per_page: int) -> dict:
    """Paginate artifacts and clamp the requested page to valid bounds.

    Clamping matters after deletes: when the last artifact on the final page
    is removed, the previous page becomes the last one and is returned
    instead of an empty page.

    Args:
        artifacts: Artifacts in display order.
        page: Requested one-based page number.
        per_page: Requested items per page.

    Returns:
        Dictionary containing ``total``, ``page``, ``per_page``, ``pages`` and
        ``artifacts`` for the resolved page.
    """
    total = len(artifacts)
    pages = (total + per_page - 1) // per_page if total > 0 else 1
    resolved_page = min(max(page, 1), pages)

    start = (resolved_page - 1) * per_page
    end = start + per_page

    return {
        "total": total,
        "page": resolved_page,
        "per_page": per_page,
        "pages": pages,
        "artifacts": [artifact_payload(a) for a in artifacts[start:end]],
    }
