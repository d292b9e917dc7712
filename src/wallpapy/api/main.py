"""Wallpapy FastAPI Application.

This module is the single entry point for the serving layer.  It defines the
application factory, all REST API routes, and the ``main()`` CLI function
that launches the uvicorn server.

Architecture
------------
- **Services** (catalog, image storage, orchestrator, scheduler) are built
  from :class:`~wallpapy.core.config.WallpapyConfig` when the application
  starts and stored on ``app.state``.  Tests pass pre-built services with
  scripted prompt and image clients.
- **Route handlers are synchronous**, so FastAPI runs them on its threadpool.
  A manual generation occupies one worker thread for the duration of the run
  while catalog reads and ratings keep being served.
- **The scheduler** runs in a daemon thread started by the lifespan handler
  and stopped on shutdown.

Endpoints
---------
========  ====================================  ================================
Method    Path                                  Purpose
========  ====================================  ================================
GET       ``/api/artifacts``                    Paginated listing (``rating``)
GET       ``/api/artifacts/{id}``               Single artifact
GET       ``/api/artifacts/{id}/image``         Image file (``variant``)
POST      ``/api/artifacts/{id}/rating``        Set rating
POST      ``/api/artifacts/{id}/recreate``      New image from the same prompt
DELETE    ``/api/artifacts/{id}``               Delete artifact and files
GET       ``/api/wallpaper/latest``             Newest wallpaper image
GET       ``/api/wallpaper/liked``              Random liked wallpaper image
POST      ``/api/generate``                     Manual generation trigger
GET       ``/api/comments``                     Recent comments
POST      ``/api/comments``                     Add a comment
DELETE    ``/api/comments/{id}``                Remove a comment
GET       ``/api/runs``                         Run log
GET       ``/api/status``                       Orchestrator and scheduler state
GET       ``/api/stats``                        Totals per rating
========  ====================================  ================================

Usage
-----
CLI (installed entry point)::

    wallpapy

Direct invocation::

    python -m wallpapy.api.main
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from wallpapy import __version__
from wallpapy.api.listing import artifact_payload, paginate_artifacts
from wallpapy.api.models import CommentRequest, GenerateRequest, RatingRequest
from wallpapy.core.catalog import ArtifactFilter, CatalogStore
from wallpapy.core.config import WallpapyConfig, config
from wallpapy.core.errors import (
    ArtifactNotFoundError,
    GenerationInProgressError,
    StorageError,
)
from wallpapy.core.finalizer import ArtifactFinalizer
from wallpapy.core.image_generator import create_image_client
from wallpapy.core.logging_config import configure_logging
from wallpapy.core.models import Artifact, GenerationRun, Rating, RunTrigger
from wallpapy.core.orchestrator import GenerationOrchestrator
from wallpapy.core.prompt_generator import OpenAIPromptClient
from wallpapy.core.scheduler import GenerationScheduler
from wallpapy.core.storage import ImageStorage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the route handlers need, built once per application."""

    config: WallpapyConfig
    catalog: CatalogStore
    storage: ImageStorage
    orchestrator: GenerationOrchestrator
    scheduler: GenerationScheduler | None = None


def build_services(app_config: WallpapyConfig) -> Services:
    """Wire the production services from configuration.

    Args:
        app_config: Loaded configuration.

    Returns:
        Services using the OpenAI prompt client and the configured image
        backend.
    """
    storage = ImageStorage(app_config.wallpapers_dir)
    catalog = CatalogStore(app_config.database_path)
    finalizer = ArtifactFinalizer(
        storage,
        catalog,
        webp_quality=app_config.webp_quality,
        thumbnail_size=(app_config.thumbnail_width, app_config.thumbnail_height),
        placeholder_size=app_config.placeholder_size,
    )
    prompt_client = OpenAIPromptClient(
        model=app_config.prompt_model,
        api_key=app_config.openai_api_key,
        timeout=app_config.prompt_timeout,
        max_prompt_length=app_config.max_prompt_length,
    )
    orchestrator = GenerationOrchestrator(
        catalog,
        prompt_client,
        create_image_client(app_config),
        finalizer,
        app_config.style_profile,
        prompt_timeout=app_config.prompt_timeout,
        image_timeout=app_config.image_timeout,
        finalize_timeout=app_config.finalize_timeout,
        feedback_window=app_config.feedback_window,
        recent_prompt_window=app_config.recent_prompt_window,
    )
    scheduler = GenerationScheduler(
        orchestrator,
        catalog,
        interval=timedelta(minutes=app_config.generation_interval_minutes),
    )
    logger.info(
        f"Services ready: {app_config.image_backend} image backend, "
        f"prompt model {app_config.prompt_model}"
    )
    return Services(app_config, catalog, storage, orchestrator, scheduler)


# ---------------------------------------------------------------------------
# Helpers.
# ---------------------------------------------------------------------------


def _services(request: Request) -> Services:
    return request.app.state.services


def _get_artifact(services: Services, artifact_id: uuid.UUID) -> Artifact:
    artifact = services.catalog.get(artifact_id)
    if artifact is None:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return artifact


def _image_response(
    services: Services, artifact: Artifact, variant: Literal["full", "thumbnail"]
) -> FileResponse:
    """Return the artifact's image file, falling back to full size if it has no thumbnail."""
    image = artifact.thumbnail if variant == "thumbnail" and artifact.thumbnail else artifact.image
    if image is None or not services.storage.exists(image.file_name):
        raise HTTPException(status_code=404, detail="Image file not found")
    return FileResponse(services.storage.path(image.file_name), media_type="image/webp")


def _run_response(services: Services, run: GenerationRun) -> dict:
    """Turn a finished run into a response body, or a 502 if it failed."""
    if not run.succeeded:
        raise HTTPException(status_code=502, detail=run.to_dict())
    artifact = services.catalog.get(run.artifact_id)
    return {
        "success": True,
        "run": run.to_dict(),
        "artifact": artifact_payload(artifact) if artifact else None,
    }


def _trigger(services: Services, trigger: RunTrigger, **kwargs) -> GenerationRun:
    try:
        return services.orchestrator.run_generation_cycle(trigger=trigger, **kwargs)
    except GenerationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.get("/artifacts")
def list_artifacts(
    request: Request,
    rating: Rating | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """Return a paginated listing of wallpapers, newest first.

    Args:
        rating: If provided, return only artifacts with this rating.
        page: Page number (1-indexed, clamped to the last page).
        per_page: Number of artifacts per page (1–100).

    Returns:
        Dictionary with keys ``total``, ``page``, ``per_page``, ``pages``,
        and ``artifacts``.
    """
    if per_page < 1 or per_page > 100:
        raise HTTPException(status_code=400, detail="per_page must be between 1 and 100")
    services = _services(request)
    artifacts = services.catalog.list(ArtifactFilter(rating=rating))
    return paginate_artifacts(artifacts, page, per_page)


@router.get("/artifacts/{artifact_id}")
def get_artifact(request: Request, artifact_id: uuid.UUID) -> dict:
    """Return a single artifact by UUID.

    Raises:
        HTTPException: 404 if the artifact is not found.
    """
    return artifact_payload(_get_artifact(_services(request), artifact_id))


@router.get("/artifacts/{artifact_id}/image")
def get_artifact_image(
    request: Request,
    artifact_id: uuid.UUID,
    variant: Literal["full", "thumbnail"] = "full",
) -> FileResponse:
    """Serve an artifact's full image or thumbnail as WebP."""
    services = _services(request)
    return _image_response(services, _get_artifact(services, artifact_id), variant)


@router.post("/artifacts/{artifact_id}/rating")
def set_rating(request: Request, artifact_id: uuid.UUID, req: RatingRequest) -> dict:
    """Set an artifact's rating.  The last write wins.

    Raises:
        HTTPException: 404 if the artifact is not found.
    """
    artifact = _services(request).catalog.set_rating(artifact_id, req.rating)
    return {"success": True, "artifact": artifact_payload(artifact)}


@router.post("/artifacts/{artifact_id}/recreate")
def recreate_artifact(request: Request, artifact_id: uuid.UUID) -> dict:
    """Generate a new wallpaper from an existing artifact's prompt.

    Raises:
        HTTPException: 404 if the artifact is not found, 409 if a run is in
            progress, 502 if the run failed.
    """
    services = _services(request)
    source = _get_artifact(services, artifact_id)
    run = _trigger(services, RunTrigger.RECREATE, prompt_override=source.prompt_data())
    return _run_response(services, run)


@router.delete("/artifacts/{artifact_id}")
def delete_artifact(request: Request, artifact_id: uuid.UUID) -> dict:
    """Delete an artifact's record and its image files.

    Raises:
        HTTPException: 404 if the artifact is not found.
    """
    services = _services(request)
    artifact = services.catalog.delete(artifact_id)
    for reference in artifact.storage_references:
        services.storage.delete(reference)
    return {"success": True, "deleted": str(artifact_id)}


@router.get("/wallpaper/latest")
def latest_wallpaper(
    request: Request, variant: Literal["full", "thumbnail"] = "full"
) -> FileResponse:
    """Serve the newest wallpaper image.

    Raises:
        HTTPException: 404 if no wallpaper exists yet.
    """
    services = _services(request)
    artifacts = services.catalog.list(ArtifactFilter(limit=1))
    if not artifacts:
        raise HTTPException(status_code=404, detail="No wallpapers yet")
    return _image_response(services, artifacts[0], variant)


@router.get("/wallpaper/liked")
def liked_wallpaper(
    request: Request, variant: Literal["full", "thumbnail"] = "full"
) -> FileResponse:
    """Serve a randomly chosen liked wallpaper image.

    Raises:
        HTTPException: 404 if no wallpaper is liked.
    """
    services = _services(request)
    liked = services.catalog.list(ArtifactFilter(rating=Rating.LIKED))
    if not liked:
        raise HTTPException(status_code=404, detail="No liked wallpapers")
    return _image_response(services, random.choice(liked), variant)


@router.post("/generate")
def generate(request: Request, req: GenerateRequest | None = None) -> dict:
    """Run one generation now and wait for its outcome.

    Returns:
        Dictionary with ``success``, ``run`` and the new ``artifact``.

    Raises:
        HTTPException: 409 if a run is already in progress, 502 if the run
            failed (the detail holds the failed run record).
    """
    services = _services(request)
    message = req.message if req else None
    run = _trigger(services, RunTrigger.MANUAL, message=message)
    return _run_response(services, run)


@router.get("/comments")
def list_comments(request: Request, limit: int = 50) -> dict:
    """Return the most recent comments, newest first."""
    comments = _services(request).catalog.list_comments(limit=limit)
    return {"comments": [c.model_dump(mode="json") for c in comments]}


@router.post("/comments")
def add_comment(request: Request, req: CommentRequest) -> dict:
    """Add a feedback comment for future prompts."""
    comment = _services(request).catalog.add_comment(req.text.strip())
    return {"success": True, "comment": comment.model_dump(mode="json")}


@router.delete("/comments/{comment_id}")
def delete_comment(request: Request, comment_id: uuid.UUID) -> dict:
    """Remove a comment.

    Raises:
        HTTPException: 404 if the comment is not found.
    """
    _services(request).catalog.remove_comment(comment_id)
    return {"success": True, "deleted": str(comment_id)}


@router.get("/runs")
def list_runs(request: Request, limit: int = 20) -> dict:
    """Return the run log, most recent first."""
    runs = _services(request).catalog.list_runs(limit=limit)
    return {"runs": [run.to_dict() for run in runs]}


@router.get("/status")
def get_status(request: Request) -> dict:
    """Return orchestrator and scheduler state.

    Returns:
        Dictionary with ``version``, ``stage``, ``busy``, ``current_run``,
        ``last_run``, ``scheduler_running`` and ``seconds_until_next_run``
        (``None`` when scheduling is disabled).
    """
    services = _services(request)
    orchestrator = services.orchestrator
    current = orchestrator.current_run
    last = services.catalog.last_run()
    scheduler = services.scheduler
    scheduled = scheduler is not None and services.config.scheduler_enabled
    return {
        "version": __version__,
        "stage": orchestrator.stage.value,
        "busy": orchestrator.is_busy,
        "current_run": current.to_dict() if current else None,
        "last_run": last.to_dict() if last else None,
        "scheduler_running": scheduler.is_running if scheduler else False,
        "seconds_until_next_run": scheduler.seconds_until_next_run() if scheduled else None,
    }


@router.get("/stats")
def get_stats(request: Request) -> dict:
    """Return totals per rating.

    Returns:
        Dictionary with ``total``, ``liked``, ``disliked``, ``unrated`` and
        ``comments``.
    """
    catalog = _services(request).catalog
    return {
        "total": catalog.count(),
        "liked": catalog.count(Rating.LIKED),
        "disliked": catalog.count(Rating.DISLIKED),
        "unrated": catalog.count(Rating.UNRATED),
        "comments": len(catalog.list_comments()),
    }


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


async def _not_found_handler(request: Request, exc: ArtifactNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": f"Storage error: {exc}"})


def create_app(
    app_config: WallpapyConfig | None = None,
    services: Services | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        app_config: Configuration; the global ``config`` when omitted.
        services: Pre-built services.  When omitted they are built from the
            configuration on startup.

    Returns:
        The configured application.
    """
    app_config = app_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build services if needed, start the scheduler, and clean up on shutdown."""
        # --- Startup -------------------------------------------------------
        if app.state.services is None:
            app.state.services = build_services(app_config)
        svc: Services = app.state.services
        if svc.scheduler is not None and app_config.scheduler_enabled:
            svc.scheduler.start()

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        if svc.scheduler is not None:
            svc.scheduler.stop()
        model_manager = getattr(svc.orchestrator.image_client, "model_manager", None)
        if model_manager is not None:
            model_manager.unload()
            logger.info("ModelManager unloaded on shutdown.")

    app = FastAPI(
        title="Wallpapy",
        description="Feedback-driven wallpaper generation API.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # Wallpaper rotation clients and the gallery page may run on other origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ArtifactNotFoundError, _not_found_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~wallpapy.core.config.config` (which
    loads from ``WALLPAPY_SERVER_HOST`` and ``WALLPAPY_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:4560``.

    This function is registered as the ``wallpapy`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    configure_logging(config.log_level)
    uvicorn.run(
        "wallpapy.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
