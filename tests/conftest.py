"""Shared pytest fixtures for Wallpapy tests."""

from __future__ import annotations

import io
import shutil
import tempfile
import threading
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from PIL import Image

from wallpapy.core.catalog import CatalogStore
from wallpapy.core.config import WallpapyConfig
from wallpapy.core.finalizer import ArtifactFinalizer
from wallpapy.core.models import (
    Artifact,
    ArtifactStatus,
    FeedbackSummary,
    ImageFile,
    PromptData,
    Rating,
    StyleProfile,
)
from wallpapy.core.orchestrator import GenerationOrchestrator
from wallpapy.core.storage import ImageStorage

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_png_bytes(width: int = 96, height: int = 64) -> bytes:
    """Encode a small gradient image as PNG."""
    image = Image.new("RGB", (width, height))
    for x in range(width):
        for y in range(height):
            image.putpixel((x, y), (x * 255 // width, y * 255 // height, 128))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakePromptClient:
    """Prompt client returning scripted results.

    Each entry in ``script`` is either a PromptData to return or an exception
    to raise. Once the script is used up, numbered prompts are returned.
    """

    def __init__(self, script: list | None = None):
        self.script = list(script or [])
        self.calls: list[tuple[StyleProfile, FeedbackSummary, str | None]] = []

    def generate_prompt(
        self, style: StyleProfile, summary: FeedbackSummary, message: str | None = None
    ) -> PromptData:
        self.calls.append((style, summary, message))
        if self.script:
            result = self.script.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        number = len(self.calls)
        return PromptData(prompt=f"A quiet valley, variation {number}", shortened_prompt="Valley")


class FakeImageClient:
    """Image client returning PNG bytes, a scripted error, or blocking."""

    def __init__(self, data: bytes | None = None, error: Exception | None = None):
        self.data = data if data is not None else make_png_bytes()
        self.error = error
        self.prompts: list[str] = []
        self.started = threading.Event()
        self.release = threading.Event()
        self.block = False

    def generate_image(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        self.started.set()
        if self.block:
            self.release.wait(10)
        if self.error is not None:
            raise self.error
        return self.data


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> WallpapyConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        WallpapyConfig instance for testing
    """
    return WallpapyConfig(
        data_dir=temp_dir / "data",
        wallpapers_dir=temp_dir / "wallpapers",
        models_dir=temp_dir / "models",
        device="cpu",  # Use CPU for tests
        torch_dtype="float32",
        openai_api_key="sk-test",
        scheduler_enabled=False,
        prompt_timeout=5.0,
        image_timeout=5.0,
        finalize_timeout=5.0,
        thumbnail_width=48,
        thumbnail_height=27,
        _env_file=None,
    )


@pytest.fixture
def style() -> StyleProfile:
    return StyleProfile(
        tag="test",
        style="Digital paintings",
        contents="Landscapes",
        negative_contents="No people",
    )


@pytest.fixture
def png_bytes() -> bytes:
    return make_png_bytes()


@pytest.fixture
def catalog(test_config: WallpapyConfig) -> CatalogStore:
    return CatalogStore(test_config.database_path)


@pytest.fixture
def storage(test_config: WallpapyConfig) -> ImageStorage:
    return ImageStorage(test_config.wallpapers_dir)


@pytest.fixture
def finalizer(storage: ImageStorage, catalog: CatalogStore) -> ArtifactFinalizer:
    return ArtifactFinalizer(storage, catalog, thumbnail_size=(48, 27), placeholder_size=16)


@pytest.fixture
def prompt_client() -> FakePromptClient:
    return FakePromptClient()


@pytest.fixture
def image_client() -> Generator[FakeImageClient, None, None]:
    client = FakeImageClient()
    yield client
    # Unblock any worker thread abandoned by a timeout test
    client.release.set()


@pytest.fixture
def orchestrator(
    catalog: CatalogStore,
    prompt_client: FakePromptClient,
    image_client: FakeImageClient,
    finalizer: ArtifactFinalizer,
    style: StyleProfile,
) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        catalog,
        prompt_client,
        image_client,
        finalizer,
        lambda: style,
        prompt_timeout=5.0,
        image_timeout=5.0,
        finalize_timeout=5.0,
        feedback_window=5,
        recent_prompt_window=10,
    )


@pytest.fixture
def artifact_factory() -> Callable[..., Artifact]:
    """Build finalized artifacts with increasing creation times.

    Returns:
        Function ``(prompt, rating=UNRATED, minutes=None) -> Artifact``
    """
    counter = {"n": 0}

    def factory(
        prompt: str,
        rating: Rating = Rating.UNRATED,
        minutes: int | None = None,
    ) -> Artifact:
        counter["n"] += 1
        offset = minutes if minutes is not None else counter["n"]
        artifact = Artifact(
            prompt=prompt,
            shortened_prompt=prompt[:20],
            style_tag="test",
            created_at=BASE_TIME + timedelta(minutes=offset),
            rating=rating,
            placeholder="data:image/jpeg;base64,AAAA",
            status=ArtifactStatus.SUCCEEDED,
        )
        artifact.image = ImageFile(file_name=f"{artifact.id}.webp", width=96, height=64)
        artifact.thumbnail = ImageFile(file_name=f"{artifact.id}_thumb.webp", width=48, height=27)
        return artifact

    return factory


@pytest.fixture
def services(test_config, catalog, storage, orchestrator):
    """API services wired to the fake prompt and image clients, without a scheduler."""
    from wallpapy.api.main import Services

    return Services(test_config, catalog, storage, orchestrator, scheduler=None)


@pytest.fixture
def test_client(test_config, services):
    """FastAPI TestClient running the full application lifespan."""
    from fastapi.testclient import TestClient

    from wallpapy.api.main import create_app

    with TestClient(create_app(test_config, services)) as client:
        yield client
