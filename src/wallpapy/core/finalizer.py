"""Turn raw image bytes into a stored, catalogued artifact.

Finalization happens in two steps:

1. :meth:`ArtifactFinalizer.prepare` decodes the bytes with Pillow, re-encodes
   the full image and a thumbnail as WebP and derives the placeholder. It has
   no side effects, so it can run on a worker thread that may be abandoned
   when the finalize stage times out.
2. :meth:`ArtifactFinalizer.commit` writes the encoded files and performs the
   single catalog insert. When the insert fails, the files are removed again
   so no image is left without a record.
"""

from __future__ import annotations

import base64
import io
import logging
import uuid
from dataclasses import dataclass

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from wallpapy.core.catalog import CatalogStore
from wallpapy.core.errors import CorruptImageError, StorageError
from wallpapy.core.models import (
    Artifact,
    ArtifactStatus,
    ImageFile,
    PromptData,
    StyleProfile,
)
from wallpapy.core.storage import ImageStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedArtifact:
    """An artifact record plus the encoded files it references."""

    artifact: Artifact
    image_data: bytes
    thumbnail_data: bytes


def _encode(image: Image.Image, format: str, **params) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=format, **params)
    return buffer.getvalue()


class ArtifactFinalizer:
    """Derive, store and catalogue the files of a generated wallpaper.

    Args:
        storage: Where encoded images are written
        catalog: Where the finished artifact is recorded
        webp_quality: WebP quality for the full image and thumbnail
        thumbnail_size: Exact (width, height) of the thumbnail
        placeholder_size: Long edge of the placeholder in pixels
    """

    def __init__(
        self,
        storage: ImageStorage,
        catalog: CatalogStore,
        webp_quality: int = 90,
        thumbnail_size: tuple[int, int] = (854, 480),
        placeholder_size: int = 32,
    ):
        self.storage = storage
        self.catalog = catalog
        self.webp_quality = webp_quality
        self.thumbnail_size = thumbnail_size
        self.placeholder_size = placeholder_size

    def prepare(
        self, raw_bytes: bytes, prompt_data: PromptData, style: StyleProfile
    ) -> PreparedArtifact:
        """Decode and encode the image and assemble the artifact record.

        Raises:
            CorruptImageError: If the bytes are not a decodable image
        """
        if not raw_bytes:
            raise CorruptImageError("Image model returned no bytes")

        try:
            with Image.open(io.BytesIO(raw_bytes)) as source:
                source.load()
                image = source.convert("RGB")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise CorruptImageError(f"Cannot decode generated image: {e}") from e

        artifact_id = uuid.uuid4()
        image_data = _encode(image, "WEBP", quality=self.webp_quality)

        thumbnail = ImageOps.fit(image, self.thumbnail_size, Image.Resampling.LANCZOS)
        thumbnail_data = _encode(thumbnail, "WEBP", quality=self.webp_quality)

        artifact = Artifact(
            id=artifact_id,
            prompt=prompt_data.prompt,
            shortened_prompt=prompt_data.shortened_prompt,
            style_tag=style.tag,
            placeholder=self.make_placeholder(image),
            image=ImageFile(
                file_name=f"{artifact_id}.webp", width=image.width, height=image.height
            ),
            thumbnail=ImageFile(
                file_name=f"{artifact_id}_thumb.webp",
                width=thumbnail.width,
                height=thumbnail.height,
            ),
            status=ArtifactStatus.SUCCEEDED,
        )
        logger.debug(
            f"Prepared artifact {artifact_id}: {image.width}x{image.height}, "
            f"{len(image_data)} bytes image, {len(thumbnail_data)} bytes thumbnail"
        )
        return PreparedArtifact(artifact, image_data, thumbnail_data)

    def make_placeholder(self, image: Image.Image) -> str:
        """Encode a tiny blurred JPEG preview as a data URI."""
        small = image.copy()
        small.thumbnail((self.placeholder_size, self.placeholder_size), Image.Resampling.BILINEAR)
        small = small.filter(ImageFilter.GaussianBlur(radius=1))
        encoded = base64.b64encode(_encode(small, "JPEG", quality=50)).decode("ascii")
        return f"data:image/jpeg;base64,{encoded}"

    def commit(self, prepared: PreparedArtifact) -> Artifact:
        """Store the encoded files and insert the artifact into the catalog.

        Raises:
            StorageError: If a file cannot be written or the insert fails
        """
        artifact = prepared.artifact
        written: list[str] = []
        try:
            written.append(self.storage.save(artifact.image.file_name, prepared.image_data))
            written.append(
                self.storage.save(artifact.thumbnail.file_name, prepared.thumbnail_data)
            )
            self.catalog.put(artifact)
        except StorageError:
            for reference in written:
                try:
                    self.storage.delete(reference)
                except StorageError as cleanup_error:
                    logger.error(f"Could not remove orphaned file {reference}: {cleanup_error}")
            raise

        logger.debug(f"Committed files for artifact {artifact.id}")
        return artifact

    def finalize(
        self, raw_bytes: bytes, prompt_data: PromptData, style: StyleProfile
    ) -> Artifact:
        """Prepare and commit in one call."""
        return self.commit(self.prepare(raw_bytes, prompt_data, style))
