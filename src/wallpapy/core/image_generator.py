"""Image generation backends.

Three interchangeable clients turn a prompt into encoded image bytes:

- :class:`OpenAIImageClient`: OpenAI Images API (``b64_json`` response)
- :class:`ReplicateImageClient`: Replicate predictions API, polled over HTTP
- :class:`LocalDiffusionImageClient`: a diffusers pipeline on this machine

Every backend makes exactly one generation attempt per call; retrying is the
caller's decision. Library errors are translated into the Wallpapy error
taxonomy at this boundary.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import time
from typing import Any, Protocol

import openai
import requests
from openai import OpenAI

from wallpapy.core.config import WallpapyConfig
from wallpapy.core.errors import (
    ContentRejectedError,
    ExternalServiceError,
    MalformedResponseError,
    StageTimeoutError,
)
from wallpapy.core.model_manager import ModelManager

logger = logging.getLogger(__name__)

REPLICATE_API_BASE = "https://api.replicate.com/v1"

# Replicate prediction states that will not change any more
TERMINAL_STATES = {"succeeded", "failed", "canceled"}

# Substrings of a failed prediction's error that mean the safety checker fired
SAFETY_MARKERS = ("nsfw", "safety", "content policy", "flagged")


class ImageClient(Protocol):
    """Capability: turn one prompt into encoded image bytes."""

    def generate_image(self, prompt: str) -> bytes: ...


class OpenAIImageClient:
    """Image generator backed by the OpenAI Images API."""

    def __init__(
        self,
        model: str = "dall-e-3",
        size: str = "1792x1024",
        api_key: str | None = None,
        timeout: float = 360.0,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.size = size
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            try:
                self._client = OpenAI(api_key=self._api_key, timeout=self._timeout, max_retries=0)
            except openai.OpenAIError as e:
                raise ExternalServiceError(f"Cannot create OpenAI client: {e}") from e
        return self._client

    def generate_image(self, prompt: str) -> bytes:
        """Generate one image.

        Raises:
            ContentRejectedError: If the prompt violates the content policy
            ExternalServiceError: On any other API failure
            MalformedResponseError: If the response holds no image data
        """
        client = self._get_client()
        logger.info(f"Requesting {self.size} image from {self.model}")
        try:
            response = client.images.generate(
                model=self.model,
                prompt=prompt,
                size=self.size,
                n=1,
                response_format="b64_json",
            )
        except openai.BadRequestError as e:
            if getattr(e, "code", None) == "content_policy_violation":
                logger.warning(f"Image prompt rejected by content policy: {e}")
                raise ContentRejectedError(f"Image model rejected the prompt: {e}") from e
            raise ExternalServiceError(f"Image request failed: {e}") from e
        except openai.APIError as e:
            logger.error(f"Image request failed: {e}")
            raise ExternalServiceError(f"Image request failed: {e}") from e

        if not response.data or not response.data[0].b64_json:
            raise MalformedResponseError("Image model returned no image data")

        revised = getattr(response.data[0], "revised_prompt", None)
        if revised:
            logger.debug(f"Image model revised the prompt to: {revised}")

        try:
            return base64.b64decode(response.data[0].b64_json, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedResponseError(f"Image data is not valid base64: {e}") from e


class ReplicateImageClient:
    """Image generator backed by the Replicate predictions API.

    A prediction is created, its status URL is polled until it reaches a
    terminal state, and the first output URL is downloaded.
    """

    def __init__(
        self,
        api_token: str | None,
        model: str = "black-forest-labs/flux-schnell",
        aspect_ratio: str = "3:2",
        poll_interval: float = 1.0,
        timeout: float = 360.0,
        session: requests.Session | None = None,
    ) -> None:
        self.model = model
        self.aspect_ratio = aspect_ratio
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._api_token = api_token
        self._session = session or requests.Session()

    def _get_headers(self) -> dict[str, str]:
        if not self._api_token:
            raise ExternalServiceError("Replicate API token is not configured")
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send one HTTP request, translating failures into ExternalServiceError."""
        try:
            response = self._session.request(method, url, timeout=30, **kwargs)
        except requests.RequestException as e:
            raise ExternalServiceError(f"Replicate request failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ExternalServiceError(
                f"Replicate request failed (status {response.status_code}): {detail}"
            )
        return response

    def _json(self, response: requests.Response) -> dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Replicate returned invalid JSON: {e}") from e

    def generate_image(self, prompt: str) -> bytes:
        """Generate one image.

        Raises:
            ContentRejectedError: If the prediction failed on a safety check
            ExternalServiceError: On HTTP failure or a failed/canceled prediction
            MalformedResponseError: If a succeeded prediction has no output
            StageTimeoutError: If the prediction is still running after ``timeout``
        """
        headers = self._get_headers()
        payload = {
            "input": {
                "prompt": prompt,
                "aspect_ratio": self.aspect_ratio,
                "output_format": "png",
                "num_outputs": 1,
            }
        }
        prediction = self._json(
            self._request(
                "POST",
                f"{REPLICATE_API_BASE}/models/{self.model}/predictions",
                headers=headers,
                json=payload,
            )
        )
        logger.info(f"Created Replicate prediction {prediction.get('id')} on {self.model}")

        prediction = self._wait_for_prediction(prediction, headers)
        status = prediction.get("status")

        if status != "succeeded":
            error = str(prediction.get("error") or f"prediction {status}")
            if any(marker in error.lower() for marker in SAFETY_MARKERS):
                logger.warning(f"Replicate prediction rejected: {error}")
                raise ContentRejectedError(f"Image model rejected the prompt: {error}")
            raise ExternalServiceError(f"Replicate prediction {status}: {error}")

        output = prediction.get("output")
        if isinstance(output, list):
            output = output[0] if output else None
        if not output:
            raise MalformedResponseError("Replicate prediction succeeded without output")

        return self._request("GET", output).content

    def _wait_for_prediction(
        self, prediction: dict[str, Any], headers: dict[str, str]
    ) -> dict[str, Any]:
        status_url = (prediction.get("urls") or {}).get("get")
        if not status_url:
            raise MalformedResponseError("Replicate prediction has no status URL")

        deadline = time.monotonic() + self.timeout
        while prediction.get("status") not in TERMINAL_STATES:
            if time.monotonic() >= deadline:
                raise StageTimeoutError(
                    f"Replicate prediction {prediction.get('id')} did not finish "
                    f"within {self.timeout:.0f}s"
                )
            time.sleep(self.poll_interval)
            prediction = self._json(self._request("GET", status_url, headers=headers))
            logger.debug(f"Replicate prediction {prediction.get('id')}: {prediction.get('status')}")
        return prediction


class LocalDiffusionImageClient:
    """Image generator running a diffusers pipeline in process."""

    def __init__(self, model_manager: ModelManager) -> None:
        self.model_manager = model_manager

    def generate_image(self, prompt: str) -> bytes:
        """Generate one image and return it PNG-encoded.

        Raises:
            ExternalServiceError: If the pipeline cannot be loaded or run
        """
        try:
            image = self.model_manager.generate(prompt=prompt)
        except ImportError as e:
            raise ExternalServiceError(
                "The local backend needs the 'local' extra (torch, diffusers)"
            ) from e
        except (RuntimeError, OSError, ValueError) as e:
            raise ExternalServiceError(f"Local image generation failed: {e}") from e

        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def create_image_client(config: WallpapyConfig) -> ImageClient:
    """Build the image client selected by ``config.image_backend``."""
    if config.image_backend == "replicate":
        return ReplicateImageClient(
            api_token=config.replicate_api_token,
            model=config.replicate_model,
            aspect_ratio=config.replicate_aspect_ratio,
            poll_interval=config.replicate_poll_interval,
            timeout=config.image_timeout,
        )
    if config.image_backend == "local":
        return LocalDiffusionImageClient(ModelManager(config))
    return OpenAIImageClient(
        model=config.openai_image_model,
        size=config.openai_image_size,
        api_key=config.openai_api_key,
        timeout=config.image_timeout,
    )
