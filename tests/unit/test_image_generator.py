"""Tests for wallpapy.core.image_generator: image backends.

The OpenAI SDK and the requests session are mocked; no network access or
model loading occurs.
"""

from __future__ import annotations

import base64
from unittest.mock import MagicMock

import httpx
import openai
import pytest
import requests
from PIL import Image

from wallpapy.core.errors import (
    ContentRejectedError,
    ExternalServiceError,
    MalformedResponseError,
    StageTimeoutError,
)
from wallpapy.core.image_generator import (
    LocalDiffusionImageClient,
    OpenAIImageClient,
    ReplicateImageClient,
    create_image_client,
)

STARTED = {"id": "p1", "status": "starting", "urls": {"get": "https://r/p1"}}
SUCCEEDED = {"id": "p1", "status": "succeeded", "output": ["https://r/out.png"]}


def _bad_request(code: str | None) -> openai.BadRequestError:
    request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
    response = httpx.Response(400, request=request)
    body = {"code": code, "message": "rejected"} if code else None
    return openai.BadRequestError("Error code: 400", response=response, body=body)


def _http_response(status: int = 200, json_data=None, content: bytes = b"") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.content = content
    response.text = str(json_data)
    if json_data is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_data
    return response


class TestOpenAIImageClient:
    def test_returns_decoded_bytes(self, png_bytes):
        sdk = MagicMock()
        sdk.images.generate.return_value.data = [
            MagicMock(b64_json=base64.b64encode(png_bytes).decode(), revised_prompt=None)
        ]
        client = OpenAIImageClient(model="dall-e-3", size="1792x1024", client=sdk)

        assert client.generate_image("A fjord") == png_bytes
        kwargs = sdk.images.generate.call_args.kwargs
        assert kwargs["response_format"] == "b64_json"
        assert kwargs["size"] == "1792x1024"
        assert kwargs["n"] == 1

    def test_content_policy_rejection(self):
        sdk = MagicMock()
        sdk.images.generate.side_effect = _bad_request("content_policy_violation")
        client = OpenAIImageClient(client=sdk)

        with pytest.raises(ContentRejectedError):
            client.generate_image("Something forbidden")

    def test_other_bad_request(self):
        sdk = MagicMock()
        sdk.images.generate.side_effect = _bad_request("invalid_size")
        client = OpenAIImageClient(client=sdk)

        with pytest.raises(ExternalServiceError):
            client.generate_image("A fjord")

    def test_connection_error(self):
        sdk = MagicMock()
        request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
        sdk.images.generate.side_effect = openai.APITimeoutError(request=request)
        client = OpenAIImageClient(client=sdk)

        with pytest.raises(ExternalServiceError):
            client.generate_image("A fjord")

    def test_missing_image_data(self):
        sdk = MagicMock()
        sdk.images.generate.return_value.data = []
        client = OpenAIImageClient(client=sdk)

        with pytest.raises(MalformedResponseError):
            client.generate_image("A fjord")


class TestReplicateImageClient:
    def _client(self, session: MagicMock, timeout: float = 5.0) -> ReplicateImageClient:
        return ReplicateImageClient(
            api_token="r8_test",
            poll_interval=0.01,
            timeout=timeout,
            session=session,
        )

    def test_polls_until_succeeded(self, png_bytes):
        session = MagicMock()
        session.request.side_effect = [
            _http_response(
                201,
                {"id": "p1", "status": "starting", "urls": {"get": "https://r/p1"}},
            ),
            _http_response(200, {"id": "p1", "status": "processing"}),
            _http_response(200, SUCCEEDED),
            _http_response(200, content=png_bytes),
        ]

        assert self._client(session).generate_image("A fjord") == png_bytes

        create_call = session.request.call_args_list[0]
        assert create_call.args[0] == "POST"
        assert create_call.args[1].endswith("/models/black-forest-labs/flux-schnell/predictions")
        payload = create_call.kwargs["json"]["input"]
        assert payload["prompt"] == "A fjord"
        assert payload["aspect_ratio"] == "3:2"
        assert create_call.kwargs["headers"]["Authorization"] == "Bearer r8_test"
        assert session.request.call_args_list[-1].args == ("GET", "https://r/out.png")

    def test_nsfw_failure_is_content_rejection(self):
        session = MagicMock()
        session.request.side_effect = [
            _http_response(201, STARTED),
            _http_response(200, {"id": "p1", "status": "failed", "error": "NSFW content detected"}),
        ]

        with pytest.raises(ContentRejectedError):
            self._client(session).generate_image("Something")

    def test_other_failure(self):
        session = MagicMock()
        session.request.side_effect = [
            _http_response(201, STARTED),
            _http_response(200, {"id": "p1", "status": "canceled"}),
        ]

        with pytest.raises(ExternalServiceError, match="canceled"):
            self._client(session).generate_image("A fjord")

    def test_http_error(self):
        session = MagicMock()
        session.request.return_value = _http_response(401, {"detail": "Unauthenticated"})

        with pytest.raises(ExternalServiceError, match="Unauthenticated"):
            self._client(session).generate_image("A fjord")

    def test_transport_error(self):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(ExternalServiceError):
            self._client(session).generate_image("A fjord")

    def test_polling_bounded_by_timeout(self):
        session = MagicMock()
        session.request.side_effect = [
            _http_response(201, STARTED),
        ] + [_http_response(200, {"id": "p1", "status": "processing"})] * 1000

        with pytest.raises(StageTimeoutError):
            self._client(session, timeout=0.05).generate_image("A fjord")

    def test_missing_token(self):
        client = ReplicateImageClient(api_token=None, session=MagicMock())
        with pytest.raises(ExternalServiceError, match="token"):
            client.generate_image("A fjord")


class TestLocalDiffusionImageClient:
    def test_returns_png_bytes(self):
        manager = MagicMock()
        manager.generate.return_value = Image.new("RGB", (64, 32), color=(0, 0, 255))
        client = LocalDiffusionImageClient(manager)

        data = client.generate_image("A fjord")
        assert data.startswith(b"\x89PNG")
        manager.generate.assert_called_once_with(prompt="A fjord")

    def test_runtime_error_translated(self):
        manager = MagicMock()
        manager.generate.side_effect = RuntimeError("CUDA out of memory")
        with pytest.raises(ExternalServiceError, match="out of memory"):
            LocalDiffusionImageClient(manager).generate_image("A fjord")

    def test_missing_extra(self):
        manager = MagicMock()
        manager.generate.side_effect = ImportError("No module named 'torch'")
        with pytest.raises(ExternalServiceError, match="local"):
            LocalDiffusionImageClient(manager).generate_image("A fjord")


class TestCreateImageClient:
    @pytest.mark.parametrize(
        "backend,expected",
        [
            ("openai", OpenAIImageClient),
            ("replicate", ReplicateImageClient),
            ("local", LocalDiffusionImageClient),
        ],
    )
    def test_backend_selection(self, test_config, backend, expected):
        test_config.image_backend = backend
        assert isinstance(create_image_client(test_config), expected)
