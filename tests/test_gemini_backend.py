from __future__ import annotations

from pathlib import Path
from typing import Any

import allure
import httpx
import pytest
from google.genai import errors, types

from product_shoot.orchestrator.backend import BackendRequest, GeminiImageBackend
from product_shoot.orchestrator.backend.gemini_backend import extract_image, image_size_label
from product_shoot.orchestrator.errors import BackendCallError
from product_shoot.orchestrator.models import BackendTier, ErrorCategory

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Image Backends"),
]

_PNG = b"\x89PNG\r\n\x1a\nfake"


class _FakeModels:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def generate_content(self, *, model: str, contents: Any, config: Any) -> Any:
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error is not None:
            raise self.error
        return self.response


class _FakeClient:
    def __init__(self, models: _FakeModels) -> None:
        self.models = models


def _request(reference: str) -> BackendRequest:
    return BackendRequest(
        task_id="task-g",
        slot_index=1,
        prompt="Photograph a model.",
        reference_images=(reference,),
        model="gemini-pro-image",
        size_hint=2048,
        timeout_seconds=30.0,
        tier=BackendTier.PRIMARY,
    )


def _image_response(data: bytes = _PNG) -> types.GenerateContentResponse:
    return types.GenerateContentResponse(
        candidates=[
            types.Candidate(
                finish_reason=types.FinishReason.STOP,
                content=types.Content(
                    role="model",
                    parts=[
                        types.Part.from_text(text="here you go"),
                        types.Part.from_bytes(data=data, mime_type="image/png"),
                    ],
                ),
            ),
        ],
    )


def _backend(
    models: _FakeModels,
    reference_transport: httpx.BaseTransport | None = None,
) -> GeminiImageBackend:
    return GeminiImageBackend(
        api_key="secret",
        model="unused-default",
        timeout_seconds=30.0,
        client=_FakeClient(models),
        reference_transport=reference_transport,
    )


def test_generate_sends_prompt_reference_and_image_size(tmp_path: Path) -> None:
    reference = tmp_path / "product.jpg"
    reference.write_bytes(b"jpeg-bytes")
    models = _FakeModels(response=_image_response())
    backend = _backend(models)
    try:
        response = backend.generate(_request(str(reference)))
    finally:
        backend.close()

    assert response.image_bytes == _PNG
    assert response.mime_type == "image/png"
    assert response.finish_reason == "STOP"
    call = models.calls[0]
    assert call["model"] == "gemini-pro-image"
    prompt, image = call["contents"]
    assert prompt.text == "Photograph a model."
    assert image.inline_data.mime_type == "image/jpeg"
    assert image.inline_data.data == b"jpeg-bytes"
    assert call["config"].response_modalities == ["IMAGE"]
    assert call["config"].image_config.image_size == "2K"
    assert call["config"].http_options.timeout == 30_000


def test_reference_download_does_not_send_api_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"cdn-bytes", headers={"content-type": "image/png"})

    models = _FakeModels(response=_image_response())
    backend = _backend(models, reference_transport=httpx.MockTransport(handler))
    try:
        backend.generate(_request("https://cdn.example.org/a.png"))
    finally:
        backend.close()

    assert [request.url.host for request in seen] == ["cdn.example.org"]
    assert "x-goog-api-key" not in seen[0].headers
    assert "secret" not in " ".join(seen[0].headers.values())
    image = models.calls[0]["contents"][1]
    assert image.inline_data.data == b"cdn-bytes"
    assert image.inline_data.mime_type == "image/png"


def test_reference_download_failure_is_transient_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    models = _FakeModels(response=_image_response())
    backend = _backend(models, reference_transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(BackendCallError) as error:
            backend.generate(_request("https://cdn.example.org/missing.png"))
    finally:
        backend.close()

    assert error.value.category == ErrorCategory.NETWORK_ERROR
    assert models.calls == []


def test_data_url_reference_is_decoded() -> None:
    models = _FakeModels(response=_image_response())
    backend = _backend(models)
    try:
        backend.generate(_request("data:image/webp;base64,AAECAw=="))
    finally:
        backend.close()

    image = models.calls[0]["contents"][1]
    assert image.inline_data.data == b"\x00\x01\x02\x03"
    assert image.inline_data.mime_type == "image/webp"


def test_invalid_data_url_reference_is_terminal() -> None:
    backend = _backend(_FakeModels(response=_image_response()))
    try:
        with pytest.raises(BackendCallError, match="not valid base64") as error:
            backend.generate(_request("data:image/png;base64,not base64!!"))
    finally:
        backend.close()

    assert error.value.transient is False


@pytest.mark.parametrize(
    ("error", "transient"),
    [
        (
            errors.ClientError(
                429,
                {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}},
            ),
            True,
        ),
        (
            errors.ServerError(
                503,
                {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}},
            ),
            True,
        ),
        (
            errors.ClientError(
                400,
                {"error": {"code": 400, "message": "bad request", "status": "INVALID_ARGUMENT"}},
            ),
            False,
        ),
    ],
)
def test_generate_maps_api_errors_to_status_codes(error: Exception, transient: bool) -> None:
    backend = _backend(_FakeModels(error=error))
    try:
        with pytest.raises(BackendCallError) as raised:
            backend.generate(_request("data:image/png;base64,AAAA"))
    finally:
        backend.close()

    assert raised.value.status_code == error.code
    assert raised.value.transient is transient


def test_generate_maps_network_failure() -> None:
    backend = _backend(_FakeModels(error=httpx.ConnectError("refused")))
    try:
        with pytest.raises(BackendCallError) as error:
            backend.generate(_request("data:image/png;base64,AAAA"))
    finally:
        backend.close()

    assert error.value.category == ErrorCategory.NETWORK_ERROR
    assert error.value.transient is True


def test_generate_maps_timeout() -> None:
    backend = _backend(_FakeModels(error=httpx.ReadTimeout("slow")))
    try:
        with pytest.raises(BackendCallError) as error:
            backend.generate(_request("data:image/png;base64,AAAA"))
    finally:
        backend.close()

    assert error.value.category == ErrorCategory.TIMEOUT


def test_extract_image_detects_safety_block() -> None:
    response = types.GenerateContentResponse(
        candidates=[types.Candidate(finish_reason=types.FinishReason.SAFETY)],
    )

    with pytest.raises(BackendCallError) as error:
        extract_image(response, model="m")

    assert error.value.category == ErrorCategory.CONTENT_BLOCKED
    assert error.value.transient is False


def test_extract_image_detects_prompt_block() -> None:
    response = types.GenerateContentResponse(
        prompt_feedback=types.GenerateContentResponsePromptFeedback(
            block_reason=types.BlockedReason.OTHER,
        ),
    )

    with pytest.raises(BackendCallError, match="prompt blocked: OTHER"):
        extract_image(response, model="m")


def test_extract_image_without_image_part_returns_empty_response() -> None:
    response = types.GenerateContentResponse(
        candidates=[
            types.Candidate(
                finish_reason=types.FinishReason.STOP,
                content=types.Content(role="model", parts=[types.Part.from_text(text="no")]),
            ),
        ],
    )

    result = extract_image(response, model="m")

    assert result.image_bytes is None
    assert result.detail == "response has no image part"


def test_extract_image_without_candidates_returns_empty_response() -> None:
    result = extract_image(types.GenerateContentResponse(), model="m")

    assert result.image_bytes is None
    assert result.detail == "response has no candidates"


def test_image_size_label() -> None:
    assert image_size_label(1024) == "1K"
    assert image_size_label(2048) == "2K"
    assert image_size_label(4096) == "4K"
