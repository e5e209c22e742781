"""Gemini image backend built on the ``google-genai`` SDK."""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
from pathlib import Path
from typing import Any

import httpx
from google import genai
from google.genai import errors, types

from product_shoot.orchestrator.backend.base import BackendRequest, BackendResponse
from product_shoot.orchestrator.errors import BackendCallError
from product_shoot.orchestrator.models import ErrorCategory

logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST"})


class GeminiImageBackend:
    """Call one Gemini image model and extract the first inline image part.

    Reference images given as http(s) URLs are downloaded with a separate
    client that carries no credentials.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str,
        timeout_seconds: float,
        base_url: str = "",
        name: str = "gemini",
        client: Any | None = None,
        reference_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.name = name
        self.model = model
        self._owns_client = client is None
        if client is None:
            http_options = types.HttpOptions(
                base_url=base_url or None,
                timeout=_millis(timeout_seconds),
            )
            client = genai.Client(api_key=api_key, http_options=http_options)
        self._client = client
        self._references = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            follow_redirects=True,
            transport=reference_transport,
        )

    def generate(self, request: BackendRequest) -> BackendResponse:
        model = request.model or self.model
        contents: list[Any] = [types.Part.from_text(text=request.prompt)]
        contents.extend(self._load_reference(reference) for reference in request.reference_images)
        config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            image_config=types.ImageConfig(image_size=image_size_label(request.size_hint)),
            http_options=types.HttpOptions(timeout=_millis(request.timeout_seconds)),
        )
        try:
            response = self._client.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except errors.APIError as error:
            code = error.code
            raise BackendCallError(
                f"{model} HTTP {code}: {error.message}",
                status_code=code,
                transient=code is None or code == 429 or code >= 500,
            ) from error
        except httpx.TimeoutException as error:
            raise BackendCallError(
                f"{model} request timed out after {request.timeout_seconds:.0f}s",
                transient=True,
                category=ErrorCategory.TIMEOUT,
            ) from error
        except httpx.HTTPError as error:
            raise BackendCallError(
                f"{model} network error: {error}",
                transient=True,
                category=ErrorCategory.NETWORK_ERROR,
            ) from error
        return extract_image(response, model=model)

    def close(self) -> None:
        self._references.close()
        if self._owns_client:
            self._client.close()

    def _load_reference(self, reference: str) -> types.Part:
        """Build an inline part from a data URL, http(s) URL or local path."""

        if reference.startswith("data:"):
            header, _, data = reference.partition(",")
            mime_type = header[5:].split(";", 1)[0] or "image/jpeg"
            try:
                raw = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as error:
                raise BackendCallError(
                    "Reference data URL is not valid base64",
                    transient=False,
                ) from error
            return types.Part.from_bytes(data=raw, mime_type=mime_type)
        if reference.startswith(("http://", "https://")):
            try:
                response = self._references.get(reference)
                response.raise_for_status()
            except httpx.HTTPError as error:
                raise BackendCallError(
                    f"Could not fetch reference image {reference}: {error}",
                    transient=True,
                    category=ErrorCategory.NETWORK_ERROR,
                ) from error
            mime_type = response.headers.get("content-type", "image/jpeg").split(";", 1)[0]
            return types.Part.from_bytes(data=response.content, mime_type=mime_type)
        path = Path(reference.removeprefix("file://"))
        try:
            raw = path.read_bytes()
        except OSError as error:
            raise BackendCallError(
                f"Could not read reference image {path}: {error}",
                transient=False,
            ) from error
        mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
        return types.Part.from_bytes(data=raw, mime_type=mime_type)


def extract_image(response: types.GenerateContentResponse, *, model: str = "") -> BackendResponse:
    """Pull the first inline image from a ``generate_content`` response."""

    candidates = response.candidates or []
    if not candidates:
        feedback = response.prompt_feedback
        block_reason = _enum_name(feedback.block_reason) if feedback is not None else None
        if block_reason:
            raise BackendCallError(
                f"{model} prompt blocked: {block_reason}",
                transient=False,
                category=ErrorCategory.CONTENT_BLOCKED,
            )
        return BackendResponse(image_bytes=None, model=model, detail="response has no candidates")

    candidate = candidates[0]
    finish_reason = _enum_name(candidate.finish_reason)
    if finish_reason in SAFETY_FINISH_REASONS:
        raise BackendCallError(
            f"{model} response blocked by safety filter ({finish_reason})",
            transient=False,
            category=ErrorCategory.CONTENT_BLOCKED,
        )

    parts = candidate.content.parts if candidate.content is not None else None
    for part in parts or []:
        inline = part.inline_data
        if inline is None or not inline.data:
            continue
        return BackendResponse(
            image_bytes=inline.data,
            mime_type=inline.mime_type or "image/png",
            model=model,
            finish_reason=finish_reason,
        )

    logger.debug("No image part from %s (finish_reason=%s)", model, finish_reason)
    return BackendResponse(
        image_bytes=None,
        model=model,
        finish_reason=finish_reason,
        detail="response has no image part",
    )


def image_size_label(size_hint: int) -> str:
    if size_hint >= 4096:
        return "4K"
    if size_hint >= 2048:
        return "2K"
    return "1K"


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _millis(seconds: float) -> int:
    return int(seconds * 1000)
