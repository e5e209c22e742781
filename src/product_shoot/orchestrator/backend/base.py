"""Backend interface for image generation calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from product_shoot.orchestrator.models import BackendTier


@dataclass(slots=True)
class BackendRequest:
    """Inputs required to run one image generation call."""

    task_id: str
    slot_index: int
    prompt: str
    reference_images: tuple[str, ...]
    model: str
    size_hint: int
    timeout_seconds: float
    tier: BackendTier


@dataclass(slots=True)
class BackendResponse:
    """Raw outcome of one generation call; ``image_bytes`` is None when no image came back."""

    image_bytes: bytes | None
    mime_type: str = "image/png"
    model: str = ""
    finish_reason: str | None = None
    detail: str | None = None


class ImageBackend(Protocol):
    """Protocol implemented by image generation backends."""

    name: str

    def generate(self, request: BackendRequest) -> BackendResponse:
        """Run one generation call or raise ``BackendCallError``."""
