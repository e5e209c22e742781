"""Image generation backend implementations."""

from product_shoot.orchestrator.backend.base import BackendRequest, BackendResponse, ImageBackend
from product_shoot.orchestrator.backend.echo_backend import EchoImageBackend
from product_shoot.orchestrator.backend.gemini_backend import GeminiImageBackend

__all__ = [
    "BackendRequest",
    "BackendResponse",
    "EchoImageBackend",
    "GeminiImageBackend",
    "ImageBackend",
]
