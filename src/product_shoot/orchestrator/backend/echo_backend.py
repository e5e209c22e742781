"""Local deterministic image backend for demos and tests."""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterable
from io import BytesIO

from PIL import Image

from product_shoot.orchestrator.backend.base import BackendRequest, BackendResponse
from product_shoot.orchestrator.errors import BackendCallError

_ECHO_IMAGE_SIDE = 8


class EchoImageBackend:
    """Return a small solid-colour PNG derived from the request.

    ``fail_slots`` raise a transient server error and ``empty_slots`` return a
    response without an image, so failure paths can be exercised offline.
    """

    def __init__(
        self,
        *,
        name: str = "echo",
        fail_slots: Iterable[int] = (),
        empty_slots: Iterable[int] = (),
    ) -> None:
        self.name = name
        self._fail_slots = frozenset(fail_slots)
        self._empty_slots = frozenset(empty_slots)
        self._lock = threading.Lock()
        self.calls: list[BackendRequest] = []

    def generate(self, request: BackendRequest) -> BackendResponse:
        with self._lock:
            self.calls.append(request)
        if request.slot_index in self._fail_slots:
            raise BackendCallError(
                f"{self.name} scripted failure for slot {request.slot_index}",
                status_code=503,
                transient=True,
            )
        if request.slot_index in self._empty_slots:
            return BackendResponse(image_bytes=None, model=request.model, detail="no image part")
        digest = hashlib.sha256(
            ":".join(
                (request.task_id, str(request.slot_index), request.tier.value, request.prompt),
            ).encode(),
        ).digest()
        return BackendResponse(
            image_bytes=solid_png(digest[0], digest[1], digest[2]),
            model=request.model,
            finish_reason="STOP",
        )


def solid_png(red: int, green: int, blue: int, side: int = _ECHO_IMAGE_SIDE) -> bytes:
    """Encode a ``side`` x ``side`` RGB PNG of one colour."""

    buffer = BytesIO()
    Image.new("RGB", (side, side), (red, green, blue)).save(buffer, format="PNG")
    return buffer.getvalue()
