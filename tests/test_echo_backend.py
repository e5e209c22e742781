from __future__ import annotations

from io import BytesIO

import allure
import pytest
from PIL import Image

from product_shoot.orchestrator.backend import BackendRequest, EchoImageBackend
from product_shoot.orchestrator.backend.echo_backend import solid_png
from product_shoot.orchestrator.errors import BackendCallError
from product_shoot.orchestrator.models import BackendTier

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Image Backends"),
]


def _request(slot_index: int = 0) -> BackendRequest:
    return BackendRequest(
        task_id="task-e",
        slot_index=slot_index,
        prompt="Photograph the product.",
        reference_images=("product.png",),
        model="echo-model",
        size_hint=1024,
        timeout_seconds=5.0,
        tier=BackendTier.PRIMARY,
    )


def test_solid_png_decodes_to_one_colour() -> None:
    with Image.open(BytesIO(solid_png(10, 20, 30, side=4))) as image:
        assert image.format == "PNG"
        assert image.size == (4, 4)
        assert image.mode == "RGB"
        assert image.getcolors() == [(16, (10, 20, 30))]


def test_generate_is_deterministic_per_request() -> None:
    backend = EchoImageBackend()

    first = backend.generate(_request())
    second = backend.generate(_request())
    other = backend.generate(_request(slot_index=1))

    assert first.image_bytes == second.image_bytes
    assert first.image_bytes != other.image_bytes
    assert first.finish_reason == "STOP"
    assert len(backend.calls) == 3


def test_scripted_failures_and_empty_slots() -> None:
    backend = EchoImageBackend(fail_slots=(0,), empty_slots=(1,))

    with pytest.raises(BackendCallError) as error:
        backend.generate(_request(slot_index=0))
    empty = backend.generate(_request(slot_index=1))

    assert error.value.status_code == 503
    assert error.value.transient is True
    assert empty.image_bytes is None
    assert empty.detail == "no image part"
