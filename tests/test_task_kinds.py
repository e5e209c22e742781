from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from product_shoot.orchestrator.models import GenerationMode, Slot, Task, TaskInput, TaskKind
from product_shoot.orchestrator.task_kinds import (
    KIND_PROFILES,
    build_slot_request,
    canonical_kind,
    generation_mode_for,
    render_prompt,
)

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Task Kinds & Prompt Material"),
]


@pytest.mark.parametrize(
    ("alias", "expected"),
    [
        ("model_studio", TaskKind.MODEL_STUDIO),
        ("Camera", TaskKind.MODEL_STUDIO),
        (" studio ", TaskKind.PRODUCT_STUDIO),
        ("PROSTUDIO", TaskKind.PRO_STUDIO),
        ("tryon", TaskKind.TRY_ON),
        ("brand", TaskKind.BRAND_STYLE),
        (TaskKind.EDIT, TaskKind.EDIT),
    ],
)
def test_canonical_kind_resolves_aliases(alias, expected: TaskKind) -> None:
    assert canonical_kind(alias) == expected


def test_canonical_kind_rejects_empty_and_unknown() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        canonical_kind("  ")
    with pytest.raises(ValueError, match="Unknown task kind"):
        canonical_kind("video")


def test_every_kind_has_a_profile() -> None:
    assert set(KIND_PROFILES) == set(TaskKind)


def test_generation_mode_follows_profile() -> None:
    modes = [generation_mode_for(TaskKind.MODEL_STUDIO, index, 4) for index in range(4)]
    assert modes == [
        GenerationMode.SIMPLE,
        GenerationMode.SIMPLE,
        GenerationMode.EXTENDED,
        GenerationMode.EXTENDED,
    ]
    assert generation_mode_for(TaskKind.PRO_STUDIO, 0, 4) == GenerationMode.EXTENDED
    assert generation_mode_for(TaskKind.LIFESTYLE, 3, 4) == GenerationMode.SIMPLE


def test_render_prompt_lists_params_verbatim() -> None:
    prompt = render_prompt(
        kind=TaskKind.PRODUCT_STUDIO,
        generation_mode=GenerationMode.EXTENDED,
        params={"scene": "beach {sunset}", "model_image": "ref.png"},
    )

    assert "- scene: beach {sunset}" in prompt
    assert "model_image" not in prompt


def test_build_slot_request_collects_reference_images() -> None:
    task = Task(
        task_id="task-k",
        user_id="default_user",
        kind=TaskKind.TRY_ON,
        inputs=TaskInput(
            input_image="garment.png",
            input_image2="person.png",
            params={"background_image": "bg.png", "model_image": "model.png"},
        ),
        requested_slot_count=2,
        slots=[Slot(index=0), Slot(index=1, prompt="custom prompt")],
        created_at=datetime(2026, 10, 19, tzinfo=UTC),
    )

    first = build_slot_request(task, 0)
    second = build_slot_request(task, 1)

    assert first.reference_images == ("garment.png", "person.png", "model.png", "bg.png")
    assert first.prompt.startswith(KIND_PROFILES[TaskKind.TRY_ON].template)
    assert second.prompt == "custom prompt"
    with pytest.raises(IndexError):
        build_slot_request(task, 2)
