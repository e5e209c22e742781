"""Canonical task kinds, historical aliases and per-slot prompt material."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from product_shoot.orchestrator.models import (
    GenerationMode,
    SlotRequest,
    Task,
    TaskKind,
)

KIND_ALIASES: dict[str, TaskKind] = {
    "camera": TaskKind.MODEL_STUDIO,
    "camera_model": TaskKind.MODEL_STUDIO,
    "model": TaskKind.MODEL_STUDIO,
    "studio": TaskKind.PRODUCT_STUDIO,
    "camera_product": TaskKind.PRODUCT_STUDIO,
    "product": TaskKind.PRODUCT_STUDIO,
    "prostudio": TaskKind.PRO_STUDIO,
    "editing": TaskKind.EDIT,
    "tryon": TaskKind.TRY_ON,
    "brandstyle": TaskKind.BRAND_STYLE,
    "brand": TaskKind.BRAND_STYLE,
}

REFERENCE_IMAGE_PARAMS = ("model_image", "background_image")


@dataclass(frozen=True, slots=True)
class KindProfile:
    """Slot layout and prompt templates of one workflow."""

    kind: TaskKind
    label: str
    default_slot_count: int
    simple_slot_count: int
    template: str


_MODEL_TEMPLATE = (
    "Photograph a fashion model wearing the product shown in the first reference "
    "image. Keep the product's colour, shape and details unchanged."
)
_PRODUCT_TEMPLATE = (
    "Photograph the product from the first reference image on a clean studio set. "
    "Keep the product's colour, shape and details unchanged."
)

KIND_PROFILES: dict[TaskKind, KindProfile] = {
    TaskKind.MODEL_STUDIO: KindProfile(
        TaskKind.MODEL_STUDIO,
        "Model studio",
        4,
        2,
        _MODEL_TEMPLATE,
    ),
    TaskKind.PRODUCT_STUDIO: KindProfile(
        TaskKind.PRODUCT_STUDIO,
        "Product studio",
        4,
        0,
        _PRODUCT_TEMPLATE,
    ),
    TaskKind.PRO_STUDIO: KindProfile(
        TaskKind.PRO_STUDIO,
        "Pro studio",
        4,
        0,
        _MODEL_TEMPLATE,
    ),
    TaskKind.GROUP_SHOOT: KindProfile(
        TaskKind.GROUP_SHOOT,
        "Group shoot",
        4,
        4,
        _MODEL_TEMPLATE,
    ),
    TaskKind.EDIT: KindProfile(
        TaskKind.EDIT,
        "Edit",
        2,
        0,
        "Edit the first reference image as described below.",
    ),
    TaskKind.CREATE_MODEL: KindProfile(
        TaskKind.CREATE_MODEL,
        "Create model",
        4,
        0,
        "Create a consistent fashion model portrait from the reference images.",
    ),
    TaskKind.REFERENCE_SHOT: KindProfile(
        TaskKind.REFERENCE_SHOT,
        "Reference shot",
        4,
        0,
        "Recreate the composition of the second reference image using the product "
        "from the first reference image.",
    ),
    TaskKind.LIFESTYLE: KindProfile(
        TaskKind.LIFESTYLE,
        "Lifestyle",
        4,
        4,
        _MODEL_TEMPLATE,
    ),
    TaskKind.TRY_ON: KindProfile(
        TaskKind.TRY_ON,
        "Try on",
        4,
        0,
        "Dress the person in the second reference image with the garment from the "
        "first reference image.",
    ),
    TaskKind.BRAND_STYLE: KindProfile(
        TaskKind.BRAND_STYLE,
        "Brand style",
        4,
        0,
        "Photograph the product from the first reference image in the visual style "
        "of the brand reference image.",
    ),
}

_SIMPLE_SUFFIX = "Use a plain background and a straightforward pose."
_EXTENDED_SUFFIX = "Use a styled scene, natural lighting and an editorial pose."


def canonical_kind(value: str | TaskKind) -> TaskKind:
    """Resolve a canonical kind or historical alias, case-insensitively."""

    if isinstance(value, TaskKind):
        return value
    normalized = (value or "").strip().lower()
    if not normalized:
        raise ValueError("Task kind must not be empty.")
    try:
        return TaskKind(normalized)
    except ValueError:
        pass
    kind = KIND_ALIASES.get(normalized)
    if kind is None:
        raise ValueError(f"Unknown task kind: {value!r}")
    return kind


def profile_for(kind: TaskKind) -> KindProfile:
    return KIND_PROFILES[kind]


def generation_mode_for(kind: TaskKind, slot_index: int, slot_count: int) -> GenerationMode:
    """Leading slots of a kind use the simple mode, the rest the extended one."""

    simple_count = min(profile_for(kind).simple_slot_count, slot_count)
    if slot_index < simple_count:
        return GenerationMode.SIMPLE
    return GenerationMode.EXTENDED


def render_prompt(
    *,
    kind: TaskKind,
    generation_mode: GenerationMode,
    params: Mapping[str, Any],
) -> str:
    """Render the prompt text; params are listed verbatim, never interpreted."""

    profile = profile_for(kind)
    base = profile.template
    suffix = _SIMPLE_SUFFIX if generation_mode == GenerationMode.SIMPLE else _EXTENDED_SUFFIX
    lines = [base, suffix]
    detail_keys = sorted(key for key in params if key not in REFERENCE_IMAGE_PARAMS)
    if detail_keys:
        lines.append("")
        lines.append("Details:")
        lines.extend(f"- {key}: {params[key]}" for key in detail_keys)
    return "\n".join(lines)


def build_slot_request(task: Task, slot_index: int) -> SlotRequest:
    """Freeze everything slot ``slot_index`` needs before it is dispatched."""

    if not 0 <= slot_index < task.requested_slot_count:
        raise IndexError(
            f"Slot index {slot_index} out of range for task {task.task_id} "
            f"with {task.requested_slot_count} slots.",
        )
    slot = task.slots[slot_index]
    params = task.inputs.params
    references = [task.inputs.input_image]
    if task.inputs.input_image2:
        references.append(task.inputs.input_image2)
    for key in REFERENCE_IMAGE_PARAMS:
        value = params.get(key)
        if isinstance(value, str) and value:
            references.append(value)
    prompt = slot.prompt or render_prompt(
        kind=task.kind,
        generation_mode=slot.generation_mode,
        params=params,
    )
    return SlotRequest(
        task_id=task.task_id,
        slot_index=slot_index,
        kind=task.kind,
        prompt=prompt,
        generation_mode=slot.generation_mode,
        reference_images=tuple(references),
    )
