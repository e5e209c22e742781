"""Storage for generated image bytes."""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Protocol

from product_shoot.orchestrator.handles import is_safe_key


class ImageStore(Protocol):
    """Turns generated bytes into a durable url."""

    def put(self, task_id: str, slot_index: int, image_bytes: bytes, mime_type: str) -> str:
        """Store one slot image and return its url."""


class LocalImageStore:
    """Write images under ``root/<task_id>/<slot>.<ext>`` and return ``file://`` urls."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def put(
        self,
        task_id: str,
        slot_index: int,
        image_bytes: bytes,
        mime_type: str = "image/png",
    ) -> str:
        if not is_safe_key(task_id):
            raise ValueError(f"Invalid task id for image path: {task_id!r}")
        extension = mimetypes.guess_extension(mime_type) or ".png"
        if extension == ".jpe":
            extension = ".jpg"
        target_dir = self.root / task_id
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{slot_index}{extension}"
        path.write_bytes(image_bytes)
        return path.resolve().as_uri()
