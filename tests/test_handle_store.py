from __future__ import annotations

from pathlib import Path

import allure
import pytest

from product_shoot.orchestrator.handles import (
    JsonFileHandleStore,
    MemoryHandleStore,
    TaskHandle,
    is_safe_key,
)

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Task Resumption"),
]


def _handle(task_id: str = "task-1", key: str = "model_studio") -> TaskHandle:
    return TaskHandle.issue(key=key, task_id=task_id, kind="model_studio", user_id="default_user")


@pytest.mark.parametrize("store_factory", ["memory", "json"])
def test_handle_store_save_load_clear(store_factory: str, tmp_path: Path) -> None:
    store = MemoryHandleStore() if store_factory == "memory" else JsonFileHandleStore(tmp_path)
    handle = _handle()

    assert store.save(handle) is True
    assert store.save(handle) is False
    loaded = store.load("model_studio")
    assert loaded is not None
    assert loaded.task_id == "task-1"
    assert loaded.created_at == handle.created_at

    assert store.clear("model_studio", task_id="task-other") is False
    assert store.load("model_studio") is not None
    assert store.clear("model_studio", task_id="task-1") is True
    assert store.load("model_studio") is None
    assert store.clear("model_studio") is False


def test_newer_task_replaces_handle(tmp_path: Path) -> None:
    store = JsonFileHandleStore(tmp_path)
    store.save(_handle("task-1"))

    assert store.save(_handle("task-2")) is True
    loaded = store.load("model_studio")
    assert loaded is not None
    assert loaded.task_id == "task-2"


def test_json_store_rejects_path_like_keys(tmp_path: Path) -> None:
    store = JsonFileHandleStore(tmp_path)

    with pytest.raises(ValueError, match="Invalid handle key"):
        store.load("../escape")


def test_json_store_ignores_unreadable_file(tmp_path: Path) -> None:
    (tmp_path / "model_studio.json").write_text("{not json", encoding="utf-8")
    store = JsonFileHandleStore(tmp_path)

    assert store.load("model_studio") is None
    assert store.save(_handle()) is True


@pytest.mark.parametrize(
    ("value", "expected"),
    [("model_studio", True), ("4f1c.v2", True), ("..", False), (".hidden", False), ("a/b", False)],
)
def test_is_safe_key(value: str, expected: bool) -> None:
    assert is_safe_key(value) is expected
