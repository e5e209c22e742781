from pathlib import Path

import allure
from sqlalchemy import text

from product_shoot.orchestrator.repository import GenerationRepository

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Generation Records"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = GenerationRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        assert version == "20261019_0001"

        user = connection.execute(
            text("SELECT user_id FROM users WHERE user_id = 'default_user'"),
        ).scalar()
        assert user == "default_user"

        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars()
        assert list(tables) == [
            "generation_records",
            "generation_slot_results",
            "generation_task_events",
            "quota_accounts",
            "quota_reservations",
            "users",
        ]
    repository.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    repository = GenerationRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.list_records() == []
    repository.close()
