"""CLI entrypoint for product-shoot."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from product_shoot import __version__
from product_shoot.orchestrator.controllers import (
    QuotaGrantCommand,
    QuotaShowCommand,
    ShootCliController,
    ShootInspectCommand,
    ShootRecordsCommand,
    ShootResumeCommand,
    ShootRunCommand,
)
from product_shoot.orchestrator.errors import ProductShootError

click.rich_click.USE_MARKDOWN = True
SHOOT_CONTROLLER = ShootCliController()


@click.group()
@click.version_option(version=__version__, prog_name="product-shoot")
@click.option("--verbose", is_flag=True, default=False, help="Log orchestrator progress.")
def shoot(verbose: bool) -> None:
    """Product photo shoot generation CLI."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@shoot.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", required=True, help="Task kind, for example model_studio or lifestyle.")
@click.option("--input-image", required=True, help="Product photo path or URL.")
@click.option("--input-image2", default=None, help="Optional second reference image.")
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Pass-through prompt parameter as key=value. Can be repeated.",
)
@click.option(
    "--slots",
    type=click.IntRange(min=1, max=8),
    default=None,
    help="Number of images; defaults to the kind's profile.",
)
@click.option(
    "--backend",
    type=click.Choice(["echo", "gemini"], case_sensitive=False),
    default=None,
    help="Image backend; defaults to PRODUCT_SHOOT_BACKEND.",
)
@click.option(
    "--fail-slot",
    "fail_slots",
    multiple=True,
    type=click.IntRange(min=0),
    help="Echo backend only: make the primary tier fail for this slot index.",
)
@click.option(
    "--fail-fallback-slot",
    "fail_fallback_slots",
    multiple=True,
    type=click.IntRange(min=0),
    help="Echo backend only: make the fallback tier fail for this slot index.",
)
def shoot_run(  # noqa: PLR0913
    db_path: Path | None,
    kind: str,
    input_image: str,
    input_image2: str | None,
    params: tuple[str, ...],
    slots: int | None,
    backend: str | None,
    fail_slots: tuple[int, ...],
    fail_fallback_slots: tuple[int, ...],
) -> None:
    """Run one generation task and wait until every slot settles."""

    _emit_lines(
        _guarded(
            lambda: SHOOT_CONTROLLER.run(
                ShootRunCommand(
                    db_path=db_path,
                    kind=kind,
                    input_image=input_image,
                    input_image2=input_image2,
                    params=params,
                    slots=slots,
                    backend=backend,
                    fail_slots=fail_slots,
                    fail_fallback_slots=fail_fallback_slots,
                ),
            ),
        ),
    )


@shoot.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", required=True, help="Task kind whose stored handle to resume.")
def shoot_resume(db_path: Path | None, kind: str) -> None:
    """Reattach to the last task of a kind, or rebuild it from the store."""

    _emit_lines(
        _guarded(lambda: SHOOT_CONTROLLER.resume(ShootResumeCommand(db_path=db_path, kind=kind))),
    )


@shoot.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def shoot_inspect(db_path: Path | None, task_id: str) -> None:
    """Show the durable record and audit events of a task."""

    _emit_lines(
        _guarded(
            lambda: SHOOT_CONTROLLER.inspect(
                ShootInspectCommand(db_path=db_path, task_id=task_id),
            ),
        ),
    )


@shoot.command("records")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max records to display.",
)
def shoot_records(db_path: Path | None, limit: int) -> None:
    """List recent generation records."""

    _emit_lines(
        _guarded(
            lambda: SHOOT_CONTROLLER.records(ShootRecordsCommand(db_path=db_path, limit=limit)),
        ),
    )


@shoot.group()
def quota() -> None:
    """Quota commands."""


@quota.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def quota_show(db_path: Path | None) -> None:
    """Show the current user's credit balance."""

    _emit_lines(_guarded(lambda: SHOOT_CONTROLLER.quota_show(QuotaShowCommand(db_path=db_path))))


@quota.command("grant")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Credits to add.")
def quota_grant(db_path: Path | None, amount: int) -> None:
    """Add credits to the current user's local account."""

    _emit_lines(
        _guarded(
            lambda: SHOOT_CONTROLLER.quota_grant(
                QuotaGrantCommand(db_path=db_path, amount=amount),
            ),
        ),
    )


def _guarded(call: Callable[[], list[str]]) -> list[str]:
    try:
        return call()
    except (ValueError, ProductShootError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    shoot()
