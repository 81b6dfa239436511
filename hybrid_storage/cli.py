"""CLI commands for hybrid storage."""

import asyncio
import json
import logging
import sys

import click

from hybrid_storage.config import clear_settings_cache, get_settings, set_config_path
from hybrid_storage.lib.storage.base import StorageMode


def _mask(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return f"{value[:4]}{'*' * 8}"


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _build_manager():
    from hybrid_storage.lib import observability
    from hybrid_storage.lib.storage.manager import create_storage_manager

    settings = get_settings()
    observability.configure(settings.logfire)
    observability.forward_logging()
    return create_storage_manager(settings.storage)


@click.group()
@click.version_option(package_name="hybrid-storage")
@click.option(
    "-f",
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to the YAML config file (default: app.yaml)",
)
@click.option(
    "--log-level",
    default="warning",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Logging level",
)
def cli(config_file, log_level):
    """Hybrid storage - R2 object storage with a local filesystem fallback."""
    if config_file:
        set_config_path(config_file)
        clear_settings_cache()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
def status():
    """Probe R2 and print the current storage status as JSON."""

    async def run():
        manager = _build_manager()
        try:
            return await manager.startup()
        finally:
            await manager.close()

    _echo_json(asyncio.run(run()))


@cli.command("check-config")
def check_config():
    """Show the storage configuration with secrets masked."""
    storage = get_settings().storage
    r2 = storage.r2

    _echo_json(
        {
            "mode": storage.mode.value,
            "remote_enabled": storage.remote_enabled,
            "r2": {
                "configured": r2.is_configured,
                "missing_fields": r2.missing_fields,
                "account_id": _mask(r2.account_id),
                "access_key_id": _mask(r2.access_key_id),
                "secret_access_key": _mask(r2.secret_access_key),
                "bucket": r2.bucket,
                "endpoint": r2.resolved_endpoint if r2.account_id or r2.endpoint_url else None,
            },
            "local": storage.local.model_dump(),
            "retry": storage.retry.model_dump(),
        }
    )

    if not r2.is_configured and storage.mode is not StorageMode.LOCAL_ONLY:
        click.echo(
            f"Warning: R2 is not configured (missing {', '.join(r2.missing_fields)}); "
            "files will be stored locally",
            err=True,
        )


@cli.command()
@click.argument("owner")
@click.argument("filename")
@click.option("--avatar", is_flag=True, help="Migrate the owner's avatar (FILENAME is ignored)")
@click.option("--delete-local", is_flag=True, help="Delete the local copy after copying")
def migrate(owner, filename, avatar, delete_local):
    """Copy a file from local storage to R2."""
    from hybrid_storage.lib.storage.base import FileClass
    from hybrid_storage.lib.storage.errors import StorageError

    file_class = FileClass.AVATAR if avatar else FileClass.UPLOAD

    async def run():
        manager = _build_manager()
        try:
            return await manager.migrate_file(owner, filename, file_class, delete_source=delete_local)
        finally:
            await manager.close()

    try:
        result = asyncio.run(run())
    except StorageError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    _echo_json(result.to_dict())
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)


if __name__ == "__main__":
    cli()
