"""
CLI interface for inspecting and editing feature flags.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import click

from flagengine.config import get_settings
from flagengine.features import FeatureFlagService, JsonFileStorage, create_feature_service

T = TypeVar("T")


class FlagCLI:
    """CLI application state: settings plus the storage file flags persist to."""

    def __init__(self, storage_path: Optional[Path] = None, environment: Optional[str] = None):
        overrides = {}
        if environment:
            overrides["environment"] = environment
        self.settings = get_settings(**overrides)
        self.storage_path = storage_path or self.settings.local_storage_path

    def run(self, action: Callable[[FeatureFlagService], Awaitable[T]]) -> T:
        """Initialize an engine, run action against it, then tear it down."""

        async def runner() -> T:
            service = create_feature_service(self.settings, JsonFileStorage(self.storage_path))
            await service.initialize()
            try:
                return await action(service)
            finally:
                service.cleanup()

        return asyncio.run(runner())


@click.group()
@click.option('--storage', 'storage_path', type=click.Path(path_type=Path), default=None,
              help='JSON file flags are persisted to')
@click.option('--env', 'environment', type=click.Choice(['development', 'staging', 'production']),
              default=None, help='Override the configured environment')
@click.option('--verbose', '-v', is_flag=True, help='Show engine log output')
@click.pass_context
def cli(ctx, storage_path: Optional[Path], environment: Optional[str], verbose: bool):
    """Flag Engine - feature flags and A/B tests"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    ctx.obj = FlagCLI(storage_path, environment)


@cli.command('list')
@click.option('--source', type=click.Choice(['local', 'config', 'remote', 'manual', 'override']),
              default=None, help='Only show flags from this source')
@click.pass_obj
def list_flags(app: FlagCLI, source: Optional[str]):
    """List all known flags."""

    async def action(service: FeatureFlagService):
        if source:
            return service.get_flags_by_source(source)
        return service.get_all_flags()

    flags = app.run(action)
    if not flags:
        click.echo("No flags defined.")
        return

    width = max(len(name) for name in flags)
    for name in sorted(flags):
        record = flags[name]
        state = "on " if record.enabled else "off"
        click.echo(f"{name.ljust(width)}  {state}  ({record.source.value})")


@cli.command()
@click.argument('name')
@click.pass_obj
def show(app: FlagCLI, name: str):
    """Show a single flag."""

    async def action(service: FeatureFlagService):
        return service.get_flag(name)

    record = app.run(action)
    if record is None:
        raise click.ClickException(f"Flag '{name}' not found")

    click.echo(json.dumps({name: record.to_dict()}, indent=2))


@cli.command('set')
@click.argument('name')
@click.argument('state', type=click.Choice(['on', 'off']))
@click.pass_obj
def set_flag(app: FlagCLI, name: str, state: str):
    """Set a flag on or off and persist it to local storage."""
    enabled = state == 'on'

    async def action(service: FeatureFlagService):
        service.set_flag(name, enabled=enabled)
        return await service.save_local_flags()

    result = app.run(action)
    if not result.ok:
        raise click.ClickException(result.error.message)

    click.echo(f"✓ {name} = {'on' if enabled else 'off'}")


@cli.command()
@click.argument('test_name')
@click.argument('subject_id')
@click.option('--variant', '-V', 'variants', multiple=True, help='Variant (repeatable, first is control)')
@click.pass_obj
def variant(app: FlagCLI, test_name: str, subject_id: str, variants: Tuple[str, ...]):
    """Show which variant a subject gets in an A/B test."""
    choices = variants or ("A", "B")

    async def action(service: FeatureFlagService):
        return service.get_variant(test_name, choices, subject_id)

    click.echo(app.run(action))


@cli.command()
@click.pass_obj
def export(app: FlagCLI):
    """Print every flag as JSON."""

    async def action(service: FeatureFlagService):
        return service.export_flags()

    click.echo(json.dumps(app.run(action), indent=2, sort_keys=True))


@cli.command()
@click.confirmation_option(prompt='Delete all persisted flags?')
@click.pass_obj
def clear(app: FlagCLI):
    """Remove all flags from local storage."""

    async def action(service: FeatureFlagService):
        await service.clear_flags()

    app.run(action)
    click.echo("✓ Cleared all flags")


if __name__ == '__main__':
    cli()
