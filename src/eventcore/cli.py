"""CLI entry point for the event engine."""

from __future__ import annotations

import click


@click.group()
def main() -> None:
    """Event-sourced CQRS engine with saga orchestration."""


@main.command()
@click.option("--config", default="configs/eventcore.toml", help="Config file path")
@click.option("--store", type=click.Choice(["memory", "jsonl", "postgres"]), default=None,
              help="Event store backend override")
@click.option("--defaults/--no-defaults", default=None,
              help="Register the built-in user/order catalog")
def run(config: str, store: str | None, defaults: bool | None) -> None:
    """Run the engine until interrupted."""
    import asyncio

    from .main import run as run_engine

    overrides: dict = {}
    if store:
        overrides["store"] = {"backend": store}
    if defaults is not None:
        overrides["engine"] = {"register_defaults": defaults}

    asyncio.run(run_engine(config_path=config, overrides=overrides))


@main.command()
@click.option("--config", default=None, help="Config file path")
@click.option("--log-level", default="WARNING", help="Log level for the demo run")
def demo(config: str | None, log_level: str) -> None:
    """Run the user and order-fulfillment scenarios and print statistics."""
    import asyncio

    from .main import run_demo

    overrides = {
        "store": {"backend": "memory"},
        "notifier": {"backend": "memory"},
        "observability": {"log_level": log_level, "log_format": "console"},
    }
    stats = asyncio.run(run_demo(config_path=config, overrides=overrides))
    _print_statistics(stats)


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def inspect(path: str) -> None:
    """Print statistics for a JSON-Lines event log."""
    import asyncio

    from .engine import EventEngine
    from .infrastructure.repository import JsonFileEventRepository

    async def _inspect():
        engine = EventEngine(repository=JsonFileEventRepository(path))
        await engine.store.open()
        stats = await engine.get_event_statistics()
        await engine.store.close()
        return stats

    _print_statistics(asyncio.run(_inspect()))


def _print_statistics(stats) -> None:
    click.echo("=" * 60)
    click.echo(f"  Events:       {stats.total_events}  (last sequence {stats.last_sequence})")
    click.echo(f"  Streams:      {stats.total_streams}")
    click.echo(f"  Projections:  {stats.total_projections}")
    click.echo(f"  Sagas:        {stats.total_sagas}")
    click.echo("-" * 60)
    for event_type, count in sorted(stats.events_by_type.items()):
        click.echo(f"  {event_type:<30} {count:>6}")
    click.echo("-" * 60)
    for event in stats.recent_events:
        click.echo(
            f"  #{event.sequence:<6} {event.type:<24} {event.aggregate_id} v{event.version}"
        )
    click.echo("=" * 60)
