"""
Fleetwatch command line: python -m fleetwatch
"""
from typing import Optional

import click

from fleetwatch.api import run_server
from fleetwatch.config import Settings, load_settings
from fleetwatch.errors import ConfigError, StorageError
from fleetwatch.logs import configure_logging
from fleetwatch.retention import RetentionScheduler
from fleetwatch.store import MetricStore


def _settings(config: Optional[str]) -> Settings:
    try:
        return load_settings(config)
    except ConfigError as e:
        raise click.ClickException(str(e))


@click.group()
def cli():
    """Fleetwatch fleet metrics server"""


@cli.command()
@click.option('--config', type=click.Path(exists=True), default=None, help='Path to config.yml')
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', type=int, default=None, help='Port to bind to')
def serve(config: Optional[str], host: Optional[str], port: Optional[int]):
    """Run the Fleetwatch API server"""
    settings = _settings(config)
    if host:
        settings.host = host
    if port:
        settings.port = port

    click.echo(f'Starting Fleetwatch on {settings.host}:{settings.port}')
    click.echo(f'API documentation at http://localhost:{settings.port}/docs')
    run_server(settings)


@cli.command()
@click.option('--config', type=click.Path(exists=True), default=None, help='Path to config.yml')
@click.option('--days', type=click.IntRange(min=1), default=None, help='Retention window in days')
def prune(config: Optional[str], days: Optional[int]):
    """Delete samples older than the retention window now"""
    settings = _settings(config)
    configure_logging(settings.log_level, settings.log_file, settings.log_json)

    store = MetricStore.from_url(settings.db_url)
    try:
        store.create_schema()
        scheduler = RetentionScheduler(store, retention_days=days or settings.retention_days)
        deleted = scheduler.prune()
    except StorageError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()

    click.echo(f'Deleted {deleted} samples older than {scheduler.retention_days} days')


@cli.command('init-db')
@click.option('--config', type=click.Path(exists=True), default=None, help='Path to config.yml')
def init_db(config: Optional[str]):
    """Create the database schema"""
    settings = _settings(config)
    store = MetricStore.from_url(settings.db_url)
    try:
        store.create_schema()
    except StorageError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()

    click.echo('Schema ready')


def main():
    cli()


if __name__ == '__main__':
    main()
