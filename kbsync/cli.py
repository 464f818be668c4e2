import asyncio
import json
import sys

import click

from .config import VALID_ENVIRONMENTS, DEFAULT_ENVIRONMENT
from .sync.error_tracker import SyncException
from .sync.models import SourceType, SyncStatus
from .sync.runner import SyncRunner, load_config


SOURCES = [source.value for source in SourceType]


def _make_runner(config_path, environment) -> SyncRunner:
    try:
        return SyncRunner(load_config(config_path), environment)
    except (FileNotFoundError, ValueError, SyncException) as e:
        raise click.ClickException(f"Could not load sync configuration: {e}")


@click.group()
def cli():
    """Keep the knowledge-base vector store in sync with Notion and Slack."""
    pass


def common_options(func):
    func = click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
                        help='Sync configuration YAML (defaults to ./sync_config.yaml when present)')(func)
    func = click.option('--environment', type=click.Choice(VALID_ENVIRONMENTS), default=DEFAULT_ENVIRONMENT,
                        help='Environment whose secrets are used')(func)
    return func


@cli.command(name='run')
@click.argument('source', type=click.Choice(SOURCES))
@click.option('--max-items', type=click.IntRange(min=1), default=None,
              help='Pause after this many items (the next run resumes)')
@common_options
def run(source, max_items, config_path, environment):
    """Run or resume the sync of SOURCE."""
    runner = _make_runner(config_path, environment)
    click.echo(f"Syncing {source} ({environment})")
    try:
        result = asyncio.run(runner.run(SourceType(source), max_items=max_items))
    except SyncException as e:
        hint = f" ({e.recovery_suggestion})" if e.recovery_suggestion else ""
        raise click.ClickException(f"{e.message}{hint}")
    runner.print_summary(result)
    if result.status == SyncStatus.FAILED:
        sys.exit(1)


@cli.command(name='stop')
@click.argument('source', type=click.Choice(SOURCES))
@common_options
def stop(source, config_path, environment):
    """Ask a running SOURCE sync to pause at its next checkpoint."""
    runner = _make_runner(config_path, environment)
    if runner.request_stop(SourceType(source)):
        click.echo(f"Stop requested for {source}; the run pauses at its next checkpoint")
    else:
        click.echo(f"No running {source} sync")


@cli.command(name='reset')
@click.argument('source', type=click.Choice(SOURCES))
@click.option('--force', is_flag=True, default=False, help='Reset even if a run looks active')
@common_options
def reset(source, force, config_path, environment):
    """Discard the checkpoint of SOURCE and return it to idle."""
    runner = _make_runner(config_path, environment)
    try:
        runner.reset(SourceType(source), force=force)
    except SyncException as e:
        raise click.ClickException(f"{e.message}. {e.recovery_suggestion or ''}".strip())
    click.echo(f"Reset {source} sync state")


@cli.command(name='status')
@click.argument('source', type=click.Choice(SOURCES), required=False)
@common_options
def status(source, config_path, environment):
    """Show the sync state of SOURCE (or of every configured source)."""
    runner = _make_runner(config_path, environment)
    if source:
        states = [runner.get_status(SourceType(source))]
    else:
        states = runner.get_all_statuses()
    click.echo(json.dumps([state.to_dict() for state in states], indent=2))


def main():
    cli()

if __name__ == '__main__':
    main()
