"""
Command Line Interface for conductor.
"""
import functools
import logging
import os
import sys

import click

from ..errors import ConductorError, CycleError, ValidationError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.settings import OrchestratorSettings
from ..PARSERS.compose_parser import ComposeParser, find_default_file

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_VALIDATION = 2
EXIT_CYCLE = 3
EXIT_INTERRUPTED = 130


def _configure_logging(verbose: int):
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def handle_errors(func):
    """
    Maps conductor errors to the documented exit codes.
    """
    @functools.wraps(func)
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        try:
            return ctx.invoke(func, *args, **kwargs)
        except CycleError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(EXIT_CYCLE)
        except ValidationError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(EXIT_VALIDATION)
        except ConductorError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(EXIT_RUNTIME)
    return wrapper


def get_orchestrator(ctx: click.Context) -> ServiceOrchestrator:
    """
    Loads the compose files named on the command line and builds the orchestrator.
    """
    obj = ctx.find_object(dict)
    if obj.get('orchestrator') is not None:
        return obj['orchestrator']

    files = list(obj.get('files') or ())
    if not files:
        default = find_default_file(".")
        if default is None:
            raise ValidationError("no compose.yaml or docker-compose.yml found in the current directory")
        files = [default]

    parser = ComposeParser(project_name=obj.get('project_name'), env_file=obj.get('env_file'))
    config = parser.load(files)
    base_dir = os.path.dirname(os.path.abspath(files[0]))
    settings = OrchestratorSettings.from_environ()
    obj['config'] = config
    obj['orchestrator'] = ServiceOrchestrator(config, runtime=obj.get('runtime'), settings=settings,
                                              base_dir=base_dir)
    return obj['orchestrator']


def _print_summary(summary):
    if summary.started:
        click.echo("Started:")
        for name in summary.started:
            click.echo(f"  {name}")
    if summary.failed:
        click.echo("Failed:")
        for name, reason in summary.failed.items():
            click.echo(f"  {name}: {reason}")
    if summary.skipped:
        click.echo("Skipped (dependency failed):")
        for name, reason in summary.skipped.items():
            click.echo(f"  {name}: {reason}")


@click.group()
@click.option('--file', '-f', 'files', multiple=True, help='Compose file path (repeatable, later files override)')
@click.option('--project-name', '-p', default=None, help='Project name')
@click.option('--env-file', default=None, type=click.Path(dir_okay=False), help='Alternative .env file')
@click.option('--verbose', '-v', count=True, help='Increase log verbosity (-v, -vv)')
@click.pass_context
def cli(ctx, files, project_name, env_file, verbose):
    """
    conductor - declarative multi-service orchestrator.

    Brings up interdependent services described in compose files, in
    dependency order and gated on health checks.
    """
    ctx.ensure_object(dict)
    _configure_logging(verbose)
    ctx.obj['files'] = files
    ctx.obj['project_name'] = project_name
    ctx.obj['env_file'] = env_file


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.argument('services', nargs=-1)
@handle_errors
@click.pass_context
def up(ctx, detach, services):
    """Start services defined in the compose file."""
    orchestrator = get_orchestrator(ctx)
    try:
        summary = orchestrator.up(services or None)
        _print_summary(summary)
        if not summary.ok:
            ctx.exit(EXIT_RUNTIME)
        if not detach:
            click.echo("Attaching to logs... Press Ctrl+C to stop.")
            orchestrator.logs(services or None, follow=True)
            orchestrator.down()
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
        orchestrator.abort()
        orchestrator.down()
        ctx.exit(EXIT_INTERRUPTED)


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Remove named volumes')
@click.option('--timeout', '-t', type=float, default=None, help='Grace period in seconds before force-killing')
@handle_errors
@click.pass_context
def down(ctx, volumes, timeout):
    """Stop and remove services and networks."""
    failures = get_orchestrator(ctx).down(purge_volumes=volumes, timeout=timeout)
    for name, reason in failures.items():
        click.echo(f"Error: {name}: {reason}", err=True)
    if failures:
        ctx.exit(EXIT_RUNTIME)
    click.echo("Services stopped.")


@cli.command()
@click.argument('services', nargs=-1)
@handle_errors
@click.pass_context
def build(ctx, services):
    """Build services that declare a build context."""
    built = get_orchestrator(ctx).build(services or None)
    if not built:
        click.echo("Nothing to build.")
    for name in built:
        click.echo(f"Built {name}")


@cli.command()
@handle_errors
@click.pass_context
def ps(ctx):
    """List service status"""
    status = get_orchestrator(ctx).ps()
    click.echo(f"{'SERVICE':15} {'STATUS':16} {'HEALTH':10} {'RESTARTS':8}")
    click.echo("-" * 52)
    for name, row in status.items():
        click.echo(f"{name:15} {str(row):16} {row.health:10} {row.restart_count:<8}")


@cli.command()
@click.option('--follow', '-f', is_flag=True, help='Follow log output')
@click.option('--tail', type=int, default=None, help='Number of lines to show from the end')
@click.argument('services', nargs=-1)
@handle_errors
@click.pass_context
def logs(ctx, follow, tail, services):
    """Show service logs"""
    get_orchestrator(ctx).logs(services or None, follow=follow, tail=tail)


@cli.command()
@click.option('--timeout', '-t', type=float, default=None, help='Grace period in seconds before force-killing')
@click.argument('services', nargs=-1)
@handle_errors
@click.pass_context
def restart(ctx, timeout, services):
    """Restart services"""
    summary = get_orchestrator(ctx).restart(services or None, timeout=timeout)
    _print_summary(summary)
    if not summary.ok:
        ctx.exit(EXIT_RUNTIME)


@cli.command(name='exec', context_settings={'ignore_unknown_options': True})
@click.argument('service')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
@handle_errors
@click.pass_context
def exec_(ctx, service, command):
    """Run a command in a running service"""
    code = get_orchestrator(ctx).exec(service, list(command))
    ctx.exit(code)


@cli.command()
@handle_errors
@click.pass_context
def config(ctx):
    """Print the merged, interpolated configuration"""
    click.echo(get_orchestrator(ctx).render_config(), nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
