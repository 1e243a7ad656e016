"""
Command Line Interface for cdr.
"""
import asyncio
import contextlib
import logging
import os
import signal

import click

from ..CONVERTERS.to_plan import PlanRenderer
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.process_manager import ProcessRuntime
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.orchestration_config import SequencerConfig
from ..RESOLVERS.layer_merger import ListStrategy
from ..RESOLVERS.stack_resolver import StackResolver
from ..RESOLVERS.stack_validator import StackValidator
from ..exceptions import ResolverError

DEFAULT_FILES = ('docker-compose.yml', 'docker-compose.override.yml')

logger = logging.getLogger(__name__)


def default_files():
    """
    Base file plus the conventional override file when it exists.
    """
    base, override = DEFAULT_FILES
    return [base, override] if os.path.exists(override) else [base]


def _fail(ctx, error: ResolverError):
    click.echo(f"Error: {error}", err=True)
    ctx.exit(error.exit_code)


def _resolve(ctx, files):
    """
    Runs a resolution pass with the global options; exits on error.
    """
    opts = ctx.obj
    try:
        environment = EnvironmentManager().get_merged_environment(opts['env_files'])
        if not opts['ignore_os_env']:
            # Shell variables take precedence over env files
            environment.update(os.environ)
        resolver = StackResolver(environment=environment, list_strategy=opts['list_strategy'])
        return resolver.resolve(list(files) or default_files())
    except ResolverError as e:
        _fail(ctx, e)


@click.group()
@click.option('--env-file', 'env_files', multiple=True, envvar='CDR_ENV_FILE',
              help='Environment file for ${VAR} interpolation; repeatable, later files win; '
                   'shell variables take precedence.')
@click.option('--ignore-os-env', is_flag=True, help='Do not interpolate from the process environment.')
@click.option('--list-strategy', type=click.Choice([s.value for s in ListStrategy]),
              default=ListStrategy.APPEND.value, envvar='CDR_LIST_STRATEGY', show_default=True,
              help='How list fields (ports, volumes, ...) combine across files.')
@click.option('--verbose', '-v', count=True, help='Increase log verbosity (-v, -vv).')
@click.pass_context
def cli(ctx, env_files, ignore_os_env, list_strategy, verbose):
    """
    cdr - Compose descriptor resolver.

    Validates, merges and sequences layered service descriptor files.
    """
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    ctx.ensure_object(dict)
    ctx.obj['env_files'] = list(env_files)
    ctx.obj['ignore_os_env'] = ignore_os_env
    ctx.obj['list_strategy'] = ListStrategy(list_strategy)


@cli.command()
@click.argument('files', nargs=-1)
@click.option('--require-service', 'required', multiple=True,
              help='Fail unless this service is defined; repeatable.')
@click.pass_context
def validate(ctx, files, required):
    """Check that the files merge, resolve and are acyclic."""
    plan = _resolve(ctx, files)
    warnings = StackValidator().warnings(plan.stack)
    for warning in warnings:
        click.echo(f"Warning: {warning}", err=True)
    missing = [name for name in required if name not in plan.stack.services]
    if missing:
        click.echo(f"Error: required services not defined: {', '.join(missing)}", err=True)
        ctx.exit(1)
    click.echo(f"OK: {len(plan.stack.services)} services, startup order: {', '.join(plan.order)}")


@cli.command()
@click.argument('files', nargs=-1)
@click.option('--format', '-o', 'fmt', type=click.Choice(PlanRenderer.FORMATS), default='text',
              show_default=True)
@click.pass_context
def plan(ctx, files, fmt):
    """Print the effective stack and the startup order."""
    resolved = _resolve(ctx, files)
    click.echo(PlanRenderer().render(resolved, fmt), nl=False)


@cli.command()
@click.argument('files', nargs=-1)
@click.pass_context
def services(ctx, files):
    """List service names in startup order."""
    resolved = _resolve(ctx, files)
    for name in resolved.order:
        click.echo(name)


@cli.command()
@click.argument('files', nargs=-1)
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), default=300.0,
              envvar='CDR_TIMEOUT', show_default=True,
              help='Seconds to wait for every service to become ready.')
@click.option('--grace', type=click.FloatRange(min=0), default=10.0,
              envvar='CDR_GRACE', show_default=True,
              help='Seconds to wait for dependents when shutting down.')
@click.option('--once', is_flag=True, help='Shut the stack down again as soon as it is ready.')
@click.pass_context
def up(ctx, files, timeout, grace, once):
    """Start services in dependency order and wait until they are ready."""
    resolved = _resolve(ctx, files)
    config = SequencerConfig(startup_timeout=timeout, shutdown_grace=grace)
    base_dir = os.path.dirname(os.path.abspath(resolved.stack.origins[0]))
    orchestrator = ServiceOrchestrator(resolved.stack, resolved.graph,
                                       runtime=ProcessRuntime(base_dir=base_dir), config=config)
    try:
        asyncio.run(_run_stack(orchestrator, once))
    except ResolverError as e:
        _fail(ctx, e)


async def _run_stack(orchestrator: ServiceOrchestrator, once: bool):
    """
    Brings the stack up, keeps it running until interrupted, then brings it down.
    """
    try:
        report = await orchestrator.up()
        click.echo(f"Services ready: {', '.join(report.order)}")
        if not once:
            click.echo("Running... Press Ctrl+C to stop.")
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(sig, stop.set)
            await stop.wait()
    finally:
        click.echo("Stopping services...")
        shutdown = await orchestrator.down()
        for warning in shutdown.warnings:
            click.echo(f"Warning: {warning}", err=True)
        click.echo("Services stopped.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})

if __name__ == '__main__':
    main()
