"""Main CLI entrypoint for deployctl."""

import json
import logging
import sys
from typing import Dict, Any, Optional

import click

from ..backup import BackupManager, describe
from ..config import DeploySettings, load_settings
from ..engine import DeploymentEngine, DEPLOY_ORDER
from ..errors import DeployError
from ..events import get_last_event, get_status_from_events, read_events
from ..lock import force_unlock
from ..models import DeploymentRun, PhaseStatus, RunOutcome
from ..session import connect
from ..state import list_runs, read_run_json

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

PHASE_MARKS = {
    PhaseStatus.SUCCEEDED.value: "✅",
    PhaseStatus.FAILED.value: "❌",
    PhaseStatus.SKIPPED.value: "⏭️ ",
    PhaseStatus.PENDING.value: "⏳",
    PhaseStatus.RUNNING.value: "🔄",
}


def _setup_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("deployctl")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in package_logger.handlers:
        if getattr(handler, "_deployctl_console", False):
            handler.setStream(sys.stderr)
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    handler._deployctl_console = True
    package_logger.addHandler(handler)


@click.group(invoke_without_command=True)
@click.option('--env', 'environment', help='Target environment (default: $GGEN_ENV or development)')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='YAML config file')
@click.option('--auto-rollback/--no-auto-rollback', default=None, help='Roll back automatically when a deploy fails')
@click.option('--rollback', 'flag_rollback', is_flag=True, help='Rollback to previous deployment')
@click.option('--health-check', 'flag_health_check', is_flag=True, help='Run health checks only')
@click.option('--backup-only', 'flag_backup_only', is_flag=True, help='Create backup only')
@click.option('--deploy-only', 'flag_deploy_only', is_flag=True, help='Deploy application only')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.pass_context
def main(ctx, environment, config_path, auto_rollback, flag_rollback, flag_health_check,
         flag_backup_only, flag_deploy_only, verbose, output_json):
    """deployctl - Back up, ship, restart and verify a service on a target host."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    ctx.obj['environment'] = environment
    ctx.obj['config_path'] = config_path
    ctx.obj['auto_rollback'] = auto_rollback
    _setup_logging(verbose)

    if ctx.invoked_subcommand is not None:
        return

    selected = [
        name for name, flag in (
            ('rollback', flag_rollback),
            ('health-check', flag_health_check),
            ('backup-only', flag_backup_only),
            ('deploy-only', flag_deploy_only),
        ) if flag
    ]
    if len(selected) > 1:
        raise click.UsageError(f"Options are mutually exclusive: {', '.join('--' + s for s in selected)}")

    command = main.get_command(ctx, selected[0] if selected else 'deploy')
    ctx.invoke(command)


def _json_output(data: Dict[str, Any]) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=None, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _settings(ctx) -> DeploySettings:
    try:
        return load_settings(
            config_path=ctx.obj.get('config_path'),
            environment=ctx.obj.get('environment'),
            overrides={'auto_rollback': ctx.obj.get('auto_rollback')},
        )
    except (ValueError, FileNotFoundError) as e:
        if ctx.obj.get('json'):
            _json_output({'error': f"Invalid configuration: {e}"})
        else:
            click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(EXIT_USAGE)


def _engine(settings: DeploySettings) -> DeploymentEngine:
    return DeploymentEngine(settings)


def _print_run(run: DeploymentRun) -> None:
    ctx = click.get_current_context()
    if ctx.obj.get('json'):
        _json_output(run.to_dict())
        return

    _human_output("")
    for phase in run.phases:
        mark = PHASE_MARKS.get(phase.status.value, "")
        line = f"{mark} {phase.name}"
        if phase.error:
            line += f" - {phase.error}"
        _human_output(line)
    for note in run.notes:
        _human_output(f"⚠️  {note}")

    target = run.target
    if run.outcome == RunOutcome.SUCCESS:
        _human_output(f"\n🎉 {run.kind.value} completed successfully (run {run.id})")
        if run.kind.value == "deploy":
            _human_output(f"Application is running at: {target.scheme}://{target.host}:{target.port}")
    elif run.outcome == RunOutcome.ROLLED_BACK:
        _human_output(f"\n🔄 Deployment failed and was rolled back to backup {run.backup_id} (run {run.id})")
    else:
        failed = run.failed_phase
        where = f" in {failed.name}" if failed else ""
        _human_output(f"\n❌ {run.kind.value} failed{where} (run {run.id})")


def _execute(ctx, action: str, **kwargs) -> None:
    settings = _settings(ctx)
    engine = _engine(settings)
    try:
        run = getattr(engine, action)(**kwargs)
    except KeyboardInterrupt:
        click.echo("\nRun interrupted by user; the target was left as-is", err=True)
        sys.exit(EXIT_INTERRUPTED)

    _print_run(run)
    sys.exit(EXIT_OK if run.outcome == RunOutcome.SUCCESS else EXIT_FAILED)


@main.command('deploy')
@click.option('--skip', multiple=True, type=click.Choice(DEPLOY_ORDER), help='Skip a phase (repeatable)')
@click.pass_context
def deploy_cmd(ctx, skip=()):
    """Run the full deployment."""
    _execute(ctx, 'deploy', skip=skip)


@main.command('rollback')
@click.option('--verify/--no-verify', default=None, help='Health-check the service after restoring')
@click.pass_context
def rollback_cmd(ctx, verify=None):
    """Restore the most recent backup and restart the service."""
    _execute(ctx, 'rollback', verify_health=verify)


@main.command('health-check')
@click.pass_context
def health_check_cmd(ctx):
    """Check service status and the health endpoint."""
    _execute(ctx, 'health_check')


@main.command('backup-only')
@click.pass_context
def backup_only_cmd(ctx):
    """Snapshot the current release without deploying."""
    _execute(ctx, 'backup_only')


@main.command('deploy-only')
@click.pass_context
def deploy_only_cmd(ctx):
    """Ship the artifact and service unit without backup or restart."""
    _execute(ctx, 'deploy_only')


@main.command('backups')
@click.option('--prune', 'keep', type=int, help='Delete all but the newest N backups')
@click.pass_context
def backups_cmd(ctx, keep: Optional[int]):
    """List backups on the target."""
    settings = _settings(ctx)
    try:
        with connect(settings.target, timeout=settings.connect_timeout,
                     command_timeout=settings.command_timeout) as session:
            manager = BackupManager(session, settings.target, settings.binary)
            removed = manager.prune(keep) if keep is not None else []
            records = manager.list_backups()
    except DeployError as e:
        if ctx.obj.get('json'):
            _json_output({'error': str(e)})
        else:
            click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_FAILED)

    if ctx.obj.get('json'):
        _json_output({'backups': [r.to_dict() for r in records], 'removed': removed})
        return

    for backup_id in removed:
        _human_output(f"🗑️  Removed {backup_id}")
    if not records:
        _human_output("No backups found")
    for record in records:
        _human_output(describe(record))


def _print_live_status(run_id: str, home: Optional[str]) -> None:
    """Report an unfinished run from its event log."""
    current = get_status_from_events(run_id, home)
    last = get_last_event(run_id, home) or {}
    if click.get_current_context().obj.get('json'):
        _json_output({'id': run_id, 'status': current, 'last_event': last})
        return

    _human_output(f"Run: {run_id} (in progress)")
    _human_output(f"Status: {current}")
    phase = last.get('data', {}).get('phase', '')
    _human_output(f"Last event: {last.get('ts', '')} {last.get('type', '')} {phase}".rstrip())


@main.command('status')
@click.argument('run_id', required=False)
@click.pass_context
def status(ctx, run_id: Optional[str]):
    """Show a run's report, or list recent runs."""
    settings = _settings(ctx)
    if run_id is None:
        runs = list_runs(settings.state_home)
        if ctx.obj.get('json'):
            _json_output({'runs': runs})
            return
        if not runs:
            _human_output("No runs recorded yet")
        for item in runs:
            _human_output(item)
        return

    try:
        data = read_run_json(run_id, settings.state_home)
    except FileNotFoundError as e:
        # run.json is written when a run finishes; until then only events exist
        if read_events(run_id, settings.state_home):
            _print_live_status(run_id, settings.state_home)
            return
        if ctx.obj.get('json'):
            _json_output({'error': str(e)})
        else:
            click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_USAGE)
    except ValueError as e:
        if ctx.obj.get('json'):
            _json_output({'error': str(e)})
        else:
            click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_USAGE)

    if ctx.obj.get('json'):
        _json_output(data)
        return

    _human_output(f"Run: {data['id']} ({data['kind']})")
    _human_output(f"Outcome: {data.get('outcome') or 'in progress'}")
    _human_output(f"Started: {data.get('started_at')}  Finished: {data.get('ended_at') or '-'}")
    for phase in data.get('phases', []):
        mark = PHASE_MARKS.get(phase['status'], "")
        line = f"  {mark} {phase['name']}"
        if phase.get('error'):
            line += f" - {phase['error']}"
        _human_output(line)


@main.command('logs')
@click.argument('run_id')
@click.pass_context
def logs(ctx, run_id: str):
    """Print a run's event log."""
    settings = _settings(ctx)
    try:
        events = read_events(run_id, settings.state_home)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_USAGE)

    if not events:
        _human_output("No logs available")
        return

    for event in events:
        if ctx.obj.get('json'):
            _json_output(event)
        else:
            data = event.get('data', {})
            phase = data.get('phase', '')
            _human_output(f"{event.get('ts', '')} {event.get('type', ''):<15} {phase}")


@main.command('unlock')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def unlock(ctx, yes: bool):
    """Remove a stale deployment lock from the target."""
    settings = _settings(ctx)
    if not yes and not click.confirm(f"Remove the deployment lock on {settings.target.host}:{settings.target.path}?"):
        _human_output("Cancelled")
        return

    try:
        with connect(settings.target, timeout=settings.connect_timeout,
                     command_timeout=settings.command_timeout) as session:
            owner = force_unlock(session, settings.target.path)
    except DeployError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_FAILED)

    if ctx.obj.get('json'):
        _json_output({'unlocked': True, 'previous_owner': owner})
    else:
        _human_output(f"🔓 Lock removed (previous owner: {owner or 'unknown'})")


if __name__ == '__main__':
    main()
