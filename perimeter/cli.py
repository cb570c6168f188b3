import click
import json
import time
from typing import Any, Dict, List

from .api import collect_recent_events, create_app, serve as run_server
from .config import ConfigManager, setup_logging
from .capabilities import MonitorService
from .pipeline import AuditPipeline
from .registry import ServiceNotFoundError, create_default_registry

POLL_INTERVAL = 1.0


def _emit(ctx, payload: Dict[str, Any], lines: List[str]):
    if ctx.obj['json']:
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        for line in lines:
            click.echo(line)


def _get_service(ctx, name: str):
    try:
        return ctx.obj['registry'].get(name)
    except ServiceNotFoundError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--config', '-c', default=None, help='Configuration file path')
@click.option('--log-level', default=None, help='Override the configured log level')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of text')
@click.pass_context
def cli(ctx, config, log_level, as_json):
    """Perimeter host security orchestrator"""
    ctx.ensure_object(dict)
    try:
        settings = ConfigManager(config).get_config()
    except FileNotFoundError as e:
        raise click.ClickException(str(e))

    setup_logging(log_level or settings.log_level, settings.log_dir)
    registry = create_default_registry(settings)
    ctx.obj['config'] = settings
    ctx.obj['registry'] = registry
    ctx.obj['pipeline'] = AuditPipeline(registry)
    ctx.obj['json'] = as_json


@cli.command()
@click.pass_context
def health(ctx):
    """Show the status of every security service"""
    report = ctx.obj['pipeline'].health_check()

    lines = []
    for status in report.services:
        if not status.enabled:
            state = "disabled"
        elif status.is_healthy:
            state = "ok"
        else:
            state = "UNHEALTHY"
        lines.append(f"{status.name:<10} {state:<10} {status.message}")
    lines.append(f"\nOverall: {'healthy' if report.healthy else 'unhealthy'}")

    _emit(ctx, report.to_dict(), lines)
    if not report.healthy:
        ctx.exit(1)


@cli.command()
@click.option('--service', '-s', multiple=True, help='Service to audit (repeatable)')
@click.option('--scan-id', help='Identifier attached to every issue')
@click.pass_context
def audit(ctx, service, scan_id):
    """Run a security audit"""
    try:
        report = ctx.obj['pipeline'].run_audit(services=list(service) or None, scan_id=scan_id)
    except ServiceNotFoundError as e:
        raise click.ClickException(str(e))

    lines = []
    for result in report.results:
        lines.append(f"{result.display_name} ({result.service}): {result.status.value}")
        for issue in result.issues:
            location = f" [{issue.location}]" if issue.location else ""
            lines.append(f"  - {issue.severity.value.upper()}: {issue.description}{location}")
    lines.append(
        f"\nTotal issues: {report.total_issues} "
        f"({report.critical_issues} critical, {report.high_issues} high)"
    )

    _emit(ctx, report.to_dict(), lines)


@cli.group()
def monitor():
    """Real-time monitoring"""
    pass


@monitor.command('start')
@click.option('--service', '-s', default='falco', help='Monitoring service')
@click.option('--duration', '-d', type=float, help='Stop automatically after N seconds')
@click.option('--detach', is_flag=True, help='Leave the monitor running in the background and return')
@click.pass_context
def monitor_start(ctx, service, duration, detach):
    """Run a monitoring session, printing events until it ends or Ctrl+C"""
    adapter = _get_service(ctx, service)
    if not isinstance(adapter, MonitorService):
        raise click.ClickException(f"Service '{service}' does not support monitoring")

    if not detach:
        adapter.event_bus.subscribe(
            lambda event: click.echo(f"[{event.severity.value}] {event.description}"),
            service=adapter.service_name,
        )

    if not adapter.start_monitoring(duration=duration, detach=detach):
        raise click.ClickException(f"Failed to start monitoring with {service}")

    if detach:
        click.echo(f"Monitoring started in the background with {adapter.display_name}")
        click.echo(f"Stop it with: perimeter monitor stop --service {service}")
        return

    click.echo(f"Monitoring with {adapter.display_name}, press Ctrl+C to stop")
    try:
        while adapter.is_monitoring():
            time.sleep(POLL_INTERVAL)
    except KeyboardInterrupt:
        adapter.stop_monitoring()
    click.echo("Monitoring stopped")


@monitor.command('stop')
@click.option('--service', '-s', default='falco', help='Monitoring service')
@click.pass_context
def monitor_stop(ctx, service):
    """Stop a monitoring process"""
    adapter = _get_service(ctx, service)
    if not isinstance(adapter, MonitorService):
        raise click.ClickException(f"Service '{service}' does not support monitoring")

    if adapter.stop_monitoring():
        click.echo(f"Monitoring stopped for {adapter.display_name}")
    else:
        raise click.ClickException(f"Failed to stop monitoring for {service}")


@monitor.command('events')
@click.option('--service', '-s', default=None, help='Only events from this service')
@click.option('--limit', '-l', default=20, help='Maximum number of events')
@click.pass_context
def monitor_events(ctx, service, limit):
    """Show recent security events"""
    try:
        events = collect_recent_events(ctx.obj['registry'], limit=limit, service=service)
    except ServiceNotFoundError as e:
        raise click.ClickException(str(e))

    lines = [
        f"{e.timestamp.isoformat()} {e.service or '-':<9} {e.severity.value:<8} {e.description}"
        for e in events
    ] or ["No recent events"]
    _emit(ctx, {"events": [e.to_dict() for e in events], "count": len(events)}, lines)


@cli.command()
@click.argument('name')
@click.option('--force', is_flag=True, help='Send SIGKILL instead of SIGTERM')
@click.pass_context
def terminate(ctx, name, force):
    """Terminate a managed background process by name or PID"""
    registry = ctx.obj['registry']
    target = int(name) if name.isdigit() else name
    if registry.process_manager.stop(target, force=force):
        click.echo(f"Process {name} terminated")
    else:
        raise click.ClickException(f"Could not terminate {name}")


@cli.command()
@click.pass_context
def processes(ctx):
    """List managed background processes"""
    managed = ctx.obj['registry'].process_manager.list_processes()
    lines = [f"{p.name:<20} {p.pid:<8} {p.command}" for p in managed] or ["No managed processes"]
    _emit(ctx, {"processes": [p.model_dump(mode="json") for p in managed]}, lines)


@cli.command()
@click.option('--host', default=None, help='Bind address')
@click.option('--port', '-p', type=int, default=None, help='Port to listen on')
@click.pass_context
def serve(ctx, host, port):
    """Serve the status API"""
    settings = ctx.obj['config']
    app = create_app(ctx.obj['registry'], ctx.obj['pipeline'])
    run_server(app, host=host or settings.api_host, port=port or settings.api_port)


if __name__ == '__main__':
    cli()
