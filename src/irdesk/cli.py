"""IRDesk CLI entry point."""

import json
from pathlib import Path

import click
import httpx
import uvicorn

from irdesk.api.exceptions import IRDeskError
from irdesk.config import settings
from irdesk.config.log_setup import configure_logging
from irdesk.incidents.playbooks import default_registry

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()  # type: ignore[untyped-decorator]
@click.version_option(version=settings.app_version)  # type: ignore[untyped-decorator]
@click.option(  # type: ignore[untyped-decorator]
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    help="Log level for command diagnostics, written to stderr.",
)
def main(log_level: str) -> None:
    """IRDesk - Security Incident Response Manager."""
    configure_logging(log_level)


@main.command()  # type: ignore[untyped-decorator]
@click.option("--host", default=settings.api_host, help="API host")  # type: ignore[untyped-decorator]
@click.option("--port", default=settings.api_port, type=int, help="API port")  # type: ignore[untyped-decorator]
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")  # type: ignore[untyped-decorator]
def serve(host: str, port: int, reload: bool) -> None:
    """Start the IRDesk API server."""
    configure_logging(settings.log_level, json_format=settings.log_json)
    uvicorn.run(
        "irdesk.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


@main.command()  # type: ignore[untyped-decorator]
@click.option(  # type: ignore[untyped-decorator]
    "--url",
    default=f"http://localhost:{settings.api_port}",
    envvar="IRDESK_URL",
    help="Base URL of a running IRDesk server.",
)
def status(url: str) -> None:
    """Show IRDesk server status."""
    click.echo(f"IRDesk v{settings.app_version}")
    click.echo(f"Environment: {settings.environment}")
    try:
        response = httpx.get(f"{url.rstrip('/')}/health", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        click.echo(f"Server status: unreachable ({exc})")
        raise SystemExit(1) from exc
    health = response.json()
    click.echo(f"Server status: {health.get('status', 'unknown')}")
    for job in health.get("jobs", []):
        click.echo(
            f"  job {job['name']}: runs={job['run_count']} errors={job['error_count']}"
        )


@main.command()  # type: ignore[untyped-decorator]
@click.option(  # type: ignore[untyped-decorator]
    "--file",
    "playbook_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with additional playbooks to validate and list.",
)
@click.option("--json", "as_json", is_flag=True, help="Print full playbooks as JSON.")  # type: ignore[untyped-decorator]
def playbooks(playbook_file: Path | None, as_json: bool) -> None:
    """List the response playbook catalog."""
    registry = default_registry()
    if playbook_file is not None:
        try:
            registry.load_file(playbook_file)
        except IRDeskError as exc:
            raise click.ClickException(exc.detail) from exc
    catalog = registry.list_playbooks()
    if as_json:
        click.echo(json.dumps([pb.model_dump(mode="json") for pb in catalog], indent=2))
        return
    for pb in catalog:
        types = ", ".join(t.value for t in pb.incident_types)
        severities = ", ".join(s.value for s in pb.severities)
        click.echo(f"{pb.id} v{pb.version}  {pb.name}")
        click.echo(f"    types: {types}")
        click.echo(f"    severities: {severities}")
        click.echo(f"    steps: {len(pb.steps)}  automated actions: {len(pb.automated_actions)}")


if __name__ == "__main__":
    main()
