"""Click-based CLI entrypoint for ghproxy.

Commands:
    serve         Load the access lists and run the proxy server
    check-config  Validate an access list file
    match         Show which upstream shape a URL matches
"""

from __future__ import annotations

import sys

import click

from ghproxy.config_store import ConfigReloader, ConfigStore, load_policy_file
from ghproxy.errors import ConfigLoadFailed
from ghproxy.logging_config import get_logger, setup_logging
from ghproxy.patterns import classify
from ghproxy.settings import GatewaySettings

logger = get_logger(__name__)


@click.group()
def cli() -> None:
    """Filtering reverse proxy for GitHub, Hugging Face and Docker downloads."""


@cli.command()
@click.option("--host", default=None, help="Listen address (default: GHPROXY_HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Listen port (default: GHPROXY_PORT or 5000)")
@click.option("--config", "config_path", default=None, help="Access list JSON file (default: config.json)")
@click.option("--reload-interval", type=float, default=None, help="Seconds between config reloads")
@click.option("--route-prefix", default=None, help="Routing prefix stripped from inbound paths")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), default=None)
@click.option("--log-format", type=click.Choice(["json", "text"]), default=None)
def serve(host, port, config_path, reload_interval, route_prefix, log_level, log_format) -> None:
    """Load the access lists and run the proxy server."""
    from werkzeug.serving import run_simple

    from ghproxy.app import create_app

    setup_logging(level=log_level, format_type=log_format)
    try:
        settings = GatewaySettings.from_env().with_overrides(
            host=host,
            port=port,
            config_path=config_path,
            reload_interval=reload_interval,
            route_prefix=route_prefix,
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    store = ConfigStore(settings.config_path)
    try:
        store.load_initial()
    except ConfigLoadFailed as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    reloader = ConfigReloader(store, settings.reload_interval)
    reloader.start()

    app = create_app(store=store, settings=settings)
    logger.info("Starting ghproxy on %s:%d (prefix %s)", settings.host, settings.port, settings.route_prefix)
    try:
        run_simple(settings.host, settings.port, app, threaded=True)
    finally:
        reloader.stop()


@cli.command("check-config")
@click.argument("path", type=click.Path(dir_okay=False))
def check_config(path: str) -> None:
    """Validate an access list file."""
    try:
        policy = load_policy_file(path)
    except ConfigLoadFailed as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(f"OK: {len(policy.allow)} allow entries, {len(policy.deny)} deny entries")


@cli.command("match")
@click.argument("url")
@click.option("--config", "config_path", default=None, help="Also evaluate the access lists in this file")
def match_cmd(url: str, config_path) -> None:
    """Show which upstream shape URL matches."""
    result = classify(url)
    if result is None:
        click.echo("no match")
        sys.exit(1)
    pattern, captures = result
    click.echo(f"shape: {pattern.name}")
    click.echo(f"captures: {', '.join(captures)}")
    if config_path is not None:
        try:
            policy = load_policy_file(config_path)
        except ConfigLoadFailed as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        click.echo(f"admitted: {'yes' if policy.admit(captures) else 'no'}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
