"""CLI main entry point."""

import json
import sys
from pathlib import Path

import click

from .commands.bootstrap import bootstrap
from .commands.secret import create
from .config import ENV_VARS, load_config, save_config, unset_config
from .shared.logging import configure_logging

LOG_LEVELS = ["debug", "info", "warning", "error"]


@click.group()
@click.version_option(package_name="driftless")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="CLI config file (default: ~/.driftless/config.yaml)",
)
@click.option("--kubeconfig", default=None, help="Path to the kubeconfig file")
@click.option("--context", "kubecontext", default=None, help="Kubeconfig context to use")
@click.option("-n", "--namespace", default=None, help="Namespace the toolkit is installed in")
@click.option("--timeout", type=int, default=None, help="Timeout in seconds for readiness waits")
@click.option("--poll-interval", type=float, default=None, help="Seconds between readiness checks")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None, help="Log level")
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Log output format",
)
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Write logs to a file")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    kubeconfig: str | None,
    kubecontext: str | None,
    namespace: str | None,
    timeout: int | None,
    poll_interval: float | None,
    log_level: str | None,
    log_format: str,
    log_file: str | None,
) -> None:
    """Bootstrap and maintain GitOps delivery on Kubernetes clusters."""
    config = load_config(config_path)

    # CLI flags override file and environment values
    overrides = {
        "namespace": namespace,
        "timeout": timeout,
        "poll_interval": poll_interval,
        "kubeconfig": kubeconfig,
        "log_level": log_level,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
            config._sources[key] = "cli"

    configure_logging(config.log_level, log_file=log_file, json_output=log_format == "json")

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path
    ctx.obj["kubecontext"] = kubecontext


@cli.group()
def config() -> None:
    """Manage CLI configuration."""
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, json_output: bool) -> None:
    """Show effective configuration and where each value comes from."""
    cfg = ctx.obj["config"]
    data = {key: getattr(cfg, key) for key in ENV_VARS}

    if json_output:
        click.echo(
            json.dumps(
                {key: {"value": value, "source": cfg.get_source(key)} for key, value in data.items()},
                indent=2,
            )
        )
        return

    for key, value in data.items():
        shown = "" if value is None else value
        click.echo(f"{key}: {shown}  ({cfg.get_source(key)})")


@config.command("set")
@click.argument("key", type=click.Choice(list(ENV_VARS)))
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Persist a config value."""
    try:
        save_config(key, value, ctx.obj["config_path"])
    except ValueError:
        click.echo(f"Error: invalid value for {key}: {value}", err=True)
        sys.exit(1)
    click.echo(f"✓ {key} = {value}")


@config.command("unset")
@click.argument("key", type=click.Choice(list(ENV_VARS)))
@click.pass_context
def config_unset(ctx: click.Context, key: str) -> None:
    """Remove a persisted config value."""
    if unset_config(key, ctx.obj["config_path"]):
        click.echo(f"✓ {key} removed")
    else:
        click.echo(f"{key} is not set")


cli.add_command(bootstrap)
cli.add_command(create)


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
