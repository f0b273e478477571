import asyncio
import importlib.metadata
import logging
import platform
import sys

import click
from pydantic import ValidationError

from .config import DovetailConfig
from .directory import DirectoryConnectError
from .main import run


BANNER = """
    ╭──────────────────────────────────────╮
    │           dovetail v{version:<17}│
    │   Automatic Tailscale for Docker     │
    ╰──────────────────────────────────────╯
"""


def get_version() -> str:
    """
    Returns the installed version of dovetail, or "dev" when it is not installed.
    """
    try:
        return importlib.metadata.version("dovetail").strip() or "dev"
    except importlib.metadata.PackageNotFoundError:
        return "dev"


@click.command()
@click.version_option(version=get_version(), prog_name="dovetail")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, file_okay=True, dir_okay=False),
    help="Path to configuration file."
)
@click.option(
    "--auth-key",
    envvar="TS_AUTHKEY",
    help="Key used to join endpoints to the tailnet."
)
@click.option(
    "--state-dir",
    envvar="TS_STATE_DIR",
    type=click.Path(file_okay=False),
    help="Directory to keep endpoint state in."
)
def main(config_path, **kwargs):
    """
    Exposes labelled Docker containers on a tailnet, each as its own HTTPS endpoint.
    """
    config_kwargs = {k: v for k, v in kwargs.items() if v}
    try:
        config = DovetailConfig(_path=config_path, **config_kwargs)
    except ValidationError as exc:
        click.echo(f"Invalid configuration\n{exc}", err=True)
        sys.exit(1)
    config.logging.apply()
    logger = logging.getLogger(__name__)

    version = get_version()
    click.echo(BANNER.format(version=version), err=True)
    logger.info(
        "Starting dovetail %s [python: %s, os: %s, arch: %s]",
        version,
        platform.python_version(),
        sys.platform,
        platform.machine()
    )

    try:
        asyncio.run(run(config))
    except DirectoryConnectError as exc:
        logger.error("Failed to connect to workload directory - %s", exc)
        sys.exit(1)
    except OSError as exc:
        logger.error("Failed to initialise state directory %s - %s", config.state_dir, exc)
        sys.exit(1)
