"""Command line entry point for senior-trends."""

import sys

import click

from senior_trends.dependencies import get_settings
from senior_trends.logging_config import configure_application_logging

from .commands import keys, scan


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Show info-level log lines on stderr")
def main(verbose: bool):
    """Senior Trends - quota-aware YouTube trend scans for senior audiences."""
    configure_application_logging(
        get_settings(),
        console_stream=sys.stderr,
        console_level="INFO" if verbose else "WARNING",
    )


# Credential commands
main.add_command(keys.keys)
main.add_command(keys.quota)

# Scan commands
main.add_command(scan.scan)


if __name__ == "__main__":
    main()
