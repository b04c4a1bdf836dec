# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import platform
from pathlib import Path
from typing import Optional, Tuple

import click
from attrs import evolve

from .config import CONFIG_FILE_NAME, ConfException, load_settings
from .runner import RunReport, Runner

LOG_FORMAT = "%(asctime)s %(threadName)-10s %(levelname)-7s %(message)s"


def example_dir() -> str:
    system = platform.system().lower()
    if system == "windows":
        return "C:\\Users\\MyUser\\Pictures"
    elif system == "darwin":
        return "/Users/myuser/Pictures"
    return "/home/user/Pictures"


EPILOG = f"""\b
Examples:
    batch-to-jpg {example_dir()}
    batch-to-jpg {example_dir()} --delete-original
    batch-to-jpg {example_dir()} --exclude=path/to/exclude

Settings are read from {CONFIG_FILE_NAME} in FOLDER if it exists.
"""


def show_help_and_exit(code: int = 0) -> None:
    ctx = click.get_current_context()
    click.echo(ctx.get_help())
    ctx.exit(code)


def echo_report(report: RunReport) -> None:
    if report.exit_code != 0:
        click.secho("Error during shutdown.", fg="red", err=True)
    elif report.drained:
        click.secho("All ongoing tasks have been completed.", fg="blue")
    else:
        click.secho("All files have been processed.", fg="blue")

    click.secho(f"Converted: {report.converted}", fg="green")
    if report.failed:
        click.secho(f"Failed: {report.failed}", fg="red")
        for outcome in report.failures:
            if not outcome.converted:
                click.secho(f"  {outcome.task.path}: {outcome.reason}", fg="red")
    if report.not_deleted:
        click.secho(f"Originals not deleted: {report.not_deleted}", fg="yellow")
        for outcome in report.failures:
            if outcome.converted:
                click.secho(f"  {outcome.reason}", fg="yellow")
    if report.dropped:
        click.secho(f"Not processed due to shutdown: {report.dropped}", fg="yellow")
    if report.skipped_dirs:
        click.secho(f"Unreadable directories: {report.skipped_dirs}", fg="yellow")


@click.command(epilog=EPILOG)
@click.argument(
    "folder",
    required=False,
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
)
@click.option(
    "--delete-original",
    is_flag=True,
    help="Delete the original PNG files after conversion.",
)
@click.option(
    "--exclude",
    multiple=True,
    metavar="PATH",
    help="Relative path under FOLDER to skip. May be repeated.",
)
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=False, path_type=Path),
    help="Specify a config file.",
)
@click.option(
    "-q",
    "--quality",
    type=click.IntRange(1, 100),
    help="JPEG quality, default 90.",
)
@click.option(
    "-j",
    "--jobs",
    type=click.IntRange(min=1),
    help="Number of conversions to run at once.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug messages.")
@click.version_option(package_name="batch-to-jpg")
def main(
    folder: Optional[Path],
    delete_original: bool,
    exclude: Tuple[str, ...],
    config: Optional[Path],
    quality: Optional[int],
    jobs: Optional[int],
    verbose: bool,
) -> None:
    """Recursively convert all PNG files in FOLDER to JPEG.

    If FOLDER is omitted this help message is displayed.
    """
    if folder is None:
        show_help_and_exit(0)

    logging.basicConfig(
        format=LOG_FORMAT, level=logging.DEBUG if verbose else logging.INFO
    )

    try:
        settings = load_settings(src_dir=folder, config_path=config)
        overrides = {"exclude": settings.exclude + exclude}
        if delete_original:
            overrides["delete_original"] = True
        if quality is not None:
            overrides["quality"] = quality
        if jobs is not None:
            overrides["converters"] = jobs
        settings = evolve(settings, **overrides)
        runner = Runner.from_settings(src_dir=folder, settings=settings)
    except FileNotFoundError as e:
        click.secho(f"Could not find configuration file {e.filename}.\n", fg="red")
        show_help_and_exit(2)
    except PermissionError as e:
        click.secho(f"Could not read configuration file {e.filename}.\n", fg="red")
        show_help_and_exit(2)
    except ConfException as e:
        click.secho(f"{e}\n", fg="red")
        show_help_and_exit(2)

    report = runner.build_and_run()
    echo_report(report)
    click.get_current_context().exit(report.exit_code)
