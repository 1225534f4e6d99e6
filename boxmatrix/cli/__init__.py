# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""boxmatrix CLI package."""

import os
import sys
from typing import List, Optional

import click

from boxmatrix import __version__
from boxmatrix.cli.helpers import handle_errors, load_suite, print_report
from boxmatrix.config import MIRROR_DIR_ENV, get_config
from boxmatrix.mirror import MirrorManager, config_with_mirror
from boxmatrix.runner import Runner, Suite, plan_leaves
from boxmatrix.sandbox import Worker
from boxmatrix.utils.logging import configure_logging, log_startup_info
from boxmatrix.workers import list_workers
from boxmatrix.workers.dockerd import DockerWorker


def _workers_for(suite: Suite, config) -> List[Worker]:
    """Suite workers, else registered workers, else the configured docker worker."""
    if suite.workers:
        return list(suite.workers)
    registered = list_workers()
    if registered:
        return registered
    return [DockerWorker.from_config(config)]


@click.group()
@click.version_option(version=__version__, prog_name="boxmatrix")
@click.option("--debug", is_flag=True, help="Verbose output")
@click.option("--ci", is_flag=True, help="Plain stderr output without colors")
def cli(debug: bool, ci: bool):
    """boxmatrix - Run integration tests across workers and feature matrices."""
    configure_logging(debug=debug, daemon=ci)
    log_startup_info()


@cli.command("list")
@click.argument("suite_ref", metavar="SUITE")
@handle_errors
def list_leaves(suite_ref: str):
    """List the leaves SUITE would run (module:attribute)."""
    config = get_config()
    suite = load_suite(suite_ref)
    leaves = plan_leaves(suite.tests, _workers_for(suite, config), suite.options.matrix)
    for leaf in leaves:
        click.echo(leaf.name)


@cli.command("run")
@click.argument("suite_ref", metavar="SUITE")
@click.option("--parallel", "-j", type=int, default=None, help="Leaves to run at once")
@click.option("--short", is_flag=True, default=False, help="Skip the run entirely")
@click.option(
    "--mirror-dir",
    type=click.Path(file_okay=False),
    default=None,
    help=f"Shared mirror directory (overrides {MIRROR_DIR_ENV})",
)
@handle_errors
def run_suite(suite_ref: str, parallel: Optional[int], short: bool, mirror_dir: Optional[str]):
    """Run SUITE (module:attribute) on every worker and matrix combination."""
    if mirror_dir:
        os.environ[MIRROR_DIR_ENV] = mirror_dir
    config = get_config()
    suite = load_suite(suite_ref)

    options = suite.options
    if parallel is None:
        parallel = config.explicit_parallel
    if parallel is not None:
        options = options.with_parallel(parallel)
    if short or config.short:
        options = options.with_short()

    runner = Runner(MirrorManager.from_config(config), _workers_for(suite, config), options)
    report = runner.run(suite.tests)
    print_report(report)
    if not report.ok:
        sys.exit(1)


@cli.command("mirror-config")
@click.argument("address")
@handle_errors
def mirror_config(address: str):
    """Write a daemon config using ADDRESS as docker.io mirror."""
    path = config_with_mirror(address)
    click.echo(str(path))


def main():
    cli()


if __name__ == "__main__":
    main()
