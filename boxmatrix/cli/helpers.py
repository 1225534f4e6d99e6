# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Helpers shared by CLI commands."""

import functools
import importlib
import sys
from typing import Callable

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from boxmatrix.errors import BoxmatrixError
from boxmatrix.runner import LeafStatus, RunReport, Suite

console = Console()

_STATUS_STYLES = {
    LeafStatus.PASSED: "[green]PASS[/green]",
    LeafStatus.FAILED: "[red]FAIL[/red]",
    LeafStatus.SKIPPED: "[yellow]SKIP[/yellow]",
}


def show_error_panel(title: str, message: str, hint: str = None) -> None:
    content = message
    if hint:
        content += f"\n\n[blue]Try:[/blue]\n  {hint}"
    console.print(Panel(content, title=f"[red]{title}[/red]", border_style="red"))


def handle_errors(func: Callable) -> Callable:
    """Decorator that wraps CLI commands with standard error handling.

    BoxmatrixError subclasses are shown as a panel with their hint, click
    exceptions pass through, anything else gets a generic panel. All of
    them exit with code 1.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SystemExit:
            raise
        except click.ClickException:
            raise
        except BoxmatrixError as exc:
            show_error_panel(type(exc).__name__, str(exc), exc.hint)
            sys.exit(1)
        except Exception as exc:
            show_error_panel("Error", str(exc))
            sys.exit(1)

    return wrapper


def load_suite(ref: str) -> Suite:
    """Import a suite from "package.module:attribute".

    The attribute may be a Suite or a zero-argument callable returning one.
    """
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise click.BadParameter(f"expected module:attribute, got {ref!r}", param_hint="SUITE")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"cannot import {module_name}: {e}", param_hint="SUITE") from e

    try:
        suite = getattr(module, attr)
    except AttributeError as e:
        raise click.BadParameter(f"{module_name} has no attribute {attr}", param_hint="SUITE") from e

    if not isinstance(suite, Suite) and callable(suite):
        suite = suite()
    if not isinstance(suite, Suite):
        raise click.BadParameter(f"{ref} is not a Suite", param_hint="SUITE")
    return suite


def print_report(report: RunReport) -> None:
    """Print a run summary table."""
    if report.skipped_reason:
        console.print(f"[yellow]Run skipped: {report.skipped_reason}[/yellow]")
        return

    table = Table(title="Integration Results")
    table.add_column("Status")
    table.add_column("Leaf", style="cyan")
    table.add_column("Time", justify="right")
    table.add_column("Message", style="dim")
    for result in report.results:
        table.add_row(
            _STATUS_STYLES[result.status],
            result.name,
            f"{result.duration:.2f}s",
            result.message,
        )
    console.print(table)

    summary = (
        f"{len(report.passed)} passed, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped"
    )
    console.print(f"[green]{summary}[/green]" if report.ok else f"[red]{summary}[/red]")
    if report.teardown_error:
        console.print(f"[red]Mirror teardown failed: {report.teardown_error}[/red]")
