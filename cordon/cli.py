#!/usr/bin/env python3
"""
Cordon CLI - administer the package quarantine.

Usage:
    cordon requests [--status STATUS] [--json]
    cordon approve PACKAGE
    cordon reject PACKAGE
    cordon assessment PACKAGE [--json]
    cordon blocked [--limit N] [--json]
    cordon scan PACKAGE ARCHIVE [--json]
    cordon serve [--host HOST] [--port PORT]
    cordon config show
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cordon import __version__
from cordon.config import load_config
from cordon.errors import (
    AssessmentUnavailableError,
    ConfigError,
    PackageNotFoundError,
    StoreIOError,
)
from cordon.models import ScanResults

# Single shared Console instance for the entire CLI
console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "approved": "green",
    "rejected": "red",
    "blocked": "red",
}

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "white",
}


def print_success(message: str) -> None:
    """Print a success message with green checkmark."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str, fix_hint: str = "") -> None:
    """Print an error message with red X and optional fix hint."""
    console.print(f"[red]✗[/red] {message}")
    if fix_hint:
        console.print(f"  [white]Hint: {fix_hint}[/white]")


def _setup_logging(verbose: bool) -> None:
    # Log records go to stderr so --json output on stdout stays parseable
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _print_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def _score_style(score: int, threshold: int) -> str:
    if score >= threshold:
        return "red"
    if score > 0:
        return "yellow"
    return "green"


def _print_scan_results(results: ScanResults, threshold: int) -> None:
    style = _score_style(results.risk_score, threshold)
    console.print(
        f"Risk score for [cyan]{results.package_name}[/cyan]: "
        f"[{style}]{results.risk_score}[/{style}] "
        f"({len(results.risks)} risk(s), {results.scan_duration_ms}ms)"
    )
    if not results.risks:
        return

    counts = results.count_by_severity()
    console.print(", ".join(
        f"[{SEVERITY_STYLES[sev]}]{n} {sev}[/{SEVERITY_STYLES[sev]}]"
        for sev, n in counts.items() if n
    ))

    table = Table(title="Risks")
    table.add_column("Severity")
    table.add_column("Type", style="cyan")
    table.add_column("Description", style="white")
    for risk in results.risks:
        sev = risk.severity.value
        table.add_row(f"[{SEVERITY_STYLES[sev]}]{sev}[/{SEVERITY_STYLES[sev]}]",
                      risk.type.value, risk.description)
    console.print(table)


class _Context:
    """Lazily builds the Quarantine so 'config show' works without a store."""

    def __init__(self, config_path: Optional[Path], quarantine_path: Optional[Path]):
        self.config_path = config_path
        self.quarantine_path = quarantine_path
        self._config = None
        self._quarantine = None

    @property
    def config(self):
        if self._config is None:
            config = load_config(self.config_path)
            if self.quarantine_path is not None:
                config = config.model_copy(update={"quarantine_path": self.quarantine_path})
            self._config = config
        return self._config

    @property
    def quarantine(self):
        if self._quarantine is None:
            from cordon.quarantine import Quarantine
            self._quarantine = Quarantine(config=self.config)
        return self._quarantine


@click.group()
@click.version_option(__version__, prog_name="cordon")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Config file (default ~/.cordon/config.yaml)")
@click.option("--quarantine-path", type=click.Path(path_type=Path), default=None,
              help="Override the quarantine directory")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, config_path: Optional[Path], quarantine_path: Optional[Path], verbose: bool):
    """Cordon - quarantine gate for package registries."""
    _setup_logging(verbose)
    ctx.obj = _Context(config_path, quarantine_path)


def _fail(message: str, fix_hint: str = "") -> None:
    print_error(message, fix_hint)
    sys.exit(1)


@main.command("requests")
@click.option("--status", type=click.Choice(["pending", "approved", "rejected", "blocked"]),
              default=None, help="Only show packages in this state")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def requests_cmd(obj: _Context, status: Optional[str], as_json: bool):
    """List every package that has been requested."""
    try:
        items = obj.quarantine.list_requests()
    except (StoreIOError, ConfigError) as e:
        _fail(str(e))

    if status:
        items = [i for i in items if i["status"] == status]

    if as_json:
        _print_json(items)
        return

    if not items:
        console.print("[white]No package requests.[/white]")
        return

    table = Table(title="Package Requests")
    table.add_column("Package", style="cyan")
    table.add_column("Status")
    table.add_column("Risk", justify="right")
    table.add_column("Requested", style="white")
    table.add_column("Scanned", style="white")

    threshold = obj.config.risk_threshold
    for item in sorted(items, key=lambda i: i["requestedAt"]):
        st = item["status"]
        score = item.get("riskScore", 0)
        scanned = item.get("scannedAt")
        score_text = f"[{_score_style(score, threshold)}]{score}[/]" if scanned else "-"
        table.add_row(
            item["package"],
            f"[{STATUS_STYLES.get(st, 'white')}]{st}[/]",
            score_text,
            item["requestedAt"],
            scanned or "-",
        )

    console.print(table)


@main.command("approve")
@click.argument("package")
@click.pass_obj
def approve_cmd(obj: _Context, package: str):
    """Approve PACKAGE so the registry will serve it."""
    try:
        obj.quarantine.approve(package)
    except PackageNotFoundError:
        _fail(f"Package {package} not found", "It appears here after its first fetch or a scan.")
    except (StoreIOError, ConfigError) as e:
        _fail(str(e))
    print_success(f"Package {package} approved")


@main.command("reject")
@click.argument("package")
@click.pass_obj
def reject_cmd(obj: _Context, package: str):
    """Reject PACKAGE."""
    try:
        obj.quarantine.reject(package)
    except PackageNotFoundError:
        _fail(f"Package {package} not found")
    except (StoreIOError, ConfigError) as e:
        _fail(str(e))
    print_success(f"Package {package} rejected")


@main.command("assessment")
@click.argument("package")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def assessment_cmd(obj: _Context, package: str, as_json: bool):
    """Show the latest risk assessment for PACKAGE."""
    try:
        assessment = obj.quarantine.get_assessment(package)
    except AssessmentUnavailableError:
        _fail(f"Risk assessment not available for {package}",
              f"Run 'cordon scan {package} <archive>'")
    except (StoreIOError, ConfigError) as e:
        _fail(str(e))

    if as_json:
        _print_json(assessment)
        return

    results = ScanResults.from_dict(assessment["scanResults"])
    console.print(f"Scanned at: {assessment['scannedAt']}")
    _print_scan_results(results, obj.config.risk_threshold)


@main.command("blocked")
@click.option("--limit", default=50, show_default=True, help="Most recent N entries")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def blocked_cmd(obj: _Context, limit: int, as_json: bool):
    """List denied fetch attempts."""
    try:
        attempts = obj.quarantine.list_blocked()
    except (StoreIOError, ConfigError) as e:
        _fail(str(e))

    attempts = attempts[-limit:] if limit > 0 else attempts

    if as_json:
        _print_json([a.to_dict() for a in attempts])
        return

    if not attempts:
        console.print("[white]No blocked attempts.[/white]")
        return

    table = Table(title="Blocked Attempts")
    table.add_column("Time", style="white")
    table.add_column("Package", style="cyan")
    table.add_column("IP")
    table.add_column("User Agent", style="white")
    for a in attempts:
        table.add_row(a.timestamp, a.package, a.ip, a.user_agent or "")
    console.print(table)


@main.command("scan")
@click.argument("package")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_obj
def scan_cmd(obj: _Context, package: str, archive: Path, as_json: bool):
    """Scan ARCHIVE as PACKAGE and record the result.

    Exits 2 when the risk score reaches the configured threshold.
    """
    try:
        results = obj.quarantine.scan_package(package, archive, requested_by="cli")
    except (StoreIOError, ConfigError) as e:
        _fail(str(e))

    if as_json:
        _print_json(results.to_dict())
    else:
        _print_scan_results(results, obj.config.risk_threshold)

    if obj.quarantine.exceeds_threshold(results.risk_score):
        sys.exit(2)


@main.command("serve")
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_obj
def serve_cmd(obj: _Context, host: Optional[str], port: Optional[int]):
    """Run the quarantine administration server."""
    from cordon.server import run_server

    package_logger = logging.getLogger("cordon")
    if package_logger.getEffectiveLevel() > logging.INFO:
        package_logger.setLevel(logging.INFO)

    try:
        run_server(obj.quarantine, host=host, port=port)
    except ConfigError as e:
        _fail(str(e))
    except OSError as e:
        _fail(f"Cannot start server: {e}")


@main.group("config")
def config_group():
    """Inspect configuration."""
    pass


@config_group.command("show")
@click.pass_obj
def config_show(obj: _Context):
    """Print the effective configuration."""
    try:
        _print_json(obj.config.to_dict())
    except ConfigError as e:
        _fail(str(e))


if __name__ == "__main__":
    main()
