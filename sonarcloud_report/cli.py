"""CLI entry point: command definitions using Click.

Commands:
    init          Generate a template config file
    report        Quality gate, coverage, issues and metrics for a PR or branch
    uncovered     Uncovered lines of a PR or branch, with source context
"""

import functools
import json
import logging
import sys
from typing import Any

import click
import yaml

from sonarcloud_report import __version__


# ---------------------------------------------------------------------------
# Helpers shared by all data commands
# ---------------------------------------------------------------------------

def _make_client(ctx: click.Context):
    """Load config and return a ready SonarClient. Exits on error."""
    from sonarcloud_report.client import SonarClient
    from sonarcloud_report.config import ConfigError, load

    obj = ctx.obj
    try:
        config = load(obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    if obj["verbose"]:
        click.echo(f"[verbose] Connecting to {config.url}", err=True)

    return config, SonarClient(url=config.url, token=config.token)


def _emit(data: Any, ctx: click.Context) -> None:
    """Write JSON or YAML to stdout or to the file specified by --output."""
    obj = ctx.obj
    if obj["format"] == "yaml":
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    else:
        indent = 2 if obj["pretty"] else None
        text = json.dumps(data, indent=indent, ensure_ascii=False)

    output_path: str | None = obj["output_path"]
    if output_path:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(text)
        click.echo(f"Report written to '{output_path}'", err=True)
    else:
        click.echo(text)


def _handle_client_errors(func):
    """Decorator that catches report exceptions and exits cleanly."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        from sonarcloud_report.cancellation import ReportCancelled
        from sonarcloud_report.client import (
            AuthenticationError,
            NetworkError,
            NotFoundError,
            SonarClientError,
        )
        from sonarcloud_report.query import QueryContextError
        from sonarcloud_report.report import ReportError

        try:
            return func(*args, **kwargs)
        except QueryContextError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
        except ReportError as exc:
            click.echo(f"Report error: {exc}", err=True)
            sys.exit(1)
        except ReportCancelled:
            click.echo("Cancelled.", err=True)
            sys.exit(130)
        except AuthenticationError as exc:
            _echo_client_error("Authentication error", exc)
            sys.exit(1)
        except NotFoundError as exc:
            _echo_client_error("Not found", exc)
            sys.exit(1)
        except NetworkError as exc:
            _echo_client_error("Network error", exc)
            sys.exit(1)
        except SonarClientError as exc:
            _echo_client_error("SonarCloud error", exc)
            sys.exit(1)

    return wrapper


def _echo_client_error(label: str, exc) -> None:
    click.echo(f"{label}: {exc}", err=True)
    for suggestion in exc.suggestions:
        click.echo(f"  - {suggestion}", err=True)


def _filter_options(func):
    """Options shared by the data commands, mapped onto FilterOptions."""
    options = [
        click.argument("workspace"),
        click.argument("repo"),
        click.option("--pr", "pr_id", default=None,
                     help="Pull request ID (123 or #123). If omitted, reports on --branch."),
        click.option("--branch", default="main", show_default=True,
                     help="Branch to report on when no --pr is given."),
        click.option("--commit", "commit_hash", default=None,
                     help="Analysed commit hash."),
        click.option("--project-key", default=None,
                     help="SonarCloud project key (skips discovery)."),
        click.option("--coverage-threshold", type=float, default=0.0,
                     help="Show only files below N% coverage."),
        click.option("--limit", type=int, default=None,
                     help="Page size for files and issues (max 500)."),
        click.option("--new-code-only", is_flag=True, default=False,
                     help="Focus on new code analysis."),
        click.option("--severity", "severities", multiple=True,
                     type=click.Choice(["BLOCKER", "CRITICAL", "MAJOR", "MINOR", "INFO"],
                                       case_sensitive=False),
                     help="Only issues of this severity (repeatable)."),
        click.option("--worst-first", is_flag=True, default=False,
                     help="Sort files by ascending coverage."),
        click.option("--show-all-lines", is_flag=True, default=False,
                     help="Show every uncovered line, not just --lines-per-file."),
        click.option("--lines-per-file", type=int, default=None,
                     help="Max uncovered lines per file (new-code lines always shown)."),
        click.option("--new-lines-only", is_flag=True, default=False,
                     help="Only NEW uncovered lines."),
        click.option("--min-uncovered-lines", type=int, default=0,
                     help="Only files with N+ uncovered lines."),
        click.option("--max-uncovered-lines", type=int, default=0,
                     help="Only files with at most N uncovered lines."),
        click.option("--file", "file_pattern", default="",
                     help="Only files matching this glob (path or basename)."),
        click.option("--no-line-details", is_flag=True, default=False,
                     help="Skip the line-by-line breakdown."),
        click.option("--truncate-lines", type=int, default=None,
                     help="Truncate code lines after N characters."),
        click.option("--debug", is_flag=True, default=False,
                     help="Log every request and per-file failure."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_filters(config, include_coverage: bool, include_issues: bool, **kw):
    from sonarcloud_report.models import FilterOptions

    defaults = config.defaults
    return FilterOptions(
        include_coverage=include_coverage,
        include_issues=include_issues,
        coverage_threshold=kw["coverage_threshold"],
        limit=kw["limit"] if kw["limit"] is not None else defaults.limit,
        new_code_only=kw["new_code_only"],
        severity_filter=tuple(s.upper() for s in kw["severities"]),
        show_worst_first=kw["worst_first"],
        show_all_lines=kw["show_all_lines"],
        lines_per_file=kw["lines_per_file"] if kw["lines_per_file"] is not None else defaults.lines_per_file,
        new_lines_only=kw["new_lines_only"],
        min_uncovered_lines=kw["min_uncovered_lines"],
        max_uncovered_lines=kw["max_uncovered_lines"],
        file_pattern=kw["file_pattern"],
        no_line_details=kw["no_line_details"],
        truncate_lines=kw["truncate_lines"] if kw["truncate_lines"] is not None else defaults.truncate_lines,
        debug=kw["debug"],
    )


def _build_change(workspace: str, repo: str, pr_id: str | None, branch: str, commit_hash: str | None):
    from sonarcloud_report.query import PipelineRef, PullRequestRef, parse_pr_id

    if pr_id:
        return PullRequestRef(workspace, repo, parse_pr_id(pr_id), commit_hash=commit_hash)
    return PipelineRef(workspace, repo, branch=branch, commit_hash=commit_hash)


def _run_report(ctx: click.Context, config, client, filters, kw: dict):
    """Generate the report; Ctrl-C cancels in-flight work."""
    from sonarcloud_report.cancellation import CancellationToken, ReportCancelled
    from sonarcloud_report.discovery import ProjectKeyDiscovery
    from sonarcloud_report.report import generate_report

    if filters.debug:
        logging.getLogger("sonarcloud_report").setLevel(logging.DEBUG)

    cancel = CancellationToken()
    try:
        change = _build_change(kw["workspace"], kw["repo"], kw["pr_id"], kw["branch"], kw["commit_hash"])
        discovery = ProjectKeyDiscovery(config=config, explicit_key=kw["project_key"])
        if ctx.obj["verbose"]:
            click.echo(f"[verbose] Generating report for {change}", err=True)
        return generate_report(client, change, filters, discovery=discovery, cancel=cancel)
    except KeyboardInterrupt:
        cancel.cancel()
        raise ReportCancelled("interrupted") from None
    finally:
        client.close()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "config_path", default="sonarcloud-config.yaml", show_default=True,
              help="Path to the configuration file.")
@click.option("--output", "output_path", default=None,
              help="Write output to a file instead of stdout.")
@click.option("--format", "output_format", type=click.Choice(["json", "yaml"]), default="json",
              show_default=True, help="Output format.")
@click.option("--pretty", is_flag=True, default=False,
              help="Pretty-print the JSON output.")
@click.option("--verbose", is_flag=True, default=False,
              help="Enable verbose logging.")
@click.version_option(__version__, prog_name="sonarcloud-report")
@click.pass_context
def cli(ctx: click.Context, config_path: str, output_path: str | None,
        output_format: str, pretty: bool, verbose: bool) -> None:
    """SonarCloud change report: coverage, issues and quality gate for a PR or branch."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["output_path"] = output_path
    ctx.obj["format"] = output_format
    ctx.obj["pretty"] = pretty
    ctx.obj["verbose"] = verbose
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------

@cli.command("init")
@click.option("--output", "output_path", default="sonarcloud-config.yaml", show_default=True,
              help="Path where the template config file will be written.")
def init_command(output_path: str) -> None:
    """Generate a template sonarcloud-config.yaml file."""
    from sonarcloud_report.config import ConfigError, generate_template
    try:
        generate_template(output_path)
        click.echo(f"Template written to '{output_path}'.")
        click.echo("Edit it with your token and workspace/repo to project key mappings.")
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# report
# ---------------------------------------------------------------------------

@cli.command("report")
@_filter_options
@click.option("--coverage-only", is_flag=True, default=False,
              help="Only the coverage section (plus quality gate and metrics).")
@click.option("--issues-only", is_flag=True, default=False,
              help="Only the issues section (plus quality gate and metrics).")
@click.pass_context
@_handle_client_errors
def report_command(ctx: click.Context, coverage_only: bool, issues_only: bool, **kw) -> None:
    """Full quality report for pull request --pr or branch --branch."""
    if coverage_only and issues_only:
        raise click.UsageError("--coverage-only and --issues-only are mutually exclusive")

    config, client = _make_client(ctx)
    filters = _build_filters(
        config,
        include_coverage=not issues_only,
        include_issues=not coverage_only,
        **kw,
    )
    report = _run_report(ctx, config, client, filters, kw)

    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)
    _emit(report.to_dict(), ctx)


# ---------------------------------------------------------------------------
# uncovered
# ---------------------------------------------------------------------------

_MARKERS = {"new": "▶", "uncovered": "▶", None: " "}


@cli.command("uncovered")
@_filter_options
@click.option("--context", "context_lines", type=click.IntRange(min=0), default=0,
              help="Show N lines of local source around each uncovered line.")
@click.pass_context
@_handle_client_errors
def uncovered_command(ctx: click.Context, context_lines: int, **kw) -> None:
    """Uncovered lines per file, new-code lines flagged [NEW]."""
    from sonarcloud_report.context import read_source, render_context

    config, client = _make_client(ctx)
    filters = _build_filters(config, include_coverage=True, include_issues=False, **kw)
    report = _run_report(ctx, config, client, filters, kw)

    coverage = report.coverage
    if coverage is None or not coverage.available:
        reason = coverage.error if coverage is not None else "not requested"
        click.echo(f"Coverage unavailable: {reason}", err=True)
        sys.exit(1)

    for details in coverage.coverage_details:
        click.echo(
            f"{details.file_path} ({details.coverage_percent:.1f}% covered, "
            f"{details.total_uncovered} uncovered, {details.new_uncovered} new)"
        )
        source = read_source(details.file_path) if context_lines else None
        for line in render_context(details.uncovered_lines, context_lines, source,
                                   filters.truncate_lines):
            if line is None:
                click.echo("")
                continue
            suffix = " [NEW]" if line.mark == "new" else ""
            text = f"{_MARKERS[line.mark]} {line.number} {line.code}{suffix}"
            click.echo(click.style(text, fg="red") if line.mark == "new" else text)
        click.echo("")
