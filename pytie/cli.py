"""Click CLI with Rich output."""

from __future__ import annotations

import functools
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .client import TieClient
from .config import BLOOM_P, CONFIG_PATH, IOC_LIMIT, ClientSettings, load_config
from .errors import TieError
from .queries import FILTER_KEYS, IOCRequest, build_filter_args

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("pytie")


def _fail(exc: Exception):
    err_console.print(f"[red bold]Error:[/red bold] {exc}")
    raise SystemExit(1)


def filter_options(**defaults):
    """Attach the filter flags shared by ``iocs`` and ``feed``.

    The decorated command receives the rendered query-string fragment as
    ``extra_args`` instead of the individual flags.
    """

    def decorator(func):
        return _apply_filter_options(func, defaults)

    return decorator


def _apply_filter_options(func, defaults):
    options = [
        click.option("--severity", help="Severity, single value or range (e.g. 2-4)."),
        click.option("--confidence", help="Confidence, single value or range."),
        click.option("-c", "--category", help="Comma-separated IOC categories."),
    ]
    for key in FILTER_KEYS[3:]:
        field, bound = key.rsplit("_", 1)
        flag = "--" + key.replace("_", "-")
        options.append(
            click.option(
                flag,
                key,
                default=defaults.get(key),
                show_default=key in defaults,
                help=f"Limit to IOCs {field.replace('_', ' ')} {bound} the given date.",
            )
        )
    for option in reversed(options):
        func = option(func)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        filters = {key: kwargs.pop(key) for key in FILTER_KEYS}
        try:
            kwargs["extra_args"] = build_filter_args(**filters)
        except ValueError as exc:
            raise click.UsageError(str(exc)) from exc
        return func(*args, **kwargs)

    return wrapper


def _make_client(ctx: click.Context, limit: int = IOC_LIMIT, bloom_p: float = BLOOM_P) -> TieClient:
    try:
        creds = load_config(ctx.obj["conf"])
    except TieError as exc:
        _fail(exc)
    settings = ClientSettings(
        auth_token=creds.tie_token,
        pingback_token=creds.pingback_token,
        limit=limit,
        debug=ctx.obj["debug"],
        bloom_p=bloom_p,
    )
    return TieClient(settings)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "-c",
    "--conf",
    type=click.Path(dir_okay=False, path_type=Path),
    default=CONFIG_PATH,
    show_default=True,
    help="Config file holding tie_token and pingback_token.",
)
@click.option("-d", "--debug", is_flag=True, help="Print debug messages.")
@click.pass_context
def cli(ctx: click.Context, conf: Path, debug: bool):
    """pytie: query the DCSO Threat Intelligence Engine (TIE)."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    if debug:
        logger.debug("DEBUG mode activated")
    ctx.obj = {"conf": conf, "debug": debug}


@cli.command()
@click.option("-q", "--query", default="", help="Query string (case insensitive).")
@click.option(
    "-f", "--format", "output_format", default="csv", show_default=True,
    help="Output format (bloom|csv|json|stix).",
)
@click.option(
    "--bloom-p", type=float, default=BLOOM_P, show_default=True,
    help="Bloom output: false positive rate.",
)
@click.option("-t", "--type", "data_type", default="", help="IOC data type to search exclusively.")
@click.option(
    "--limit", type=int, default=IOC_LIMIT, show_default=True,
    help="Number of IOCs to query at once.",
)
@click.option("--table", is_flag=True, help="Show results as a table instead of raw output.")
@filter_options(first_seen_since="2015-01-01")
@click.pass_context
def iocs(
    ctx: click.Context,
    query: str,
    output_format: str,
    bloom_p: float,
    data_type: str,
    limit: int,
    table: bool,
    extra_args: str,
):
    """Search IOCs by value."""
    client = _make_client(ctx, limit=limit, bloom_p=bloom_p)

    if table:
        _print_table(client, IOCRequest(query, data_type, extra_args))
        return

    out = click.get_binary_stream("stdout")
    try:
        client.write_iocs(query, data_type, extra_args, output_format, out)
    except TieError as exc:
        _fail(exc)
    out.flush()


@cli.command()
@click.option(
    "-p", "--period", required=True,
    help="Feed period (hourly|daily|weekly|monthly).",
)
@click.option(
    "-f", "--format", "output_format", default="csv", show_default=True,
    help="Output format (bloom|csv|json|stix).",
)
@click.option("-t", "--type", "data_type", required=True, help="IOC data type.")
@click.option(
    "--limit", type=int, default=IOC_LIMIT, show_default=True,
    help="Number of IOCs to query at once.",
)
@filter_options()
@click.pass_context
def feed(
    ctx: click.Context,
    period: str,
    output_format: str,
    data_type: str,
    limit: int,
    extra_args: str,
):
    """Download the IOC feed for a period."""
    client = _make_client(ctx, limit=limit)
    out = click.get_binary_stream("stdout")
    try:
        client.write_feed(period, data_type, extra_args, output_format, out)
    except TieError as exc:
        _fail(exc)
    out.flush()


@cli.command()
@click.option("-t", "--type", "data_type", required=True, help="IOC data type.")
@click.option("-v", "--value", required=True, help="IOC value that was observed.")
@click.pass_context
def pingback(ctx: click.Context, data_type: str, value: str):
    """Report an observed hit for an IOC."""
    client = _make_client(ctx)
    if not client.settings.pingback_token:
        _fail(TieError("Please set a valid pingback_token in your config file!"))

    try:
        resp = client.pingback(data_type, value)
    except TieError as exc:
        _fail(exc)

    console.print(f"[green]{resp.status_code}[/green] {resp.reason or ''}".rstrip())
    if resp.text:
        console.print(resp.text, markup=False)


def _print_table(client: TieClient, request: IOCRequest):
    table = Table(show_header=True, header_style="bold")
    table.add_column("Value")
    table.add_column("Type")
    table.add_column("Categories")
    table.add_column("Severity")
    table.add_column("Confidence")
    table.add_column("Last seen")

    count = 0
    with client.stream_iocs(request) as results:
        for item in results:
            if item.error is not None:
                _fail(item.error)
            ioc = item.ioc
            table.add_row(
                ioc.value,
                ioc.data_type,
                ", ".join(ioc.categories),
                f"{ioc.min_severity}-{ioc.max_severity}",
                f"{ioc.min_confidence}-{ioc.max_confidence}",
                ioc.last_seen.strftime("%Y-%m-%d") if ioc.last_seen else "—",
            )
            count += 1

    if count == 0:
        console.print("[yellow]No IOCs found.[/yellow]")
        return

    console.print(table)
    console.print(f"[dim]{count} IOC(s)[/dim]")


def main():
    cli(prog_name="pytie")
