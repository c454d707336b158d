"""
Main application entry point for Prism.

Provides a CLI for running analyses and inspecting providers, configuration
and cache state.
"""

import asyncio
import json
import sys
import time
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from prism.core.config import get_settings, print_configuration_summary, validate_provider_settings
from prism.core.exceptions import CacheBackendError, PrismError, RequestRejectedError
from prism.core.logging import set_correlation_id, setup_logging
from prism.core.models import AnalysisResult, Depth
from prism.engine import compare_results, create_engine

console = Console()

EXIT_REJECTED = 2


def _engine_factory(ctx):
    return ctx.obj.get("engine_factory") or create_engine


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--correlation-id", help="Set correlation ID for request tracing")
@click.pass_context
def main(ctx, debug: bool, correlation_id: Optional[str]):
    """Multi-provider analysis engine.

    Fans analysis requests out to blockchain and web data providers and
    returns one scored, consolidated result.
    """
    ctx.ensure_object(dict)

    setup_logging(debug=debug, rich_output=True)

    if correlation_id:
        set_correlation_id(correlation_id)

    ctx.obj["debug"] = debug
    ctx.obj["correlation_id"] = correlation_id


async def _run_analyses(factory, settings, payloads):
    async with factory(settings) as engine:
        return [await engine.analyze(payload) for payload in payloads]


def _payload(subject: str, domain: str, capabilities: Tuple[str, ...], depth: str, timeframe):
    return {
        "subject": subject,
        "domain": domain,
        "capabilities": list(capabilities),
        "depth": depth,
        "timeframe": timeframe,
    }


@main.command()
@click.argument("subject")
@click.option("--domain", required=True, help="Network name (ethereum, polygon, ...) or 'web'")
@click.option(
    "--capability",
    "capabilities",
    multiple=True,
    required=True,
    help="Capability to analyze (repeatable)",
)
@click.option(
    "--depth",
    type=click.Choice([d.value for d in Depth]),
    default=Depth.BASIC.value,
    show_default=True,
)
@click.option("--timeframe", help="24h, 7d, 30d, 90d or all")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result as JSON")
@click.pass_context
def analyze(ctx, subject, domain, capabilities, depth, timeframe, as_json):
    """Analyze SUBJECT across the requested capabilities."""
    try:
        settings = get_settings()
        payload = _payload(subject, domain, capabilities, depth, timeframe)
        (result,) = asyncio.run(_run_analyses(_engine_factory(ctx), settings, [payload]))

        if as_json:
            click.echo(json.dumps(result.to_wire(), indent=2))
        else:
            _display_result(result)
        sys.exit(0)

    except RequestRejectedError as e:
        if as_json:
            click.echo(json.dumps(e.to_dict(), indent=2))
        else:
            console.print(f"[red]Request Rejected ({e.code}):[/red] {e.message}")
        sys.exit(EXIT_REJECTED)
    except PrismError as e:
        console.print(f"[red]Analysis Error:[/red] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected Error:[/red] {e}")
        if ctx.obj["debug"]:
            import traceback

            console.print(traceback.format_exc())
        sys.exit(1)


@main.command()
@click.argument("first")
@click.argument("second")
@click.option("--domain", required=True, help="Network name or 'web' (shared by both subjects)")
@click.option("--capability", "capabilities", multiple=True, required=True)
@click.option(
    "--depth",
    type=click.Choice([d.value for d in Depth]),
    default=Depth.BASIC.value,
    show_default=True,
)
@click.pass_context
def compare(ctx, first, second, domain, capabilities, depth):
    """Analyze two subjects and compare their scores."""
    try:
        settings = get_settings()
        payloads = [_payload(s, domain, capabilities, depth, None) for s in (first, second)]
        a, b = asyncio.run(_run_analyses(_engine_factory(ctx), settings, payloads))
        report = compare_results(a, b)

        table = Table(title="Score Comparison")
        table.add_column("Category", style="cyan")
        table.add_column(report.first_subject, style="white")
        table.add_column(report.second_subject, style="white")
        table.add_column("Winner", style="green")

        rows = [("overall", report.overall)] + list(report.categories.items())
        for name, row in rows:
            table.add_row(
                name,
                "-" if row.first is None else f"{row.first:.1f}",
                "-" if row.second is None else f"{row.second:.1f}",
                row.winner or "-",
            )
        console.print(table)
        console.print(report.summary)
        sys.exit(0)

    except RequestRejectedError as e:
        console.print(f"[red]Request Rejected ({e.code}):[/red] {e.message}")
        sys.exit(EXIT_REJECTED)
    except Exception as e:
        console.print(f"[red]Comparison Error:[/red] {e}")
        sys.exit(1)


@main.command()
@click.option("--domain", default="", help="Only show providers serving this domain")
@click.pass_context
def providers(ctx, domain: str):
    """List registered providers and whether they can be called."""
    try:
        engine = _engine_factory(ctx)(get_settings())
        rows = engine.registry.status(domain.strip().lower())

        table = Table(title="Providers")
        table.add_column("Name", style="cyan")
        table.add_column("Capabilities", style="white")
        table.add_column("Domains", style="dim")
        table.add_column("Quota", style="yellow")
        table.add_column("Status", style="white")

        for row in rows:
            status = row["status"]
            status_text = "[green]Ready[/green]" if status == "ready" else f"[red]{status}[/red]"
            table.add_row(
                row["name"],
                ", ".join(row["capabilities"]),
                ", ".join(row["domains"]),
                row["quota"],
                status_text,
            )

        console.print(table)
        asyncio.run(engine.close())
        sys.exit(0)

    except Exception as e:
        console.print(f"[red]Provider Error:[/red] {e}")
        sys.exit(1)


@main.command()
@click.pass_context
def config(ctx):
    """Display current configuration."""
    try:
        console.print("[blue]Prism Configuration[/blue]")

        missing = validate_provider_settings()
        if missing:
            console.print("[yellow]Providers without credentials (will be skipped):[/yellow]")
            for item in missing:
                console.print(f"  • {item}")
            console.print()
        else:
            console.print("[green]All provider credentials configured[/green]")
            console.print()

        print_configuration_summary()
        sys.exit(0)

    except Exception as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        sys.exit(1)


@main.command("cache-stats")
@click.pass_context
def cache_stats(ctx):
    """Show persistent cache contents."""
    try:
        settings = get_settings()
        engine = _engine_factory(ctx)(settings)
        store = engine.cache.store

        table = Table(title="Cache")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("L2 store", settings.cache.db_path or "in-memory (process only)")
        stats_fn = getattr(store, "stats", None)
        if stats_fn is not None:
            for name, value in stats_fn(time.time()).items():
                table.add_row(f"L2 {name}", str(value))
        table.add_row("L1 capacity", str(settings.cache.l1_max_entries))
        table.add_row("Volatile TTL", f"{settings.cache.volatile_ttl}s")
        table.add_row("Stable TTL", f"{settings.cache.stable_ttl}s")
        table.add_row("Default TTL", f"{settings.cache.default_ttl}s")

        console.print(table)
        asyncio.run(engine.close())
        sys.exit(0)

    except CacheBackendError as e:
        console.print(f"[red]Cache Error:[/red] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected Error:[/red] {e}")
        sys.exit(1)


def _display_result(result: AnalysisResult) -> None:
    """Display an analysis result."""
    overview = result.overview
    console.print(f"[bold]{overview.summary}[/bold]")

    table = Table(title="Scores")
    table.add_column("Category", style="cyan")
    table.add_column("Score", style="white")
    table.add_row("overall", f"{result.score.overall:.1f}")
    for category, value in result.score.categories.items():
        table.add_row(category, f"{value:.1f}")
    console.print(table)

    sections = Table(title="Sections")
    sections.add_column("Capability", style="cyan")
    sections.add_column("Confidence", style="white")
    sections.add_column("Providers", style="dim")
    sections.add_column("Notes", style="yellow")
    for capability, section in result.sections.items():
        notes = section.unavailable_reason or ("conflicted" if section.conflicted else "")
        sections.add_row(
            capability, f"{section.confidence:.0%}", ", ".join(section.provenance) or "-", notes
        )
    console.print(sections)

    if result.recommendations:
        console.print("\n[bold]Recommendations:[/bold]")
        for rec in result.recommendations:
            console.print(
                f"  {rec.rank}. {rec.title} "
                f"[dim](impact {rec.impact.value}, effort {rec.effort.value}, "
                f"priority {rec.priority:.2f})[/dim]"
            )

    meta = result.metadata
    console.print(
        f"\n[dim]providers used: {', '.join(meta.providers_used) or 'none'} | "
        f"cache hit: {meta.cache_hit} | {meta.processing_time_ms:.0f} ms[/dim]"
    )
    if meta.providers_skipped:
        skipped = ", ".join(f"{name} ({reason})" for name, reason in meta.providers_skipped.items())
        console.print(f"[yellow]skipped: {skipped}[/yellow]")


if __name__ == "__main__":
    main()
