#!/usr/bin/env python3
"""
Brand Analyzer CLI - AI brand presence analysis from the terminal

Usage:
    brand-analyzer serve --port 8000
    brand-analyzer analyze 1 --base-url http://localhost:8000
    brand-analyzer score example.com --text "Try example.com or acme.io"
    brand-analyzer check
"""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from config import get_settings
from presence_scorer import detect_presence, score_response
from stats import calculate_visibility_band
from stream_client import AnalysisStatus, AnalysisStreamClient

console = Console()

DOWNLOADS_DIR = Path.home() / "Downloads"


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """
    Brand Analyzer - how AI models talk about your domain

    Streams AI answers for selected phrases and scores brand presence.
    """
    pass


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", "-p", default=8000, help="Port (default: 8000)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Run the API gateway with uvicorn."""
    import uvicorn

    settings = get_settings()
    console.print(Panel(
        f"[bold cyan]Brand Analyzer API[/bold cyan]\n\n"
        f"Listening on [green]http://{host}:{port}[/green]",
        border_style="cyan"
    ))
    uvicorn.run("main:app", host=host, port=port, reload=reload, log_level=settings.log_level.lower())


@cli.command()
@click.argument("domain_id", type=int)
@click.option("--base-url", "-u", default="http://localhost:8000", help="Brand analyzer API URL")
@click.option("--output", "-o", default=None, help="Output file (json)")
@click.option("--verbose", "-v", is_flag=True, help="Show keyword breakdown")
def analyze(domain_id: int, base_url: str, output: Optional[str], verbose: bool):
    """
    Stream an analysis run for a registered domain.

    Existing results are loaded first; the stream only runs when some
    selected phrase is missing a model.
    """
    console.print()
    console.print(Panel(
        f"[bold cyan]Brand Analyzer - AI Presence Analysis[/bold cyan]\n\n"
        f"Domain ID: [green]{domain_id}[/green]\n"
        f"API: [dim]{base_url}[/dim]",
        border_style="cyan"
    ))
    console.print()

    client = AnalysisStreamClient(base_url)

    async def run_analysis():
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("[cyan]Connecting...", total=100)

            def on_event(name, payload, state):
                description = state.message[:60] if state.message else name
                progress.update(task, completed=state.progress, description=f"[cyan]{description}")

            state = await client.analyze(domain_id, on_event=on_event)
            progress.update(task, completed=state.progress)
            return state

    try:
        state = asyncio.run(run_analysis())
    except httpx.HTTPError as e:
        console.print(f"\n[red]Error:[/red] Could not load domain {domain_id}: {e}")
        console.print()
        sys.exit(1)

    if state.status == AnalysisStatus.ERROR:
        console.print(f"\n[red]Error:[/red] {state.error}")
        console.print()
        sys.exit(1)

    stats = state.stats or state.final_stats()
    overall = stats.get("overall", {})
    band = calculate_visibility_band(overall.get("avgOverall", 0))
    band_colors = {"Dominant": "green", "Strong": "blue", "Moderate": "yellow", "Weak": "orange1", "Minimal": "red"}
    band_color = band_colors.get(band, "white")

    console.print()
    console.print(Panel(
        f"[bold]Presence Rate:[/bold] [{band_color}]{overall.get('presenceRate', 0)}%[/{band_color}]  "
        f"[bold]Band:[/bold] [{band_color}]{band}[/{band_color}]\n\n"
        f"[bold]Results:[/bold] {stats.get('totalResults', 0)}  "
        f"[bold]New this run:[/bold] {state.accepted_this_run}  "
        f"[bold]Warnings:[/bold] {len(state.warnings)}",
        title="[bold green]AI Presence Results[/bold green]",
        border_style="green"
    ))

    table = Table(title="Model Performance", show_header=True, header_style="bold")
    table.add_column("Model", style="cyan")
    table.add_column("Presence", justify="right")
    table.add_column("Relevance", justify="right")
    table.add_column("Accuracy", justify="right")
    table.add_column("Sentiment", justify="right")
    table.add_column("Overall", justify="right")
    for m in stats.get("models", []):
        table.add_row(
            m["model"],
            f"{m['presenceRate']}%",
            str(m["avgRelevance"]),
            str(m["avgAccuracy"]),
            str(m["avgSentiment"]),
            str(m["avgOverall"]),
        )
    console.print()
    console.print(table)

    if verbose and stats.get("keywordStats"):
        kw_table = Table(title="Keywords", show_header=True, header_style="bold")
        kw_table.add_column("Keyword", style="cyan", width=30)
        kw_table.add_column("Queries", justify="right")
        kw_table.add_column("Mention Rate", justify="right")
        for k in stats["keywordStats"]:
            kw_table.add_row(k["keyword"][:30], str(k["totalQueries"]), f"{k['mentionRate']}%")
        console.print()
        console.print(kw_table)

    output_path = output
    if not output_path:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        output_path = DOWNLOADS_DIR / f"brand-analysis-{domain_id}-{timestamp}.json"

    payload = {
        "domainId": domain_id,
        "stats": stats,
        "results": [r.to_dict() for r in state.results],
        "warnings": state.warnings,
    }
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    Path(output_path).write_text(json.dumps(payload, indent=2, default=str))
    console.print(f"\n[dim]Saved to:[/dim] [cyan]{output_path}[/cyan]")
    console.print()


@cli.command()
@click.argument("domain")
@click.option("--text", "-t", default=None, help="AI response text to score")
@click.option("--file", "-f", "response_file", type=click.Path(exists=True, dir_okay=False), help="Read the response from a file")
@click.option("--phrase", "-q", default="", help="Phrase the response answers")
@click.option("--json", "as_json", is_flag=True, help="Print scores as JSON")
def score(domain: str, text: Optional[str], response_file: Optional[str], phrase: str, as_json: bool):
    """
    Score one AI response for a domain offline (no API calls).

    Example:
        brand-analyzer score acme.io -t "The best option is https://acme.io"
    """
    if response_file:
        text = Path(response_file).read_text()
    if not text:
        raise click.UsageError("Provide the response with --text or --file")

    analysis = detect_presence(text, domain)
    scores = score_response(phrase, text, domain, analysis)

    if as_json:
        click.echo(json.dumps(scores.to_dict(), indent=2))
        return

    color = "green" if scores.presence else "red"
    console.print()
    console.print(Panel(
        f"[bold]Presence:[/bold] [{color}]{scores.presence_label}[/{color}]  "
        f"[bold]Rank:[/bold] {scores.domain_rank or '-'}  "
        f"[bold]Method:[/bold] {scores.detection_method}  "
        f"[bold]Sentiment:[/bold] {scores.domain_sentiment}\n\n"
        f"[bold]Relevance:[/bold] {scores.relevance}  "
        f"[bold]Accuracy:[/bold] {scores.accuracy}  "
        f"[bold]Sentiment score:[/bold] {scores.sentiment}  "
        f"[bold]Overall:[/bold] {scores.overall}",
        title=f"[bold cyan]{domain}[/bold cyan]",
        border_style="cyan"
    ))

    if scores.highlight_context:
        console.print(f"\n[dim]Context:[/dim] {scores.highlight_context}")

    if scores.competitors.mentions:
        table = Table(title="Competitors", show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Domain")
        table.add_column("Sentiment")
        for m in scores.competitors.mentions:
            table.add_row(str(m.position), m.name, m.domain, m.sentiment)
        console.print()
        console.print(table)
    console.print()


@cli.command()
def check():
    """Check configuration."""
    console.print()
    console.print("[bold cyan]Brand Analyzer - Configuration Check[/bold cyan]")
    console.print()

    settings = get_settings()
    key = settings.openrouter_api_key

    table = Table(show_header=False)
    table.add_column("Setting", style="dim")
    table.add_column("Status")

    if key:
        table.add_row("OPENROUTER_API_KEY", f"[green]Set[/green] ({key[:8]}...)")
    else:
        table.add_row("OPENROUTER_API_KEY", "[red]Not set[/red]")
    table.add_row("OPENROUTER_BASE_URL", settings.openrouter_base_url)
    table.add_row("QUERY_TIMEOUT_SECONDS", str(settings.query_timeout_seconds))
    table.add_row("MAX_QUERIES", str(settings.max_queries))
    table.add_row("MAX_CONCURRENT_REQUESTS", str(settings.max_concurrent_requests))
    table.add_row("AI_PRESENCE_DETECTION", "on" if settings.ai_presence_detection else "off")

    console.print(table)
    console.print()

    if not key:
        console.print("[bold]Setup:[/bold]")
        console.print("  export OPENROUTER_API_KEY='your-key'")
        console.print("  # or add it to .env.local")
    else:
        console.print("[green]Ready![/green]")

    console.print()


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
