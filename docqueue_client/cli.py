"""
docqueue CLI Tool
Command-line interface for the docqueue API.
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .client import DocQueueClient


console = Console()


def get_client(url: str, api_key: Optional[str] = None) -> DocQueueClient:
    """Create a client instance."""
    return DocQueueClient(base_url=url, api_key=api_key)


def fail(e: Exception) -> None:
    if isinstance(e, httpx.HTTPStatusError):
        try:
            detail = e.response.json().get("message", e.response.text)
        except ValueError:
            detail = e.response.text
        console.print(f"❌ [red]{e.response.status_code}: {detail}[/red]")
    else:
        console.print(f"❌ [red]Error: {e}[/red]")
    sys.exit(1)


@click.group()
@click.option("--url", "-u", default="http://localhost:8000", help="API server URL")
@click.option("--api-key", "-k", envvar="DOCQUEUE_API_KEY", help="Bearer token")
@click.pass_context
def cli(ctx, url: str, api_key: Optional[str]):
    """docqueue CLI - submit documents and follow their jobs."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["api_key"] = api_key


@cli.command()
@click.pass_context
def health(ctx):
    """Check API server health."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            status = client.health()
        except httpx.HTTPError as e:
            console.print(f"❌ [red]Connection failed: {e}[/red]")
            sys.exit(1)

        if status.get("status") == "healthy":
            console.print("✅ [green]API is healthy[/green]")
        else:
            console.print("⚠️ [yellow]API is degraded[/yellow]")
        console.print(f"   Database: {'ok' if status.get('database') else 'down'}")
        if status.get("rate_limiting_degraded"):
            console.print("   Rate limiting: [yellow]per instance[/yellow]")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--classify", is_flag=True, help="Detect the document type")
@click.option("--wait", "-w", is_flag=True, help="Wait for a queued job to finish")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def process(ctx, path: Path, classify: bool, wait: bool, as_json: bool):
    """Upload a PDF and submit it for processing."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Uploading and submitting...", total=None)
                locator = client.upload(path)
                submitted = client.submit(locator, path.name, options={"classify": classify})

            if as_json and not (wait and submitted.queued):
                console.print(json.dumps(submitted.__dict__, indent=2))
                return

            if not submitted.queued:
                console.print(Panel(
                    f"Pages: {submitted.result.get('page_count', '-')}\n"
                    f"Type: {submitted.result.get('document_type') or '-'}\n"
                    f"Week usage: {submitted.usage.get('weekly_usage', 0)}",
                    title=f"[cyan]{submitted.processing_id}[/cyan]",
                    border_style="green",
                ))
                return

            console.print(
                f"⏳ Queued [cyan]{submitted.processing_id}[/cyan] at position "
                f"{submitted.position} (~{submitted.eta_seconds}s)"
            )
            if not wait:
                return

            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                console=console,
            ) as bar:
                task = bar.add_task("Processing", total=100)
                result = client.wait_for_job(submitted.processing_id)
                bar.update(task, completed=result.progress_percent)

            if as_json:
                console.print(json.dumps(result.__dict__, indent=2))
            elif result.status == "completed":
                console.print(f"✅ [green]{result.processing_id} completed[/green]")
            else:
                console.print(f"❌ [red]{result.processing_id} failed: {result.error_message}[/red]")
                sys.exit(1)

        except (httpx.HTTPError, TimeoutError) as e:
            fail(e)


@cli.command()
@click.argument("processing_id")
@click.pass_context
def progress(ctx, processing_id: str):
    """Show the progress of one job."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            job = client.job_progress(processing_id)
        except httpx.HTTPError as e:
            fail(e)
            return

        table = Table(title=f"Job {processing_id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Status", job.status)
        table.add_row("Progress", f"{job.progress_percent}%")
        if job.total_pages:
            table.add_row("Pages", f"{job.current_page or 0}/{job.total_pages}")
        if job.queue_position is not None:
            table.add_row("Queue position", str(job.queue_position))
            table.add_row("Estimated wait", f"{job.estimated_wait_seconds}s")
        if job.error_message:
            table.add_row("Error", f"[red]{job.error_message}[/red]")
        console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json: bool):
    """Show queued, running and recent jobs."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            data = client.status()
        except httpx.HTTPError as e:
            fail(e)
            return

        if as_json:
            console.print(json.dumps(data, indent=2))
            return

        table = Table(title="Jobs")
        table.add_column("Processing ID", style="cyan")
        table.add_column("File")
        table.add_column("State")
        table.add_column("Position", justify="right")
        table.add_column("ETA", justify="right")

        for item in data.get("processing_items", []):
            table.add_row(item["processing_id"], item.get("original_filename", ""), "[green]processing[/green]", "-", "-")
        for item in data.get("queue_items", []):
            table.add_row(
                item["processing_id"],
                item.get("original_filename", ""),
                "[yellow]queued[/yellow]",
                str(item.get("queue_position", "-")),
                f"{item.get('estimated_wait_seconds', 0)}s",
            )
        console.print(table)

        summary = data.get("summary", {})
        console.print(
            f"[dim]{summary.get('total_queued', 0)} queued, "
            f"{summary.get('total_processing', 0)} processing[/dim]"
        )


@cli.command()
@click.pass_context
def usage(ctx):
    """Show quota usage."""
    with get_client(ctx.obj["url"], ctx.obj["api_key"]) as client:
        try:
            stats = client.usage()
        except httpx.HTTPError as e:
            fail(e)
            return

        table = Table(title=f"Usage ({stats.plan} plan)")
        table.add_column("Metric", style="cyan")
        table.add_column("Pages", justify="right")
        table.add_row("This week", f"{stats.weekly_usage:,}")
        table.add_row("This month", f"{stats.monthly_usage:,}")
        table.add_row("Lifetime", f"{stats.lifetime_total:,}")
        color = "green" if stats.remaining > 0 else "red"
        table.add_row(f"Remaining this {stats.limit_period}", f"[{color}]{stats.remaining:,}/{stats.limit:,}[/{color}]")
        console.print(table)


def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
