"""Rich terminal output for enrichment results, cache status, and credits."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[dim]no[/dim]"


def display_enrich_result(result: dict) -> None:
    """Print the outcome of a single-company enrichment."""
    lines = [
        f"Employees found:   {result['employees_found']}",
        f"Employees created: {result['employees_created']}",
        f"Credits used:      {result['credits_used']}",
        f"Credits remaining: {result['credits_remaining']}",
        f"Cache hit:         {_yes_no(result['cache_hit'])}",
    ]
    console.print(Panel(
        "\n".join(lines),
        title=f"[bold]{result['company_name']}[/bold] ({result['domain']})",
        expand=False,
    ))


def display_bulk_summary(summary: dict) -> None:
    """Print per-company rows and totals of a bulk run."""
    table = Table(title="Bulk Enrichment")
    table.add_column("Company", style="bold")
    table.add_column("Domain")
    table.add_column("Found", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Leads", justify="right")
    table.add_column("Cache")
    table.add_column("Error", style="red")

    for r in summary["results"]:
        table.add_row(
            r["company_name"],
            r.get("domain") or "",
            str(r["employees_found"]),
            str(r["employees_created"]),
            str(r.get("leads_created", 0)),
            _yes_no(r["cache_hit"]),
            r.get("error") or "",
        )
    for s in summary["skipped_companies"]:
        table.add_row(s["name"], "", "", "", "", "", f"[yellow]{s['reason']}[/yellow]")

    console.print()
    console.print(table)
    console.print(
        f"\n  Companies processed: {summary['companies_processed']}"
        f"  (skipped {summary['companies_skipped']})"
        f"\n  Employees created:   {summary['total_employees_created']}"
        f"\n  Credits used:        {summary['total_credits_used']}"
        f"\n  Cache hits:          {summary['cache_hits']}"
        f"  Provider fetches: {summary['provider_fetches']}\n"
    )


def display_preview(preview: dict) -> None:
    """Print the estimated cost of a bulk run."""
    table = Table(title="Enrichment Preview")
    table.add_column("Company", style="bold")
    table.add_column("Matching", justify="right")
    table.add_column("In org", justify="right")
    table.add_column("New", justify="right", style="green")
    table.add_column("Cache")
    table.add_column("Note", style="yellow")

    for r in preview["companies"]:
        table.add_row(
            r["company_name"],
            str(r["matching_employees"]),
            str(r["already_in_org"]),
            str(r["new_employees_to_add"]),
            _yes_no(r["cache_hit"]),
            r.get("error") or "",
        )

    totals = preview["totals"]
    console.print()
    console.print(table)
    enough = (
        "[green]enough credits[/green]" if preview["has_enough_credits"]
        else "[red]not enough credits[/red]"
    )
    console.print(
        f"\n  Credits required: {totals['total_credits_required']}"
        f"  Remaining: {preview['credits_remaining']}  ({enough})\n"
    )


def display_cache_status(domain: str, status: dict, cached: int) -> None:
    """Print the global cache state for one domain."""
    if not status["exists"]:
        console.print(f"\n[yellow]{domain} is not in the global cache.[/yellow]\n")
        return
    state_color = {"fresh": "green", "stale": "yellow", "unfetched": "red"}[status["state"]]
    lines = [
        f"State:            [{state_color}]{status['state']}[/{state_color}]",
        f"Employees count:  {status['employees_count']}",
        f"Cached rows:      {cached}",
        f"Last fetched at:  {status['last_fetched_at'] or '-'}",
        f"Stale after days: {status['stale_after_days']}",
    ]
    console.print(Panel("\n".join(lines), title=f"[bold]{domain}[/bold]", expand=False))


def display_credits(summary: dict, history: list[dict] | None = None) -> None:
    """Print balances and, optionally, recent credit history."""
    enrichment = summary["enrichment"]
    plan = summary["plan"]
    console.print(
        f"\n[bold]Plan:[/bold] {plan['name']} (${plan['price']}/mo)"
        f"\n[bold]Enrichment credits:[/bold] {enrichment['used']} / {enrichment['limit']}"
        f" used, {enrichment['remaining']} remaining"
        f"\n[bold]Billing cycle:[/bold] {summary['billing_cycle']['start'][:10]}"
        f" to {summary['billing_cycle']['end'][:10]}\n"
    )
    if not history:
        return

    table = Table(title="Credit History")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Used", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Description")
    for h in history:
        table.add_row(
            h["created_at"][:19].replace("T", " "),
            h["transaction_type"],
            str(h["credits_used"]),
            str(h["balance_after"]),
            h.get("description") or "",
        )
    console.print(table)
    console.print()
