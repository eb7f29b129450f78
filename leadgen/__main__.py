"""CLI entry point for the enrichment engine.

Usage:
    python -m leadgen init-db                         # create tables
    python -m leadgen serve                           # launch the JSON API
    python -m leadgen create-org NAME --email EMAIL   # org + admin member
    python -m leadgen create-icp NAME                 # saved search
    python -m leadgen create-company NAME --domain D  # org company
    python -m leadgen enrich COMPANY_ID               # single-company enrich
    python -m leadgen bulk-enrich [--icp ID]          # bulk enrich
    python -m leadgen preview [--icp ID]              # estimate credits
    python -m leadgen cache-status DOMAIN             # global cache state
    python -m leadgen refresh-cache DOMAIN            # force next refetch
    python -m leadgen credits [--history]             # balances
    python -m leadgen set-plan PLAN                   # change plan
"""

from __future__ import annotations

import argparse
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

from . import config
from .database import init_db
from .display import (
    display_bulk_summary,
    display_cache_status,
    display_credits,
    display_enrich_result,
    display_preview,
)
from .errors import EnrichmentError
from .models import EnrichmentFilters

console = Console()


def _filters_from_args(args: argparse.Namespace) -> EnrichmentFilters:
    return EnrichmentFilters.from_dict({
        "titles": args.title or [],
        "seniorities": args.seniority or [],
    })


def _context(args: argparse.Namespace) -> dict:
    """Resolve the acting membership from --org/--user, else the first one."""
    from .records import resolve_membership

    member = resolve_membership(getattr(args, "org", None), getattr(args, "user", None))
    if not member:
        console.print(
            "\n[red]Error:[/red] No organization membership found. "
            "Run [bold]create-org[/bold] first."
        )
        sys.exit(1)
    return member


def _fail(exc: Exception) -> None:
    console.print(f"\n[red]Error:[/red] {exc}")
    sys.exit(1)


# ---------------------------------------------------------------------------
# Subcommand: init-db
# ---------------------------------------------------------------------------

def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database and all tables."""
    init_db()
    console.print(f"\n[bold green]Database ready:[/bold green] {config.DB_PATH}")


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> None:
    """Launch the JSON API."""
    import uvicorn

    from .web.app import create_app

    app = create_app()
    console.print(f"\n[bold]Starting API at http://{args.host}:{args.port}/api/v1[/bold]")
    uvicorn.run(app, host=args.host, port=args.port)


# ---------------------------------------------------------------------------
# Subcommands: create-org, create-icp, create-company
# ---------------------------------------------------------------------------

def cmd_create_org(args: argparse.Namespace) -> None:
    """Create an organization with an admin member."""
    from .records import add_member, create_organization, create_user

    init_db()
    try:
        user = create_user(args.email, name=args.user_name or "")
    except ValueError as exc:
        _fail(exc)
    org = create_organization(args.name)
    add_member(org["id"], user["id"], role="admin")

    console.print(f"\n[bold green]Organization created:[/bold green] {org['name']}")
    console.print(f"  Org ID:  {org['id']}")
    console.print(f"  Admin:   {user['email']} ({user['id']})")


def cmd_create_icp(args: argparse.Namespace) -> None:
    """Create an ICP (saved search) in the organization."""
    from .records import create_icp

    init_db()
    member = _context(args)
    icp = create_icp(member["organization_id"], args.name, created_by=member["user_id"])
    console.print(f"\n[bold green]ICP created:[/bold green] {icp['name']}")
    console.print(f"  ICP ID: {icp['id']}")


def cmd_create_company(args: argparse.Namespace) -> None:
    """Create a company in the organization."""
    from .records import create_company

    init_db()
    member = _context(args)
    row = create_company(
        member["organization_id"],
        args.name,
        domain=args.domain,
        search_id=args.icp,
        linkedin_url=args.linkedin,
    )
    console.print(f"\n[bold green]Company created:[/bold green] {row['name']}")
    console.print(f"  Company ID: {row['id']}")
    if row.get("domain"):
        console.print(f"  Domain: {row['domain']}")


# ---------------------------------------------------------------------------
# Subcommands: enrich, bulk-enrich, preview
# ---------------------------------------------------------------------------

def cmd_enrich(args: argparse.Namespace) -> None:
    """Enrich one company's employees."""
    from .orchestrator import enrich_company

    init_db()
    member = _context(args)
    try:
        result = enrich_company(
            member["organization_id"],
            args.company_id,
            _filters_from_args(args),
            user_id=member["user_id"],
            force_refresh=args.force_refresh,
            fetch_all=args.fetch_all,
        )
    except EnrichmentError as exc:
        _fail(exc)
    display_enrich_result(result)


def cmd_bulk_enrich(args: argparse.Namespace) -> None:
    """Enrich an ICP, a list of companies, or every lead company."""
    from .orchestrator import bulk_enrich

    init_db()
    member = _context(args)
    try:
        summary = bulk_enrich(
            member["organization_id"],
            user_id=member["user_id"],
            company_ids=args.company or None,
            icp_id=args.icp,
            filters=_filters_from_args(args),
            fetch_all=args.fetch_all,
            save_filters=args.save_filters,
            create_leads=args.create_leads,
        )
    except EnrichmentError as exc:
        _fail(exc)
    display_bulk_summary(summary)


def cmd_preview(args: argparse.Namespace) -> None:
    """Estimate the credits a bulk run would need."""
    from .orchestrator import preview_enrichment

    init_db()
    member = _context(args)
    try:
        preview = preview_enrichment(
            member["organization_id"],
            company_ids=args.company or None,
            icp_id=args.icp,
            filters=_filters_from_args(args),
            fetch_all=args.fetch_all,
        )
    except EnrichmentError as exc:
        _fail(exc)
    display_preview(preview)


# ---------------------------------------------------------------------------
# Subcommands: cache-status, refresh-cache
# ---------------------------------------------------------------------------

def cmd_cache_status(args: argparse.Namespace) -> None:
    """Show the global cache state for a domain."""
    from .employee_cache import check_employee_cache

    init_db()
    snapshot = check_employee_cache(args.domain)
    display_cache_status(snapshot["domain"], snapshot["status"].to_dict(), len(snapshot["employees"]))


def cmd_refresh_cache(args: argparse.Namespace) -> None:
    """Mark a domain stale so the next lookup refetches."""
    from .employee_cache import mark_cache_for_refresh

    init_db()
    if not mark_cache_for_refresh(args.domain):
        console.print(f"\n[yellow]{args.domain} is not in the global cache.[/yellow]")
        sys.exit(1)
    console.print(f"\n[bold green]Marked for refresh:[/bold green] {args.domain.lower()}")


# ---------------------------------------------------------------------------
# Subcommands: credits, set-plan
# ---------------------------------------------------------------------------

def cmd_credits(args: argparse.Namespace) -> None:
    """Show credit balances for the organization."""
    from .credits import get_credit_history, get_credit_summary

    init_db()
    member = _context(args)
    summary = get_credit_summary(member["organization_id"])
    history = get_credit_history(member["organization_id"], limit=args.limit) if args.history else None
    display_credits(summary, history)


def cmd_set_plan(args: argparse.Namespace) -> None:
    """Switch the organization's plan."""
    from .credits import set_plan

    init_db()
    member = _context(args)
    try:
        summary = set_plan(member["organization_id"], args.plan)
    except ValueError as exc:
        _fail(exc)
    display_credits(summary)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _add_context_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--org", help="Organization ID (default: first membership)")
    p.add_argument("--user", help="Acting user ID")


def _add_filter_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--title", action="append", help="Job-title substring (repeatable)")
    p.add_argument(
        "--seniority", action="append",
        help="Seniority level: c_suite, vp, director, manager, senior, entry (repeatable)",
    )
    p.add_argument("--fetch-all", action="store_true", help="Fetch every page from the provider")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m leadgen",
        description="Cache-first contact enrichment",
    )
    sub = parser.add_subparsers(dest="command")

    # init-db
    sub.add_parser("init-db", help="Create the database and tables")

    # serve
    sv = sub.add_parser("serve", help="Launch the JSON API")
    sv.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    # create-org
    co = sub.add_parser("create-org", help="Create an organization with an admin user")
    co.add_argument("name", help="Organization name")
    co.add_argument("--email", required=True, help="Admin email address")
    co.add_argument("--user-name", help="Admin display name")

    # create-icp
    ci = sub.add_parser("create-icp", help="Create an ICP")
    ci.add_argument("name", help="ICP name")
    _add_context_args(ci)

    # create-company
    cc = sub.add_parser("create-company", help="Create a company")
    cc.add_argument("name", help="Company name")
    cc.add_argument("--domain", help="Company domain (e.g. acme.com)")
    cc.add_argument("--icp", help="ICP ID to attach the company to")
    cc.add_argument("--linkedin", help="Company LinkedIn URL")
    _add_context_args(cc)

    # enrich
    en = sub.add_parser("enrich", help="Enrich one company's employees")
    en.add_argument("company_id", help="Company ID")
    en.add_argument("--force-refresh", action="store_true", help="Bypass the global cache")
    _add_filter_args(en)
    _add_context_args(en)

    # bulk-enrich
    be = sub.add_parser("bulk-enrich", help="Enrich many companies")
    be.add_argument("--icp", help="ICP ID (default: companies with leads)")
    be.add_argument("--company", action="append", help="Company ID (repeatable)")
    be.add_argument("--save-filters", action="store_true", help="Remember filters on the ICP")
    be.add_argument("--create-leads", action="store_true", help="Promote new employees to leads")
    _add_filter_args(be)
    _add_context_args(be)

    # preview
    pv = sub.add_parser("preview", help="Estimate credits for a bulk run")
    pv.add_argument("--icp", help="ICP ID (default: companies with leads)")
    pv.add_argument("--company", action="append", help="Company ID (repeatable)")
    _add_filter_args(pv)
    _add_context_args(pv)

    # cache-status
    cs = sub.add_parser("cache-status", help="Show global cache state for a domain")
    cs.add_argument("domain", help="Company domain")

    # refresh-cache
    rc = sub.add_parser("refresh-cache", help="Mark a domain for refetch")
    rc.add_argument("domain", help="Company domain")

    # credits
    cr = sub.add_parser("credits", help="Show credit balances")
    cr.add_argument("--history", action="store_true", help="Include recent credit history")
    cr.add_argument("--limit", type=int, default=20, help="History rows (default: 20)")
    _add_context_args(cr)

    # set-plan
    sp = sub.add_parser("set-plan", help="Change the organization's plan")
    sp.add_argument("plan", help="free, basic, advanced, premier, or super")
    _add_context_args(sp)

    return parser


def main() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )

    parser = build_parser()
    args = parser.parse_args()

    commands = {
        "init-db": cmd_init_db,
        "serve": cmd_serve,
        "create-org": cmd_create_org,
        "create-icp": cmd_create_icp,
        "create-company": cmd_create_company,
        "enrich": cmd_enrich,
        "bulk-enrich": cmd_bulk_enrich,
        "preview": cmd_preview,
        "cache-status": cmd_cache_status,
        "refresh-cache": cmd_refresh_cache,
        "credits": cmd_credits,
        "set-plan": cmd_set_plan,
    }

    if not args.command:
        parser.print_help()
        sys.exit(1)
    commands[args.command](args)


if __name__ == "__main__":
    main()
