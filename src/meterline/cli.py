"""
Meterline CLI

Commands:
  serve             - Run the API server
  usage             - Show a tenant's current-period usage
  generate-invoice  - Invoice one tenant's overage for a period
  close-period      - Invoice last month's overage for every tenant
"""

import argparse
import json
import os
import sys
from datetime import date, datetime

from .core.period import period_bounds


def _service():
    from .billing.service import MeteringService
    return MeteringService()


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Meterline on {host}:{port}")

    uvicorn.run(
        "meterline.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_usage(args):
    """Show current-period usage for a tenant."""
    from .errors import MeteringError

    try:
        view = _service().get_usage(args.tenant, args.resource)
    except MeteringError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    print(f"Usage for {args.tenant} ({view.resource_type})")
    print("=" * 40)
    print(f"Period Start: {view.period_start.isoformat()}")
    print(f"Active: {'Yes' if view.active else 'No'}")
    print(f"Used: {view.used} / {view.limit} ({view.percent_used}%)")
    print(f"Remaining: {view.remaining}")
    print(f"Overage: {view.overage_count} units, {view.overage_charge} {view.currency}")


def cmd_generate_invoice(args):
    """Generate one overage invoice."""
    from .errors import MeteringError

    try:
        start = date.fromisoformat(args.period)
    except ValueError:
        print("Error: --period must be a date like 2026-01-01")
        sys.exit(1)
    period_start, period_end = period_bounds(start)

    try:
        invoice = _service().generate_invoice(args.tenant, args.resource, period_start, period_end)
    except MeteringError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    print(f"Invoice: {invoice.invoice_number}")
    print(f"  Units over limit: {invoice.units_over_limit}")
    print(f"  Subtotal: {invoice.subtotal} {invoice.currency}")
    print(f"  Tax ({invoice.tax_rate}%): {invoice.tax_amount} {invoice.currency}")
    print(f"  Total: {invoice.total} {invoice.currency}")
    print(f"  Due: {invoice.due_date.isoformat()}")


def cmd_close_period(args):
    """Invoice the previous month for every tenant."""
    as_of = datetime.fromisoformat(args.as_of) if args.as_of else None
    results = _service().close_period(as_of)
    print(json.dumps(results, indent=2))
    if results["errors"]:
        sys.exit(2)


def main():
    parser = argparse.ArgumentParser(
        description="Meterline - Usage Metering & Overage Billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # usage
    usage_parser = subparsers.add_parser("usage", help="Show tenant usage")
    usage_parser.add_argument("tenant", help="Tenant ID")
    usage_parser.add_argument("--resource", choices=["email", "sms"], default="email")

    # generate-invoice
    invoice_parser = subparsers.add_parser("generate-invoice", help="Invoice one tenant's overage")
    invoice_parser.add_argument("tenant", help="Tenant ID")
    invoice_parser.add_argument("--resource", choices=["email", "sms"], default="email")
    invoice_parser.add_argument("--period", required=True, help="Any date in the billed month (YYYY-MM-DD)")

    # close-period
    close_parser = subparsers.add_parser("close-period", help="Invoice last month for all tenants")
    close_parser.add_argument("--as-of", help="ISO timestamp; closes the month before it (default: now)")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "usage":
        cmd_usage(args)
    elif args.command == "generate-invoice":
        cmd_generate_invoice(args)
    elif args.command == "close-period":
        cmd_close_period(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
