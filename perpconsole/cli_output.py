"""
Shared CLI output helpers: fatal error reporting and report rendering.
"""
from __future__ import annotations

import sys
import traceback

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from perpconsole import constants
from perpconsole.console.batch_runner import BatchSummary
from perpconsole.reconciliation.reconciler import ReconciliationReport
from perpconsole.utils.fixed_point import format_fixed


def print_critical_error(title: str, error: Exception, *, include_type: bool = True, show_traceback: bool = True) -> None:
    print("=" * 80, file=sys.stderr)
    print(f"CRITICAL ERROR - {title}", file=sys.stderr)
    print("=" * 80, file=sys.stderr)
    print(f"Error: {error}", file=sys.stderr)
    if include_type:
        print(f"Type: {type(error).__name__}", file=sys.stderr)
    if show_traceback:
        traceback.print_exc(file=sys.stderr)
    print("=" * 80, file=sys.stderr)


def print_batch_summary(console: Console, summary: BatchSummary) -> None:
    table = Table(title=summary.path, show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Opcode")
    table.add_column("Actor")
    table.add_column("Summary", overflow="fold")
    for i, r in enumerate(summary.results, start=1):
        status = "[green]ok[/green]" if r.ok else "[red]error[/red]"
        table.add_row(str(i), status, r.opcode, r.actor or "-", escape(r.summary))
    console.print(table)
    console.print(summary.line())


def print_reconciliation(console: Console, report: ReconciliationReport) -> None:
    acct = report.account
    fields = Table(title=f"Account {acct.address}")
    fields.add_column("Field")
    fields.add_column("Value", justify="right")
    fields.add_column("Source")

    quote = constants.QUOTE_DECIMALS
    pnl = constants.PNL_DECIMALS
    rows = [
        ("collateral", acct.collateral, quote),
        ("margin used", acct.margin_used, quote),
        ("margin reserved", acct.margin_reserved, quote),
        ("available", acct.available, quote),
        ("total committed", acct.total_committed, quote),
        ("realized PnL", acct.realized_pnl, pnl),
        ("adjusted realized PnL", report.adjusted_realized_pnl, pnl),
        ("unrealized PnL", acct.unrealized_pnl, pnl),
        ("socialized loss", report.socialized_loss, quote),
        ("portfolio value", report.derived_portfolio_value, pnl),
    ]
    for label, sv, decimals in rows:
        fields.add_row(label, format_fixed(sv.value, decimals, 6), sv.source.value)
    healthy = "n/a" if acct.healthy is None else ("yes" if acct.healthy else "NO")
    fields.add_row("healthy", healthy, acct.healthy_source.value)
    console.print(fields)

    if report.open_positions:
        positions = Table(title="Open positions")
        for col in ("Market", "Size", "Entry", "Mark", "Unrealized", "Margin", "Liq"):
            positions.add_column(col, justify="right" if col != "Market" else "left")
        for p in report.open_positions:
            positions.add_row(
                p.market_id,
                format_fixed(p.size, constants.SIZE_DECIMALS),
                format_fixed(p.entry_price, constants.PRICE_DECIMALS),
                format_fixed(p.mark_price, constants.PRICE_DECIMALS),
                format_fixed(p.unrealized_pnl, pnl, 6),
                format_fixed(p.margin_locked, quote),
                format_fixed(p.liquidation_price, constants.PRICE_DECIMALS),
            )
        console.print(positions)

    for d in report.discrepancies:
        console.print(f"[yellow]DISCREPANCY[/yellow] {d.kind}: {escape(d.message)}")
    if report.unverified_markets:
        console.print(f"unverified markets: {', '.join(report.unverified_markets)}")
