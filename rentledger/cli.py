# rentledger/cli.py
from __future__ import annotations

import click
from flask import Flask, current_app

from rentledger.errors import NotFound
from rentledger.services.billing import get_bill
from rentledger.services.overdue import sweep_overdue_bills
from rentledger.utils.bill_pdf import render_bill_pdf


def register_cli(app: Flask) -> None:
    @app.cli.command("sweep-overdue")
    def sweep_overdue_command():
        """Flag past-due unpaid bills as overdue (one pass)."""
        result = sweep_overdue_bills()
        click.echo(
            f"checked={result.checked} flagged={len(result.flagged)} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        for number in result.flagged:
            click.echo(f"  overdue: {number}")
        if result.failed:
            raise SystemExit(1)

    @app.cli.command("run-sweeper")
    def run_sweeper_command():
        """Run the overdue sweep on an interval until interrupted."""
        from rentledger.scheduler import build_scheduler

        scheduler = build_scheduler(current_app._get_current_object())
        click.echo(
            f"Overdue sweeper every {current_app.config['OVERDUE_SWEEP_INTERVAL_MINUTES']} minute(s)"
        )
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            scheduler.shutdown()
            click.echo("Overdue sweeper stopped.")

    @app.cli.command("bill-pdf")
    @click.argument("bill_id", type=int)
    @click.option("--out", "out_path", type=click.Path(dir_okay=False), default=None)
    def bill_pdf_command(bill_id, out_path):
        """Write the printable bill to <bill_number>.pdf (or --out)."""
        try:
            bill = get_bill(bill_id)
        except NotFound as e:
            raise click.ClickException(e.description) from None
        pdf = render_bill_pdf(
            bill,
            issuer=current_app.config["BILL_ISSUER_NAME"],
            currency=current_app.config["BILL_CURRENCY"],
        )
        out_path = out_path or f"{bill.bill_number}.pdf"
        with open(out_path, "wb") as fh:
            fh.write(pdf)
        click.echo(f"Wrote {out_path} ({len(pdf)} bytes)")
