"""
CLI interface for the MeetingSync pricing engine.

Operator access to configuration validation, tier listings and cost quotes.
"""

import logging
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from meetingsync_pricing.config.loader import (
    PricingConfiguration,
    load_default_config,
    load_pricing_config
)
from meetingsync_pricing.core.errors import PricingError, ValidationError
from meetingsync_pricing.core.pricing import (
    CostCalculator,
    SessionCharge,
    SessionFacts,
    participant_multiplier
)
from meetingsync_pricing.core.tiers import free_tier_limits, payg_tier_limits
from meetingsync_pricing.storage.db import DEFAULT_DB_PATH
from meetingsync_pricing.storage.repository import BillingRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION_HELP = "Pricing configuration YAML (defaults to the bundled configuration)"

CURRENCY_SYMBOLS = {
    "USD": "$",
    "CAD": "CA$",
    "AUD": "A$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
}


def _load_config(config_path: Optional[str]) -> PricingConfiguration:
    if config_path is None:
        return load_default_config()
    return load_pricing_config(config_path)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """MeetingSync pricing engine CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)]
        )
    if ctx.invoked_subcommand is None:
        console.print("MeetingSync Pricing - Use --help to see available commands")


@app.command()
def init(
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")
):
    """Initialize the billing database."""
    try:
        BillingRepository(db_path).initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def validate(config_path: str = typer.Argument(..., help="Pricing configuration YAML")):
    """Validate a pricing configuration file and list every violation."""
    try:
        config = load_pricing_config(config_path)
    except ValidationError as e:
        console.print(f"[red]✗[/] {len(e.errors)} configuration error(s):")
        for error in e.errors:
            console.print(f"  - {error}")
        sys.exit(EXIT_CODE_FAIL)
    except (FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Configuration {config.version} is valid "
        f"({len(config.payg_tiers)} PAYG tiers, currency {config.currency})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def tiers(config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP)):
    """List configured pricing tiers."""
    try:
        config = _load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Pricing tiers (v{config.version})")
    table.add_column("Tier")
    table.add_column("Rate/hr", justify="right")
    table.add_column("Translations", justify="right")
    table.add_column("Total languages", justify="right")
    table.add_column("Overage/hr", justify="right")

    free = config.free_tier
    table.add_row(
        f"Free ({free.daily_minutes} min, {free.reset_schedule.value})",
        _format_currency(Decimal(0), config.currency),
        str(free.translation_limit),
        str(free.total_language_limit),
        "-"
    )
    for tier in config.payg_tiers.values():
        name = f"{tier.name} [bold](recommended)[/]" if tier.recommended else tier.name
        table.add_row(
            name,
            _format_currency(tier.base_rate_per_hour, config.currency),
            str(tier.translation_limit),
            str(tier.total_language_limit),
            _format_currency(tier.overage_rate_per_hour, config.currency)
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def multiplier(
    participants: int = typer.Argument(..., help="Participant count"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP)
):
    """Show the participant multiplier for a participant count."""
    try:
        config = _load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    value = participant_multiplier(participants, config.participant_scaling)
    console.print(f"Participant multiplier for {participants}: [bold]{value:.2f}x[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quote(
    tier: Optional[str] = typer.Option(None, "--tier", "-t", help="PAYG tier id"),
    free: bool = typer.Option(False, "--free", help="Quote on the daily free tier"),
    hours: float = typer.Option(..., "--hours", help="Session duration in hours"),
    participants: int = typer.Option(0, "--participants", "-p", help="Participant count"),
    source: str = typer.Option("en", "--source", "-s", help="Source language code"),
    languages: Optional[List[str]] = typer.Option(
        None, "--language", "-l", help="Target language code (repeatable)"
    ),
    minutes: Optional[List[str]] = typer.Option(
        None, "--minutes", "-m", help="Active minutes per language as CODE=MINUTES (repeatable)"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP)
):
    """Quote the cost of a session."""
    try:
        config = _load_config(config_path)
        if free:
            limits = free_tier_limits(config)
        elif tier is not None:
            limits = payg_tier_limits(config.get_tier(tier))
        else:
            console.print("[red]Error:[/] choose a tier with --tier or use --free")
            sys.exit(EXIT_CODE_FAIL)

        facts = SessionFacts(
            session_id="quote",
            session_date=date.today(),
            duration_hours=Decimal(str(hours)),
            source_language=source,
            target_languages=frozenset(languages or []),
            participant_count=participants,
            per_language_active_minutes=_parse_minutes(minutes or []),
            tier_id=None if free else tier,
            is_free_tier=free
        )
        charge = CostCalculator(config).compute(facts, limits)
    except (PricingError, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_charge(charge, config.currency)
    sys.exit(EXIT_CODE_PASS)


def _parse_minutes(entries: List[str]) -> Dict[str, Decimal]:
    parsed = {}
    for entry in entries:
        code, sep, value = entry.partition("=")
        if not sep or not code:
            raise ValueError(f"Invalid --minutes entry {entry!r}, expected CODE=MINUTES")
        try:
            parsed[code] = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"Invalid minutes in {entry!r}")
    return parsed


def _format_currency(amount: Decimal, currency: str = "USD") -> str:
    """Format an amount in the configured currency, e.g. $1,234.50 or CHF 12.00."""
    sign = "-" if amount < 0 else ""
    symbol = CURRENCY_SYMBOLS.get(currency)
    if symbol is None:
        return f"{sign}{currency} {abs(amount):,.2f}"
    return f"{sign}{symbol}{abs(amount):,.2f}"


def _display_charge(charge: SessionCharge, currency: str) -> None:
    console.print("\n[bold]Session Quote[/bold]")
    console.print("-" * 40)
    console.print(f"Tier: {charge.tier_used}")
    console.print(f"Duration: {charge.duration_hours} h")
    console.print(f"Base cost: {_format_currency(charge.base_cost, currency)}")
    overage = ", ".join(charge.overage_languages) or "none"
    console.print(f"Overage cost: {_format_currency(charge.overage_cost, currency)} ({overage})")
    console.print(f"Participant multiplier: {charge.participant_multiplier:.2f}x")
    console.print(f"[bold]Total: {_format_currency(charge.total_cost, currency)}[/bold]")


if __name__ == "__main__":
    app()
