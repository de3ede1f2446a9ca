"""
CLI interface for AI Budget Governor.

Provides command-line access to profiles, routing decisions and audits.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_budget_governor.config.loader import (
    GovernanceConfig,
    default_governance_config,
    load_governance_config,
)
from ai_budget_governor.core.governor import GovernanceService
from ai_budget_governor.core.health import HealthLevel, usage_percent
from ai_budget_governor.core.routing import RequestClass
from ai_budget_governor.storage.db import DEFAULT_DB_PATH
from ai_budget_governor.storage.models import CostProfile, SubscriptionTier
from ai_budget_governor.storage.repository import get_repository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_DENIED = 1  # Request would not be admitted
EXIT_CODE_FAIL = 1  # Failing error

HEALTH_STYLES = {
    HealthLevel.GREEN: "green",
    HealthLevel.YELLOW: "yellow",
    HealthLevel.RED: "red",
    HealthLevel.BLACK: "bold white on black",
}


class _Settings:
    db_path: str = DEFAULT_DB_PATH
    config_path: Optional[str] = None


settings = _Settings()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(
        DEFAULT_DB_PATH,
        "--db",
        envvar="AI_BUDGET_GOVERNOR_DB",
        help="Path to the SQLite database",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="AI_BUDGET_GOVERNOR_CONFIG",
        help="Path to a governance policy YAML file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Budget Governor CLI."""
    settings.db_path = db
    settings.config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Budget Governor - Use --help to see available commands")


def _load_config() -> GovernanceConfig:
    if settings.config_path:
        return load_governance_config(settings.config_path)
    return default_governance_config()


def _service() -> GovernanceService:
    return GovernanceService(get_repository(settings.db_path), _load_config())


def _parse_tier(tier: str) -> SubscriptionTier:
    try:
        return SubscriptionTier(tier.lower())
    except ValueError:
        valid = [t.value for t in SubscriptionTier]
        raise typer.BadParameter(f"tier must be one of: {valid}")


def _parse_request_class(request_class: str) -> RequestClass:
    try:
        return RequestClass(request_class.lower())
    except ValueError:
        valid = [c.value for c in RequestClass]
        raise typer.BadParameter(f"class must be one of: {valid}")


def _format_currency(amount) -> str:
    """Format currency with enough precision for sub-cent charges."""
    return f"${amount:,.6f}"


def _format_health(health: HealthLevel) -> str:
    return f"[{HEALTH_STYLES[health]}]{health.value}[/]"


@app.command()
def init():
    """Initialize the AI Budget Governor database."""
    try:
        get_repository(settings.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def register(
    user_id: str = typer.Argument(..., help="User to create a profile for"),
    tier: str = typer.Option("free", "--tier", "-t", help="Initial subscription tier"),
):
    """Create a cost profile for a user if one doesn't exist."""
    subscription_tier = _parse_tier(tier)
    try:
        profile = _service().register_user(user_id, subscription_tier)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] Profile for {profile.user_id} "
        f"({profile.subscription_tier.value})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(user_id: str = typer.Argument(..., help="User to inspect")):
    """Show a user's spend and budget health."""
    try:
        service = _service()
        profile = service.store.get_profile(user_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if profile is None:
        console.print(f"[yellow]No profile found for {user_id}[/]")
        sys.exit(EXIT_CODE_FAIL)

    _display_profile(service, profile)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def route(
    user_id: str = typer.Argument(..., help="User making the request"),
    request_class: str = typer.Option("text", "--class", "-k", help="Request class: text or image"),
):
    """Compute the routing decision for a request.

    Admitted requests claim the rate-limit window, exactly as live traffic does.
    """
    parsed_class = _parse_request_class(request_class)
    try:
        decision = _service().route(user_id, parsed_class)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Routing Decision[/bold] ({parsed_class.value})")
    console.print("-" * 40)
    console.print(f"Health: {_format_health(decision.health)}")
    if decision.can_proceed:
        console.print(f"Verdict: [green]ADMIT[/] using {decision.model}")
        if decision.image_resolution:
            console.print(f"Image resolution: {decision.image_resolution}")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"Verdict: [red]DENY[/] ({decision.denial.value})")
    if decision.is_cached:
        console.print("Cached fallback available")
    sys.exit(EXIT_CODE_DENIED)


@app.command()
def audit(
    user_id: str = typer.Argument(..., help="User to charge"),
    request_class: str = typer.Option("text", "--class", "-k", help="Request class: text or image"),
    tokens_in: int = typer.Option(0, "--tokens-in", min=0, help="Prompt tokens"),
    tokens_out: int = typer.Option(0, "--tokens-out", min=0, help="Completion tokens"),
    safety_blocked: bool = typer.Option(False, "--safety-blocked", help="Response was safety blocked"),
):
    """Record the cost of a completed request."""
    parsed_class = _parse_request_class(request_class)
    try:
        charge = _service().audit(
            user_id,
            parsed_class,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            safety_blocked=safety_blocked,
        )
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Charged {user_id} {_format_currency(charge.amount)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def upgrade(
    user_id: str = typer.Argument(..., help="User to change"),
    tier: str = typer.Argument(..., help="New subscription tier"),
):
    """Change a user's subscription tier."""
    subscription_tier = _parse_tier(tier)
    try:
        updated = get_repository(settings.db_path).set_subscription_tier(user_id, subscription_tier)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not updated:
        console.print(f"[yellow]No profile found for {user_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {user_id} is now on {subscription_tier.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-cycle")
def reset_cycle(user_id: str = typer.Argument(..., help="User to reset")):
    """Start a new billing cycle with zero spend."""
    try:
        updated = get_repository(settings.db_path).reset_billing_cycle(user_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not updated:
        console.print(f"[yellow]No profile found for {user_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Billing cycle reset for {user_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum profiles to show"),
):
    """List profiles by spend with their budget health."""
    try:
        service = _service()
        profiles = service.store.list_profiles(limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not profiles:
        console.print("\n[bold yellow]No cost profiles found[/]")
        console.print("\nRun `ai-budget-governor register USER` to create one.\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="AI Budget Report")
    table.add_column("User")
    table.add_column("Tier")
    table.add_column("Spend", justify="right")
    table.add_column("Cap", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Health")
    table.add_column("Images", justify="right")

    for profile in profiles:
        cap = service.config.cap_for(profile.subscription_tier)
        table.add_row(
            profile.user_id,
            profile.subscription_tier.value,
            _format_currency(profile.cost_used),
            _format_currency(cap),
            f"{usage_percent(profile.cost_used, cap):.1f}%",
            _format_health(service.health_of(profile)),
            str(profile.image_gens_count),
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _display_profile(service: GovernanceService, profile: CostProfile) -> None:
    """Display a profile in a clean, financial format."""
    cap = service.config.cap_for(profile.subscription_tier)
    console.print(f"\n[bold]Cost Profile:[/bold] {profile.user_id}")
    console.print("-" * 40)
    console.print(f"Tier: {profile.subscription_tier.value}")
    console.print(f"Spend this cycle: {_format_currency(profile.cost_used)}")
    console.print(f"Budget cap: {_format_currency(cap)}")
    console.print(f"Used: {usage_percent(profile.cost_used, cap):.1f}%")
    console.print(f"Health: {_format_health(service.health_of(profile))}")
    console.print(f"Images generated: {profile.image_gens_count}")
    console.print(f"Cycle started: {profile.billing_cycle_start.isoformat()}")
    last = profile.last_request_at.isoformat() if profile.last_request_at else "never"
    console.print(f"Last request: {last}")


if __name__ == "__main__":
    app()
