"""
TaskGuard CLI Main Entry Point
"""

from dataclasses import dataclass
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from sqlalchemy.orm import sessionmaker

from taskguard import __version__
from taskguard.core.config import settings
from taskguard.core.logging import get_logger
from taskguard.core.timeutils import UNLIMITED_RESET_TIME
from taskguard.database.connection_manager import create_db_engine, create_session_factory, session_scope
from taskguard.database.init_database import DatabaseInitializer
from taskguard.security.behavioral_analytics import BehavioralAnalyticsService
from taskguard.security.models import RecommendedAction
from taskguard.security.threat_intelligence import ThreatIntelligenceService
from taskguard.services.subscription_service import SubscriptionConfigurationError, UserSubscriptionService

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="taskguard",
    help="TaskGuard - behavioral anomaly detection, IP reputation and API quotas",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

ACTION_STYLES = {
    RecommendedAction.BLOCK: "bold red",
    RecommendedAction.MONITOR: "yellow",
    RecommendedAction.ALLOW: "green",
}


@dataclass
class CLIState:
    database_url: Optional[str] = None
    _session_factory: Optional[sessionmaker] = None

    @property
    def engine(self):
        return self.session_factory.kw["bind"]

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = create_session_factory(create_db_engine(self.database_url))
        return self._session_factory


state = CLIState()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit"
    ),
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        envvar="TASKGUARD_DATABASE_URL",
        help="SQLAlchemy URL overriding DATABASE_URL"
    ),
) -> None:
    """
    🛡️ TaskGuard - behavioral security core for the task tracker API
    """
    if version:
        console.print(f"[bold blue]TaskGuard[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()

    if database_url != state.database_url:
        state.database_url = database_url
        state._session_factory = None


@app.command("init-db")
def init_db(
    force: bool = typer.Option(False, "--force", help="Drop and recreate all tables")
) -> None:
    """
    🗄️ Create the schema and seed the default subscription tiers
    """
    if not DatabaseInitializer(bind=state.engine).initialize(force_recreate=force):
        console.print("[bold red]✗[/bold red] Database initialization failed")
        raise typer.Exit(code=1)

    console.print(Panel(
        "[bold green]✓[/bold green] Schema created and default tiers seeded\n"
        f"[dim]Database: {state.engine.url.render_as_string(hide_password=True)}[/dim]",
        title="[bold blue]Database Initialized[/bold blue]",
        border_style="green"
    ))


@app.command()
def cleanup(
    behavior_days: Optional[int] = typer.Option(
        None, "--behavior-days", min=0, help="Behavior retention in days"
    ),
    threat_days: Optional[int] = typer.Option(
        None, "--threat-days", min=0, help="Threat retention in days"
    ),
) -> None:
    """
    🧹 Apply retention to the behavior ledger and threat records
    """
    with session_scope(state.session_factory) as db:
        behavior_removed = BehavioralAnalyticsService(db).cleanup_old_behavior_data(behavior_days)
        threats_removed = ThreatIntelligenceService(db).cleanup_old_threats(threat_days)

    table = Table(title="Retention", show_header=True, header_style="bold blue")
    table.add_column("Store")
    table.add_column("Window (days)", justify="right")
    table.add_column("Removed", justify="right")
    table.add_row(
        "Behavior ledger",
        str(settings.BEHAVIOR_RETENTION_DAYS if behavior_days is None else behavior_days),
        str(behavior_removed),
    )
    table.add_row(
        "Threat records",
        str(settings.THREAT_RETENTION_DAYS if threat_days is None else threat_days),
        str(threats_removed),
    )
    console.print(table)


@app.command()
def reputation(ip_address: str = typer.Argument(..., help="IP address to check")) -> None:
    """
    🔎 Check the reputation of an IP address
    """
    with session_scope(state.session_factory) as db:
        check = ThreatIntelligenceService(db).check_ip_reputation(ip_address)

    style = ACTION_STYLES.get(check.recommended_action, "white")
    body = Text()
    body.append(f"Threat: {'yes' if check.is_threat else 'no'}\n")
    body.append(f"Level: {check.threat_level}\n")
    body.append(f"Confidence: {check.confidence_score}\n")
    body.append("Action: ")
    body.append(f"{check.recommended_action.value}\n", style=style)
    if check.threat_types:
        body.append(f"Types: {', '.join(check.threat_types)}\n")
    for reason in check.reasons:
        body.append(f"• {reason}\n", style="dim")

    console.print(Panel(body, title=f"[bold blue]{ip_address}[/bold blue]", border_style=style))


@app.command()
def whitelist(
    ip_address: str = typer.Argument(..., help="IP address to whitelist"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the address is trusted"),
) -> None:
    """
    ✅ Whitelist an IP address
    """
    with session_scope(state.session_factory) as db:
        ok = ThreatIntelligenceService(db).whitelist_ip(ip_address, reason)

    if not ok:
        console.print(f"[bold red]✗[/bold red] Could not whitelist {ip_address}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]✓[/bold green] {ip_address} whitelisted: {reason}")


@app.command()
def blacklist(
    ip_address: str = typer.Argument(..., help="IP address to blacklist"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the address is blocked"),
) -> None:
    """
    ⛔ Blacklist an IP address
    """
    with session_scope(state.session_factory) as db:
        ok = ThreatIntelligenceService(db).blacklist_ip(ip_address, reason)

    if not ok:
        console.print(f"[bold red]✗[/bold red] Could not blacklist {ip_address}")
        raise typer.Exit(code=1)
    console.print(f"[bold red]⛔[/bold red] {ip_address} blacklisted: {reason}")


@app.command()
def quota(user_id: int = typer.Argument(..., min=1, help="User id")) -> None:
    """
    📊 Show the daily API quota of a user
    """
    try:
        with session_scope(state.session_factory) as db:
            status = UserSubscriptionService.from_settings(db).get_quota_status(user_id)
    except SubscriptionConfigurationError as e:
        console.print(f"[bold red]✗[/bold red] {e}. Run 'taskguard init-db' first.")
        raise typer.Exit(code=1)

    table = Table(title=f"Quota for user {user_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Tier", status.tier_name)
    if status.is_trusted_system_account or status.is_exempt:
        table.add_row("Status", "[green]exempt[/green]")
    else:
        table.add_row("Used today", str(status.api_calls_used_today))
        table.add_row("Daily limit", str(status.max_daily_api_calls))
        table.add_row("Remaining", str(status.remaining_calls))
        table.add_row("Warning sent", "yes" if status.has_received_quota_warning else "no")
    if status.reset_time != UNLIMITED_RESET_TIME:
        table.add_row("Resets at", status.reset_time.isoformat())
    console.print(table)


@app.command()
def patterns() -> None:
    """
    🧭 Show behavior patterns seen over the last week
    """
    with session_scope(state.session_factory) as db:
        found = BehavioralAnalyticsService(db).get_common_patterns()

    if not found:
        console.print("[dim]No behavior patterns found[/dim]")
        return

    table = Table(title="Common Behavior Patterns", show_header=True, header_style="bold blue")
    table.add_column("Pattern")
    table.add_column("Frequency", justify="right")
    table.add_column("Risk", justify="right")
    table.add_column("Users")
    for pattern in found:
        table.add_row(
            pattern.pattern_name,
            str(pattern.frequency),
            f"{pattern.risk_score:.2f}",
            ", ".join(pattern.affected_users[:5]),
        )
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(settings.API_HOST, "--host", help="Bind address"),
    port: int = typer.Option(settings.API_PORT, "--port", help="Bind port"),
) -> None:
    """
    🚀 Run the security API with uvicorn
    """
    import uvicorn

    from taskguard.api.main import create_app

    console.print(f"[bold blue]TaskGuard[/bold blue] API on [green]http://{host}:{port}[/green]")
    uvicorn.run(
        create_app(settings, state.session_factory, init_schema=True),
        host=host,
        port=port,
        log_level="debug" if settings.DEBUG else "info",
    )


if __name__ == "__main__":
    app()
