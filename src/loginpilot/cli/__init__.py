"""
LoginPilot CLI - reporting and rule sharing for learned login rules.
"""
from typing import Optional, List, Dict, Any
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.config import Settings
from ..core.models import Attempt, Outcome, Rule
from ..learning.stats import export_contributable_rules
from ..service import LoginPilot

logger = logging.getLogger(__name__)

# Create console for rich output
console = Console()

OUTCOME_STYLES = {
    Outcome.SUCCESS: "green",
    Outcome.FAILED: "red",
    Outcome.ABANDONED: "dim",
    Outcome.PENDING_2FA: "yellow",
    Outcome.ALREADY_LOGGED_IN: "cyan",
    Outcome.IN_PROGRESS: "blue",
}


class LoginPilotCLI:
    """Context object shared by the CLI commands."""

    def __init__(self, data_dir: Optional[str] = None, debug: bool = False):
        self.data_dir = data_dir
        self.debug = debug
        self._pilot: Optional[LoginPilot] = None

        if debug:
            logging.getLogger().setLevel(logging.DEBUG)
            logger.debug("Debug mode enabled")

    @property
    def pilot(self) -> LoginPilot:
        if self._pilot is None:
            self._pilot = LoginPilot(Settings.from_env(self.data_dir))
        return self._pilot

    def get_rule(self, domain: str) -> Rule:
        rule = self.pilot.store.get_rule_for_domain(domain)
        if rule is None:
            raise click.ClickException(f"No rule known for {domain}")
        return rule

    def export_rules(self, output_file: str) -> int:
        """Write the contributable rules to a JSON file."""
        output_path = Path(output_file).expanduser().resolve()
        try:
            rules = export_contributable_rules(self.pilot.engine)
            output_path.write_text(json.dumps(rules, indent=2, default=str))
        except OSError as e:
            if self.debug:
                logger.exception("Error exporting rules")
            raise click.ClickException(f"Failed to export rules: {e}")
        console.print(f"[green]✓[/] Exported {len(rules)} rules to {output_path}")
        return len(rules)

    def import_rules(self, input_file: str) -> List[str]:
        """Import community rules from a JSON file.

        Accepts either a list of rules or an object with a ``sites`` mapping.
        """
        input_path = Path(input_file).expanduser().resolve()
        try:
            data = json.loads(input_path.read_text())
            if isinstance(data, dict):
                raw_rules = [dict(r, domain=r.get("domain", d)) for d, r in (data.get("sites") or {}).items()]
            else:
                raw_rules = list(data)
            rules = [Rule.from_dict(r) for r in raw_rules]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            if self.debug:
                logger.exception("Error importing rules")
            raise click.ClickException(f"Failed to import rules: {e}")

        applied = self.pilot.store.import_community_rules(rules)
        console.print(f"[green]✓[/] Imported {len(rules)} rules, applied {len(applied)} from {input_path}")
        return applied


def print_attempt_table(attempts: List[Attempt]) -> None:
    """Print a table of login attempts."""
    if not attempts:
        console.print("[yellow]No login attempts recorded.[/]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Started", style="dim")
    table.add_column("Domain")
    table.add_column("Outcome")
    table.add_column("Steps", justify="right")
    table.add_column("Flow", style="dim")
    table.add_column("2FA", style="dim")

    for attempt in attempts:
        style = OUTCOME_STYLES.get(attempt.outcome, "")
        table.add_row(
            attempt.started_at.strftime("%Y-%m-%d %H:%M"),
            attempt.domain,
            f"[{style}]{attempt.outcome.value}[/]" if style else attempt.outcome.value,
            str(len(attempt.steps)),
            attempt.flow_type.value if attempt.flow_type else "",
            attempt.two_factor_source.value if attempt.two_factor_source else "",
        )

    console.print(table)


def print_rule_table(rules: List[Rule]) -> None:
    """Print a table of rules."""
    if not rules:
        console.print("[yellow]No rules found.[/]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain")
    table.add_column("Source", style="dim")
    table.add_column("Flow")
    table.add_column("Confidence", justify="right")
    table.add_column("OK/Fail", justify="right")
    table.add_column("Updated", style="dim")

    for rule in sorted(rules, key=lambda r: r.domain):
        table.add_row(
            rule.domain,
            rule.provenance.value,
            rule.flow_type.value,
            f"{rule.confidence * 100:.0f}%",
            f"{rule.success_count}/{rule.failure_count}",
            rule.last_updated.strftime("%Y-%m-%d"),
        )

    console.print(table)


def print_rule_detail(rule: Rule) -> None:
    console.print(f"[bold]Domain:[/bold] {rule.domain}")
    if rule.name:
        console.print(f"[bold]Name:[/bold] {rule.name}")
    console.print(f"[bold]Login URL:[/bold] {rule.login_url or '-'}")
    console.print(f"[bold]Flow:[/bold] {rule.flow_type.value}")
    console.print(f"[bold]Source:[/bold] {rule.provenance.value}")
    console.print(f"[bold]Confidence:[/bold] {rule.confidence * 100:.0f}% "
                  f"({rule.success_count} ok, {rule.failure_count} failed, "
                  f"{rule.consecutive_failures} in a row)")
    if rule.two_factor_source:
        sender = f" from {rule.two_factor_sender}" if rule.two_factor_sender else ""
        console.print(f"[bold]2FA:[/bold] {rule.two_factor_source.value}{sender}")

    if rule.steps:
        console.print("[bold]Steps:[/bold]")
        for step in sorted(rule.steps, key=lambda s: s.order):
            extra = f' "{step.button_text}"' if step.button_text else ""
            if step.wait_ms is not None:
                extra += f" ({step.wait_ms} ms)"
            console.print(f"  {step.order}. {step.action.value}{extra}")
    if rule.alternative_button_texts:
        console.print(f"[bold]Known buttons:[/bold] {', '.join(rule.alternative_button_texts)}")
    if rule.adaptations:
        console.print("[bold]Adaptations:[/bold]")
        for adaptation in rule.adaptations:
            console.print(f"  - {escape(adaptation)}")
    if rule.learning_notes:
        console.print("[bold]Recent notes:[/bold]")
        for note in rule.learning_notes[-10:]:
            console.print(f"  [dim]{note.timestamp.strftime('%Y-%m-%d %H:%M')}[/] {note.type.value}: {escape(note.message)}")


def print_session_table(sessions: List[Dict[str, Any]]) -> None:
    if not sessions:
        console.print("[yellow]No assisted logins recorded.[/]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain")
    table.add_column("Logged in", style="dim")
    table.add_column("Assisted with")
    table.add_column("2FA")

    for session in sessions:
        table.add_row(
            session["domain"],
            session["loggedInAt"][:16].replace("T", " "),
            ", ".join(session["assistedBy"]),
            "yes" if session["twoFactorUsed"] else "no",
        )

    console.print(table)


def print_report(data: Any) -> None:
    console.print_json(data=data)
