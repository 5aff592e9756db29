"""
LoginPilot CLI - reporting and rule sharing for learned login rules.
"""
import logging
from typing import Optional

import click
from rich.logging import RichHandler

from . import (
    LoginPilotCLI,
    console,
    print_attempt_table,
    print_report,
    print_rule_detail,
    print_rule_table,
    print_session_table,
)
from ..core.config import DEFAULT_DATA_DIR
from ..learning.stats import active_sessions, export_patterns_for_contribution

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)]
)
logger = logging.getLogger("loginpilot")


@click.group(invoke_without_command=True)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, dir_okay=True, writable=True),
    default=DEFAULT_DATA_DIR,
    envvar="LOGINPILOT_DATA_DIR",
    help="Directory holding login history and learned rules",
    show_default=True
)
@click.option(
    "--debug/--no-debug",
    default=False,
    help="Enable debug output",
    show_default=True
)
@click.pass_context
def cli(ctx: click.Context, data_dir: str, debug: bool) -> None:
    """LoginPilot - learned login rules and login history."""
    ctx.obj = LoginPilotCLI(data_dir=data_dir, debug=debug)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--domain", "-d", default=None, help="Only report on this domain")
@click.pass_obj
def stats(cli: LoginPilotCLI, domain: Optional[str]) -> None:
    """Show success rates, learned sites and recent attempts."""
    print_report(cli.pilot.stats(domain))


@cli.command()
@click.option("--domain", "-d", default=None, help="Only show attempts for this domain")
@click.option("--limit", "-n", default=10, show_default=True, type=click.IntRange(min=1), help="Number of attempts")
@click.pass_obj
def history(cli: LoginPilotCLI, domain: Optional[str], limit: int) -> None:
    """List the most recent login attempts."""
    print_attempt_table(cli.pilot.tracker.recent(limit, domain=domain))


@cli.command()
@click.pass_obj
def sessions(cli: LoginPilotCLI) -> None:
    """Show the latest assisted login for each site."""
    print_session_table(active_sessions(cli.pilot.tracker.history.attempts))


@cli.command()
@click.pass_obj
def patterns(cli: LoginPilotCLI) -> None:
    """Print anonymized step patterns of repeatedly successful logins."""
    print_report(export_patterns_for_contribution(cli.pilot.tracker.history.attempts))


@cli.group()
def rules() -> None:
    """Inspect, export and import login rules."""


@rules.command("list")
@click.option("--source", type=click.Choice(["bundled", "local", "community"]), default=None,
              help="Only list rules from this source")
@click.pass_obj
def list_rules(cli: LoginPilotCLI, source: Optional[str]) -> None:
    """List all known rules."""
    all_rules = cli.pilot.store.all_rules()
    if source:
        all_rules = [r for r in all_rules if r.provenance.value == source]
    print_rule_table(all_rules)


@rules.command()
@click.argument("domain")
@click.pass_obj
def show(cli: LoginPilotCLI, domain: str) -> None:
    """Show the steps, notes and adaptations of a domain's rule."""
    print_rule_detail(cli.get_rule(domain))


@rules.command()
@click.pass_obj
def contributable(cli: LoginPilotCLI) -> None:
    """List locally learned rules that are ready to share."""
    print_rule_table(cli.pilot.engine.get_contributable_rules())


@rules.command("export")
@click.argument("output_file", type=click.Path(dir_okay=False, writable=True))
@click.pass_obj
def export_rules(cli: LoginPilotCLI, output_file: str) -> None:
    """Export contributable rules to a JSON file."""
    cli.export_rules(output_file)


@rules.command("import")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_rules(cli: LoginPilotCLI, input_file: str) -> None:
    """Import community rules from a JSON file."""
    applied = cli.import_rules(input_file)
    for domain in applied:
        console.print(f"  [green]+[/] {domain}")


if __name__ == "__main__":
    cli()
