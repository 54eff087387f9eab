"""Main CLI entry point for mailkit."""

from pathlib import Path

import click

from mailkit import __version__
from mailkit.config import reload_config
from mailkit.errors import MailError
from mailkit.logging_setup import configure_logging
from mailkit.output import OutputFormatter
from mailkit.services.system_service import CommandRunner


@click.group()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $MAILKIT_CONFIG or /etc/mailkit/config.yaml)",
)
@click.version_option(version=__version__, prog_name="mailkit")
@click.pass_context
def cli(ctx: click.Context, output_json: bool, config_path: Path | None) -> None:
    """mailkit - virtual mail domain administration for Postfix + Dovecot.

    Manage main domains, mailboxes, redirect domains and catch-alls kept in
    the Postfix lookup tables and the Dovecot passwd-file.
    Use --json flag for machine-readable output.
    """
    ctx.ensure_object(dict)
    formatter = OutputFormatter(json_mode=output_json)
    try:
        config = reload_config(config_path)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)
    configure_logging(config)

    ctx.obj["formatter"] = formatter
    ctx.obj["json_mode"] = output_json
    ctx.obj["config"] = config
    ctx.obj.setdefault("runner", CommandRunner())


# Import and register commands
from mailkit.commands import domain  # noqa: E402
from mailkit.commands import mailbox  # noqa: E402
from mailkit.commands import redirect  # noqa: E402
from mailkit.commands import catchall  # noqa: E402
from mailkit.commands import server  # noqa: E402
from mailkit.commands import sasl  # noqa: E402
from mailkit.commands import header_checks  # noqa: E402
from mailkit.commands import vmta  # noqa: E402
from mailkit.commands.menu import menu  # noqa: E402

cli.add_command(domain.domain)
cli.add_command(mailbox.mailbox)
cli.add_command(redirect.redirect)
cli.add_command(catchall.catchall)
cli.add_command(server.server)
cli.add_command(sasl.sasl)
cli.add_command(header_checks.header_checks)
cli.add_command(vmta.vmta)
cli.add_command(menu)
