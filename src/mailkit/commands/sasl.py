"""SMTP AUTH (Cyrus sasldb) commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.server_service import ServerService


@click.group()
def sasl() -> None:
    """Manage SMTP authentication users in the sasldb."""
    pass


@sasl.command("add-user")
@click.argument("username")
@click.option("--password", help="Password (prompted if omitted)")
@click.pass_context
@root_only
def sasl_add_user(ctx: click.Context, username: str, password: str | None) -> None:
    """Create or replace a SASL user for SMTP submission.

    Example:
        mailkit sasl add-user relay
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    if password is None:
        password = click.prompt("Password", hide_input=True, confirmation_prompt=True)

    service = ServerService(ctx.obj["config"], ctx.obj["runner"])
    try:
        result = service.add_sasl_user(username, password)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)
