"""Catch-all commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.directory_service import DirectoryService


@click.group()
def catchall() -> None:
    """Manage catch-all addresses of main domains."""
    pass


@catchall.command("set")
@click.argument("domain")
@click.argument("target")
@click.pass_context
@root_only
def catchall_set(ctx: click.Context, domain: str, target: str) -> None:
    """Deliver mail for unknown addresses at DOMAIN to TARGET.

    Existing mailboxes of the domain keep receiving their own mail.

    Example:
        mailkit catchall set example.com info@example.com
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.set_catch_all(domain, target)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@catchall.command("remove")
@click.argument("domain")
@click.pass_context
@root_only
def catchall_remove(ctx: click.Context, domain: str) -> None:
    """Remove the catch-all of DOMAIN."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.remove_catch_all(domain)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)
