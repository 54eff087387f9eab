"""Received header removal commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.server_service import ServerService


@click.group("header-checks")
def header_checks() -> None:
    """Strip Received: headers from outgoing mail via header_checks."""
    pass


@header_checks.command("status")
@click.pass_context
def header_checks_status(ctx: click.Context) -> None:
    """Show whether Received header removal is active."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.header_checks_status()
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    state = "enabled" if result["enabled"] else "disabled"
    formatter.success(message=f"Received header removal is {state}", data=result)


@header_checks.command("enable")
@click.pass_context
@root_only
def header_checks_enable(ctx: click.Context) -> None:
    """Remove Received: headers."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.set_received_header_removal(True)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@header_checks.command("disable")
@click.pass_context
@root_only
def header_checks_disable(ctx: click.Context) -> None:
    """Keep Received: headers."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.set_received_header_removal(False)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)
