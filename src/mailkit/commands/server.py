"""Mail server commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.directory_service import DirectoryService
from mailkit.services.server_service import ServerService


@click.group()
def server() -> None:
    """Configure and inspect the mail server."""
    pass


@server.command("setup")
@click.option("--hostname", required=True, help="Mail server hostname (e.g., mail.example.com)")
@click.pass_context
@root_only
def server_setup(ctx: click.Context, hostname: str) -> None:
    """Configure an installed Postfix and Dovecot for virtual domains.

    Creates the lookup tables, sets the Postfix parameters, adds the
    submission service and the Dovecot passwd-file auth, then restarts
    both daemons. Packages and TLS certificates are not touched.

    Example:
        mailkit server setup --hostname mail.example.com
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.setup(hostname)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if ctx.obj["json_mode"]:
        formatter.success(message=result["message"], data=result)
        return

    click.echo("\nMail Server Setup Complete")
    click.echo("=" * 50)
    click.echo(f"  Hostname: {result['hostname']}")
    for path in result["files_created"]:
        click.echo(f"  ✓ created {path}")
    if result["submission_added"]:
        click.echo("  ✓ submission service added to master.cf")
    if result["dovecot_auth_configured"]:
        click.echo("  ✓ Dovecot passwd-file authentication configured")

    click.echo("\nNext Steps:")
    click.echo("  1. Add a main domain: mailkit domain add example.com")
    click.echo("  2. Create mailboxes: mailkit mailbox add user@example.com")


@server.command("status")
@click.pass_context
def server_status(ctx: click.Context) -> None:
    """Show service states and directory counts."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        status = service.status()
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    sections = {
        "services": status["services"],
        "directory": {
            "hostname": status["hostname"] or "unknown",
            "main_domains": status["main_domains"],
            "mailboxes": status["mailboxes"],
            "catch_alls": status["catch_alls"],
            "redirect_domains": status["redirect_domains"],
            "received_header_removal": (
                "enabled" if status["received_header_removal"] else "disabled"
            ),
        },
    }
    formatter.status_panel("Mail Server Status", sections, message="Mail server status")


@server.command("hostname")
@click.argument("hostname")
@click.pass_context
@root_only
def server_hostname(ctx: click.Context, hostname: str) -> None:
    """Change the system and Postfix hostname and restart the mail services."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.set_hostname(hostname)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@server.command("check-rdns")
@click.option("--hostname", help="Hostname to compare (default: Postfix myhostname)")
@click.pass_context
def server_check_rdns(ctx: click.Context, hostname: str | None) -> None:
    """Check that the public IP's reverse DNS matches the mail hostname."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = ServerService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.check_hostname(hostname)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if result["matches"]:
        formatter.success(message=result["message"], data=result)
    else:
        formatter.error(
            code="RDNS_MISMATCH",
            message=result["message"],
            suggestion=f"Ask your provider to set the PTR record of {result['public_ip']} "
            f"to {result['hostname']}",
        )
        raise SystemExit(1)


@server.command("check")
@click.pass_context
def server_check(ctx: click.Context) -> None:
    """Report inconsistencies between the Postfix tables and Dovecot users."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        report = service.check()
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if report["ok"]:
        formatter.success(message="Directory is consistent", data=report)
        return

    formatter.issues(report["issues"], message=f"Found {len(report['issues'])} issue(s)")
    ctx.exit(1)


@server.command("rebuild")
@click.pass_context
@root_only
def server_rebuild(ctx: click.Context) -> None:
    """Recompile the maps, resync virtual_alias_domains and reload Postfix."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.rebuild()
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)
