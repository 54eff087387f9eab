"""Mailbox commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter, format_bytes
from mailkit.services.directory_service import DirectoryService


def _read_password(password: str | None, generate: bool) -> str | None:
    if password is None and not generate:
        password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
    return password


@click.group()
def mailbox() -> None:
    """Manage virtual mailboxes.

    \b
        mailkit mailbox add user@example.com --quota 2G
        mailkit mailbox passwd user@example.com
        mailkit mailbox list example.com
        mailkit mailbox delete user@example.com
    """
    pass


@mailbox.command("add")
@click.argument("address")
@click.option("--password", help="Password (prompted if omitted)")
@click.option("--generate", is_flag=True, help="Generate a random password")
@click.option("--quota", help="Storage quota, e.g. 500M or 2G")
@click.pass_context
@root_only
def mailbox_add(
    ctx: click.Context,
    address: str,
    password: str | None,
    generate: bool,
    quota: str | None,
) -> None:
    """Create a mailbox on an existing main domain.

    Writes the Dovecot user and the vmailbox entry and creates the Maildir.

    Example:
        mailkit mailbox add info@example.com --generate
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.add_mailbox(address, _read_password(password, generate), quota)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if ctx.obj["json_mode"]:
        formatter.success(message=result["message"], data=result)
        return

    click.echo(f"\nMailbox created: {result['address']}")
    click.echo(f"  Maildir: {result['maildir']}")
    click.echo(f"  Quota: {result['quota'] or 'unlimited'}")
    if result["password_generated"]:
        click.echo(f"  Password: {result['password']}")
        click.echo("\n  Save this password - it cannot be retrieved later!")


@mailbox.command("passwd")
@click.argument("address")
@click.option("--password", help="New password (prompted if omitted)")
@click.option("--generate", is_flag=True, help="Generate a random password")
@click.pass_context
@root_only
def mailbox_passwd(
    ctx: click.Context,
    address: str,
    password: str | None,
    generate: bool,
) -> None:
    """Change a mailbox password."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.change_password(address, _read_password(password, generate))
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@mailbox.command("quota")
@click.argument("address")
@click.argument("quota", required=False)
@click.option("--clear", is_flag=True, help="Remove the quota")
@click.pass_context
@root_only
def mailbox_quota(ctx: click.Context, address: str, quota: str | None, clear: bool) -> None:
    """Set or clear the storage quota of a mailbox.

    Examples:
        mailkit mailbox quota user@example.com 2G
        mailkit mailbox quota user@example.com --clear
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    if not quota and not clear:
        formatter.error(
            code="INVALID_QUOTA",
            message="Give a quota or --clear",
            suggestion="Example: mailkit mailbox quota user@example.com 2G",
        )
        raise SystemExit(1)

    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])
    try:
        result = service.set_quota(address, None if clear else quota)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@mailbox.command("delete")
@click.argument("address")
@click.option("--keep-maildir", is_flag=True, help="Leave the Maildir on disk")
@click.option("--force", is_flag=True, help="Skip confirmation")
@click.pass_context
@root_only
def mailbox_delete(ctx: click.Context, address: str, keep_maildir: bool, force: bool) -> None:
    """Delete a mailbox.

    Refused while a redirect domain or catch-all forwards to it.
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    if not force and not ctx.obj["json_mode"]:
        if not click.confirm(f"Delete mailbox {address}?"):
            click.echo("Cancelled")
            return

    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])
    try:
        result = service.delete_mailbox(address, keep_maildir=keep_maildir)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@mailbox.command("list")
@click.argument("domain", required=False)
@click.pass_context
def mailbox_list(ctx: click.Context, domain: str | None) -> None:
    """List mailboxes, optionally for one domain."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        mailboxes = service.list_mailboxes(domain)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    rows = [
        {
            "address": m.address,
            "domain": m.domain,
            "maildir": m.maildir,
            "home": m.home,
            "quota": m.quota,
            "in_userdb": m.in_userdb,
            "in_postfix": m.in_postfix,
        }
        for m in mailboxes
    ]
    formatter.table(
        rows,
        columns=[
            ("address", "Address"),
            ("quota", "Quota"),
            ("home", "Home"),
            ("in_postfix", "Postfix"),
            ("in_userdb", "Dovecot"),
        ],
        title="Mailboxes",
        message=f"Found {len(rows)} mailbox(es)",
    )


@mailbox.command("usage")
@click.argument("domain", required=False)
@click.pass_context
def mailbox_usage(ctx: click.Context, domain: str | None) -> None:
    """Show Maildir disk usage per mailbox."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        usage = service.mailbox_usage(domain)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    if not ctx.obj["json_mode"]:
        for row in usage:
            size = row["size_bytes"]
            row["size"] = format_bytes(size) if size is not None else "missing"

    formatter.table(
        usage,
        columns=[
            ("address", "Address"),
            ("size", "Size"),
            ("quota", "Quota"),
            ("maildir", "Maildir"),
        ],
        title="Mailbox Usage",
        message=f"Usage for {len(usage)} mailbox(es)",
    )
