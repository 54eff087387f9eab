"""Main domain commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.directory_service import DirectoryService


@click.group()
def domain() -> None:
    """Manage main domains (mail delivered to local mailboxes).

    \b
        mailkit domain add example.com
        mailkit domain list
        mailkit domain remove example.com --force
    """
    pass


@domain.command("add")
@click.argument("name")
@click.pass_context
@root_only
def domain_add(ctx: click.Context, name: str) -> None:
    """Add a main domain.

    The domain is appended to virtual_mailbox_domains and its Maildir
    directory is created.

    Example:
        mailkit domain add example.com
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.add_main_domain(name)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@domain.command("remove")
@click.argument("name")
@click.option("--force", is_flag=True, help="Also delete the domain's mailboxes and catch-all")
@click.option("--purge", is_flag=True, help="Delete the domain's Maildir tree from disk")
@click.pass_context
@root_only
def domain_remove(ctx: click.Context, name: str, force: bool, purge: bool) -> None:
    """Remove a main domain.

    Refused while the domain still has mailboxes or a catch-all unless
    --force is given.

    Example:
        mailkit domain remove example.com --force --purge
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.remove_main_domain(name, force=force, purge=purge)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@domain.command("list")
@click.pass_context
def domain_list(ctx: click.Context) -> None:
    """List main domains with their mailboxes and catch-all."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        domains = service.list_main_domains()
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    rows = [
        {
            "name": d.name,
            "mailboxes": d.mailboxes,
            "mailbox_count": len(d.mailboxes),
            "catch_all": d.catch_all,
            "self_mapped": d.self_mapped,
        }
        for d in domains
    ]
    formatter.domain_tree(rows, message=f"Found {len(rows)} main domain(s)")
