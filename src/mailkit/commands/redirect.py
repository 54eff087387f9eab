"""Redirect domain commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.directory_service import DirectoryService


@click.group()
def redirect() -> None:
    """Manage redirect domains.

    A redirect domain forwards every address to one existing mailbox.
    Wildcards such as *.example.com match any subdomain.

    \b
        mailkit redirect add old-brand.com info@example.com
        mailkit redirect add '*.shop.com' orders@example.com
        mailkit redirect list
    """
    pass


@redirect.command("add")
@click.argument("domain")
@click.argument("target")
@click.pass_context
@root_only
def redirect_add(ctx: click.Context, domain: str, target: str) -> None:
    """Forward all mail for DOMAIN to the mailbox TARGET."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.add_redirect_domain(domain, target)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@redirect.command("update")
@click.argument("domain")
@click.argument("target")
@click.pass_context
@root_only
def redirect_update(ctx: click.Context, domain: str, target: str) -> None:
    """Change the forwarding mailbox of a redirect domain."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.update_redirect_domain(domain, target)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@redirect.command("remove")
@click.argument("domain")
@click.pass_context
@root_only
def redirect_remove(ctx: click.Context, domain: str) -> None:
    """Remove a redirect domain."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.remove_redirect_domain(domain)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@redirect.command("list")
@click.pass_context
def redirect_list(ctx: click.Context) -> None:
    """List redirect domains and their targets."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = DirectoryService(ctx.obj["config"], ctx.obj["runner"])

    try:
        redirects = service.list_redirect_domains()
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    rows = [
        {"domain": r.domain, "target": r.target, "wildcard": r.wildcard, "regex": r.regex}
        for r in redirects
    ]
    formatter.table(
        rows,
        columns=[("domain", "Domain"), ("target", "Forwards to"), ("regex", "Regex")],
        title="Redirect Domains",
        message=f"Found {len(rows)} redirect domain(s)",
    )
