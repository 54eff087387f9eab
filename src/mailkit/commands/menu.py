"""Interactive numbered menu."""

from collections.abc import Callable

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import format_bytes
from mailkit.services.directory_service import DirectoryService
from mailkit.services.server_service import ServerService


def _prompt_password() -> str:
    return click.prompt("Password", hide_input=True, confirmation_prompt=True)


def _add_main_domain(directory: DirectoryService, server: ServerService) -> None:
    domain = click.prompt("Main domain (e.g. example.com)")
    result = directory.add_main_domain(domain)
    click.secho(result["message"], fg="green")
    while click.confirm(f"Add a mailbox to {result['domain']}?", default=False):
        local = click.prompt("Local part (before the @)")
        _show_mailbox(directory.add_mailbox(f"{local}@{result['domain']}", _prompt_password()))


def _add_mailbox(directory: DirectoryService, server: ServerService) -> None:
    address = click.prompt("Mailbox address")
    quota = click.prompt("Quota (empty for unlimited)", default="", show_default=False)
    _show_mailbox(directory.add_mailbox(address, _prompt_password(), quota or None))


def _show_mailbox(result: dict) -> None:
    click.secho(result["message"], fg="green")
    click.echo(f"  Maildir: {result['maildir']}")


def _add_redirect(directory: DirectoryService, server: ServerService) -> None:
    domain = click.prompt("Redirect domain (wildcards allowed, e.g. *.example.com)")
    target = click.prompt("Forward to mailbox")
    click.secho(directory.add_redirect_domain(domain, target)["message"], fg="green")


def _update_redirect(directory: DirectoryService, server: ServerService) -> None:
    domain = _choose("Redirect domain", [r.domain for r in directory.list_redirect_domains()])
    if domain:
        target = click.prompt("New target mailbox")
        click.secho(directory.update_redirect_domain(domain, target)["message"], fg="green")


def _remove_redirect(directory: DirectoryService, server: ServerService) -> None:
    domain = _choose("Redirect domain", [r.domain for r in directory.list_redirect_domains()])
    if domain and click.confirm(f"Delete redirect domain {domain}?"):
        click.secho(directory.remove_redirect_domain(domain)["message"], fg="green")


def _delete_mailbox(directory: DirectoryService, server: ServerService) -> None:
    address = _choose("Mailbox", [m.address for m in directory.list_mailboxes()])
    if address and click.confirm(f"Delete mailbox {address} and its Maildir?"):
        click.secho(directory.delete_mailbox(address)["message"], fg="green")


def _change_password(directory: DirectoryService, server: ServerService) -> None:
    address = _choose("Mailbox", [m.address for m in directory.list_mailboxes()])
    if address:
        click.secho(directory.change_password(address, _prompt_password())["message"], fg="green")


def _set_catch_all(directory: DirectoryService, server: ServerService) -> None:
    domain = _choose("Main domain", [d.name for d in directory.list_main_domains()])
    if domain:
        target = click.prompt("Catch-all mailbox")
        click.secho(directory.set_catch_all(domain, target)["message"], fg="green")


def _edit_hostname(directory: DirectoryService, server: ServerService) -> None:
    hostname = click.prompt("New hostname (e.g. mail.example.com)")
    click.secho(server.set_hostname(hostname)["message"], fg="green")


def _show_domains(directory: DirectoryService, server: ServerService) -> None:
    domains = directory.list_main_domains()
    if not domains:
        click.echo("No main domains configured")
    for d in domains:
        suffix = f" (catch-all -> {d.catch_all})" if d.catch_all else ""
        click.echo(f"Domain: {d.name}{suffix}")
        for address in d.mailboxes:
            click.echo(f"  - {address}")


def _show_redirects(directory: DirectoryService, server: ServerService) -> None:
    redirects = directory.list_redirect_domains()
    if not redirects:
        click.echo("No redirect domains configured")
    for r in redirects:
        click.echo(f"{r.domain} -> {r.target or '(missing)'}")


def _show_usage(directory: DirectoryService, server: ServerService) -> None:
    for row in directory.mailbox_usage():
        size = row["size_bytes"]
        shown = format_bytes(size) if size is not None else "Maildir missing"
        click.echo(f"{row['address']}: {shown}")


def _check(directory: DirectoryService, server: ServerService) -> None:
    report = directory.check()
    if report["ok"]:
        click.secho("Directory is consistent", fg="green")
    for issue in report["issues"]:
        click.secho(f"[{issue['code']}] {issue['subject']}: {issue['detail']}", fg="yellow")


def _choose(label: str, options: list[str]) -> str | None:
    if not options:
        click.echo(f"No {label.lower()} available")
        return None
    for i, option in enumerate(options, 1):
        click.echo(f"  {i}) {option}")
    index = click.prompt(f"Select {label.lower()}", type=click.IntRange(1, len(options)))
    return options[index - 1]


MENU_ITEMS: list[tuple[str, Callable[[DirectoryService, ServerService], None]]] = [
    ("Add main domain", _add_main_domain),
    ("Add mailbox", _add_mailbox),
    ("Add redirect domain", _add_redirect),
    ("Edit redirect domain", _update_redirect),
    ("Delete redirect domain", _remove_redirect),
    ("Delete mailbox", _delete_mailbox),
    ("Change mailbox password", _change_password),
    ("Set catch-all", _set_catch_all),
    ("Edit hostname", _edit_hostname),
    ("Show main domains and mailboxes", _show_domains),
    ("Show redirect domains", _show_redirects),
    ("Show mailbox usage", _show_usage),
    ("Check directory consistency", _check),
]


@click.command()
@click.pass_context
@root_only
def menu(ctx: click.Context) -> None:
    """Interactive menu for day-to-day mailbox administration."""
    directory = DirectoryService(ctx.obj["config"], ctx.obj["runner"])
    server = ServerService(ctx.obj["config"], ctx.obj["runner"])
    exit_choice = len(MENU_ITEMS) + 1

    while True:
        click.echo("\nMail server management")
        for i, (label, _) in enumerate(MENU_ITEMS, 1):
            click.echo(f"{i:>2}) {label}")
        click.echo(f"{exit_choice:>2}) Exit")

        choice = click.prompt("Choose an option", type=click.IntRange(1, exit_choice))
        if choice == exit_choice:
            return

        _, action = MENU_ITEMS[choice - 1]
        try:
            action(directory, server)
        except MailError as e:
            click.secho(f"Error: [{e.code}] {e.message}", fg="red")
            if e.suggestion:
                click.secho(f"Suggestion: {e.suggestion}", fg="yellow")
