"""Virtual MTA commands."""

import click

from mailkit.access import root_only
from mailkit.errors import MailError
from mailkit.output import OutputFormatter
from mailkit.services.vmta_service import VmtaService


@click.group()
def vmta() -> None:
    """Manage virtual MTAs (outgoing transports with their own IP and HELO name).

    Mail carrying an 'x-vmta: NAME' header, or sent from one of the
    virtual MTA's sender domains, leaves through that transport.

    \b
        mailkit vmta add mta1 2001:db8::10 mta1.example.com
        mailkit vmta add mta2 203.0.113.20 mta2.example.com --sender example.org
        mailkit vmta list
    """
    pass


@vmta.command("add")
@click.argument("name")
@click.argument("ip")
@click.argument("host")
@click.option(
    "--sender",
    "senders",
    multiple=True,
    help="Route mail from this sender domain through the virtual MTA (repeatable)",
)
@click.pass_context
@root_only
def vmta_add(ctx: click.Context, name: str, ip: str, host: str, senders: tuple[str, ...]) -> None:
    """Add virtual MTA NAME sending from IP with HELO name HOST."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = VmtaService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.add_vmta(name, ip, host, sender_domains=list(senders))
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@vmta.command("remove")
@click.argument("name")
@click.pass_context
@root_only
def vmta_remove(ctx: click.Context, name: str) -> None:
    """Remove virtual MTA NAME and its routing rules."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = VmtaService(ctx.obj["config"], ctx.obj["runner"])

    try:
        result = service.remove_vmta(name)
        formatter.success(message=result["message"], data=result)
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)


@vmta.command("list")
@click.pass_context
def vmta_list(ctx: click.Context) -> None:
    """List virtual MTAs."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    service = VmtaService(ctx.obj["config"], ctx.obj["runner"])

    try:
        vmtas = service.list_vmtas()
    except MailError as e:
        formatter.error(code=e.code, message=e.message, suggestion=e.suggestion)
        raise SystemExit(1)

    rows = [
        {"name": v.name, "ip": v.ip, "host": v.host, "senders": ", ".join(v.sender_domains)}
        for v in vmtas
    ]
    formatter.table(
        rows,
        columns=[("name", "Name"), ("ip", "IP"), ("host", "HELO name"), ("senders", "Sender domains")],
        title="Virtual MTAs",
        message=f"Found {len(rows)} virtual MTA(s)",
    )
