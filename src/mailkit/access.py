"""Privilege checks for mailkit commands.

Commands that change the directory, Postfix parameters or the Dovecot user
database must run as root: the files are root-owned and postmap, postconf
and systemctl act on system state. Listing commands stay usable for any
user who can read the files.
"""

import functools
import os
from typing import Callable, TypeVar

import click

F = TypeVar("F", bound=Callable)

ROOT_SUGGESTION = "Run as root: sudo mailkit <command>"


def is_root() -> bool:
    return os.geteuid() == 0


def root_only(func: F) -> F:
    """Refuse to run the wrapped command unless the effective uid is 0.

    Place below ``@click.pass_context`` so the formatter in ``ctx.obj`` can
    report the refusal in the caller's output mode.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if is_root():
            return func(*args, **kwargs)

        ctx = click.get_current_context(silent=True)
        formatter = ctx.obj.get("formatter") if ctx and isinstance(ctx.obj, dict) else None
        if formatter is None:
            raise click.ClickException(f"This command requires root privileges. {ROOT_SUGGESTION}")
        formatter.error(
            code="ACCESS_DENIED",
            message=f"'{ctx.command_path}' requires root privileges",
            suggestion=ROOT_SUGGESTION,
        )
        raise SystemExit(1)
    return wrapper  # type: ignore
