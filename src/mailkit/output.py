"""Rendering of command results as JSON envelopes or rich terminal output.

Every command ends in exactly one call on :class:`OutputFormatter`. In JSON
mode the result is wrapped in ``{"success", "timestamp", "data"|"error",
"message"}`` so scripts can rely on a single shape; otherwise it is drawn
with rich.
"""

import json
import sys
from datetime import datetime, timezone
from typing import Any

from rich.box import ROUNDED
from rich.console import Console
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

# systemctl is-active states plus the on/off values of mailkit's own toggles
STATE_STYLES = {
    "active": ("green", "●"),
    "enabled": ("green", "✓"),
    "activating": ("yellow", "◐"),
    "deactivating": ("yellow", "◐"),
    "reloading": ("yellow", "◐"),
    "inactive": ("red", "○"),
    "failed": ("red", "✗"),
    "disabled": ("dim", "○"),
    "unknown": ("dim", "?"),
}

ISSUE_STYLES = {
    "DANGLING_TARGET": "red",
    "MAIN_AND_REDIRECT": "red",
    "MISSING_FROM_USERDB": "red",
    "MISSING_FROM_VMAILBOX": "red",
}


def styled_state(state: str) -> str:
    style = STATE_STYLES.get(state.lower())
    if style is None:
        return state
    color, marker = style
    return f"[{color}]{marker} {state}[/{color}]"


def _plain(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) if value else "-"
    return str(value)


class OutputFormatter:
    """Single exit point for command output in JSON or human form."""

    def __init__(self, json_mode: bool = False) -> None:
        self.json_mode = json_mode
        self.console = Console(highlight=False)

    def success(self, data: Any, message: str = "Done") -> None:
        if self.json_mode:
            self._emit(True, data=data, message=message)
            return

        self.console.print(f"[green]✓[/green] {message}")
        if isinstance(data, dict):
            for key, value in data.items():
                # Already shown as the headline
                if key == "message" or value is None:
                    continue
                self.console.print(f"    [cyan]{key.replace('_', ' ')}:[/cyan] {_plain(value)}")

    def error(
        self,
        code: str,
        message: str,
        suggestion: str | None = None,
        exit_code: int = 1,
    ) -> None:
        """Report a failure and terminate with ``exit_code``."""
        if self.json_mode:
            self._emit(False, error={"code": code, "message": message, "suggestion": suggestion})
        else:
            line = Text()
            line.append("✗ ", style="bold red")
            line.append(f"{code}: ", style="red")
            line.append(message)
            self.console.print(line)
            if suggestion:
                self.console.print(f"  [yellow]→ {suggestion}[/yellow]")
        sys.exit(exit_code)

    def table(
        self,
        data: list[dict[str, Any]],
        columns: list[tuple[str, str]],
        title: str | None = None,
        message: str = "Data retrieved",
    ) -> None:
        """List rows; in JSON mode the rows are returned whole, not just the columns."""
        if self.json_mode:
            self._emit(True, data=data, message=message)
            return
        if not data:
            self.console.print(f"[dim]{message}[/dim]")
            return

        table = Table(title=title, box=ROUNDED, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for row in data:
            table.add_row(*[_plain(row.get(key)) for key, _ in columns])
        self.console.print(table)

    def domain_tree(self, domains: list[dict[str, Any]], message: str) -> None:
        """Main domains with their mailboxes, marking catch-all targets."""
        if self.json_mode:
            self._emit(True, data=domains, message=message)
            return
        if not domains:
            self.console.print("[dim]No main domains configured[/dim]")
            return

        tree = Tree("[bold]Main domains[/bold]")
        for domain in domains:
            label = f"[bold cyan]{domain['name']}[/bold cyan]"
            if domain["catch_all"]:
                label += f"  [dim]catch-all → {domain['catch_all']}[/dim]"
            branch = tree.add(label)
            for address in domain["mailboxes"]:
                marker = " [yellow]*[/yellow]" if address == domain["catch_all"] else ""
                branch.add(f"{address}{marker}")
        self.console.print(tree)

    def issues(self, issues: list[dict[str, str]], message: str) -> None:
        """Consistency report; red codes mean mail is lost or misrouted."""
        if self.json_mode:
            self._emit(True, data=issues, message=message)
            return

        table = Table(title="Directory issues", box=ROUNDED, header_style="bold cyan")
        table.add_column("Issue")
        table.add_column("Subject")
        table.add_column("Detail")
        for issue in issues:
            color = ISSUE_STYLES.get(issue["code"], "yellow")
            table.add_row(f"[{color}]{issue['code']}[/{color}]", issue["subject"], issue["detail"])
        self.console.print(table)
        self.console.print(f"[yellow]{message}[/yellow]")

    def status_panel(
        self,
        title: str,
        sections: dict[str, dict[str, Any]],
        message: str = "Status retrieved",
    ) -> None:
        if self.json_mode:
            self._emit(True, data=sections, message=message)
            return

        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")
        for name, values in sections.items():
            table = Table(
                title=name.replace("_", " ").title(),
                title_style="bold cyan",
                show_header=False,
                box=ROUNDED,
                border_style="dim",
            )
            table.add_column("Key", style="cyan", width=24)
            table.add_column("Value")
            for key, value in values.items():
                shown = styled_state(value) if isinstance(value, str) else _plain(value)
                table.add_row(key.replace("_", " ").capitalize(), shown)
            self.console.print(table)
            self.console.print()

    def _emit(
        self,
        success: bool,
        data: Any = None,
        message: str | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        envelope: dict[str, Any] = {
            "success": success,
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        }
        if success:
            envelope["data"] = data
            envelope["message"] = message
        else:
            envelope["error"] = error
        print(json.dumps(envelope, indent=2, default=str))


def format_bytes(size: int) -> str:
    """Human readable Maildir size, e.g. ``12.4 MB``."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ["KB", "MB", "GB"]:
        value /= 1024
        if value < 1024:
            return f"{value:.1f} {unit}"
    return f"{value / 1024:.1f} TB"
